"""
Tenant VM records

The account system creates a record (status `pending`) when an account is
created; billing flips `has_access`. The dashboard polls the status view.
"""
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api import deps
from app.config import settings
from app.crud import crud_tenant_vm
from app.models.tenant_vm import TenantVM, VMStatus
from app.schemas import tenant_vm as schemas

router = APIRouter(dependencies=[Depends(deps.require_service_token)])


def _to_view(record: TenantVM) -> schemas.TenantVM:
    view = schemas.TenantVM.model_validate(record)
    if record.status == VMStatus.READY.value and record.subdomain:
        view.dashboard_url = f"{settings.VM_SCHEME}://{record.subdomain}.{settings.VM_BASE_DOMAIN}"
    return view


@router.post("/", response_model=schemas.TenantVM, status_code=201)
def create_tenant(
    *,
    db: Session = Depends(deps.get_db),
    tenant_in: schemas.TenantVMCreate,
) -> Any:
    if crud_tenant_vm.get(db, tenant_in.tenant_id):
        raise HTTPException(status_code=409, detail="Tenant record already exists")
    return _to_view(crud_tenant_vm.create(db, obj_in=tenant_in))


@router.get("/{tenant_id}", response_model=schemas.TenantVM)
def read_tenant(
    tenant_id: str,
    db: Session = Depends(deps.get_db),
) -> Any:
    record = crud_tenant_vm.get(db, tenant_id)
    if not record:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return _to_view(record)


@router.put("/{tenant_id}/access", response_model=schemas.TenantVM)
def update_access(
    tenant_id: str,
    body: schemas.TenantAccessUpdate,
    db: Session = Depends(deps.get_db),
) -> Any:
    record = crud_tenant_vm.get(db, tenant_id)
    if not record:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return _to_view(crud_tenant_vm.set_access(db, db_obj=record, has_access=body.has_access))
