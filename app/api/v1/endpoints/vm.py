"""
VM lifecycle API

POST /vm/provision   start (or run to completion) provisioning for a tenant
POST /vm/register    one-time callback from a booted VM
"""
import logging
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api import deps
from app.schemas import tenant_vm as schemas
from app.services.provisioning import ProvisioningOrchestrator
from app.services.registration import register_vm
from app.tasks.vm_tasks import provision_vm_task

router = APIRouter()
logger = logging.getLogger("vmorch.api.vm")


@router.post(
    "/provision",
    response_model=schemas.ProvisionResult,
    response_model_exclude_none=True,
    dependencies=[Depends(deps.require_service_token)],
)
def provision(
    body: schemas.ProvisionRequest,
    orchestrator: ProvisioningOrchestrator = Depends(deps.get_orchestrator),
) -> Any:
    """
    Provision the tenant's VM.

    - `wait=false` (default): claim the tenant and queue the workflow; 202.
    - `wait=true`: run the workflow, bounded by PROVISION_SYNC_TIMEOUT_SECONDS.

    Rejections (no access, already provisioned, in progress) raise before
    anything is mutated.
    """
    logger.info("Provisioning requested for tenant %s (wait=%s)", body.tenant_id, body.wait)
    if not body.wait:
        result = orchestrator.provision_background(body.tenant_id, provision_vm_task.delay)
        return JSONResponse(
            status_code=202,
            content=result.model_dump(by_alias=True, exclude_none=True),
        )

    result = orchestrator.provision_sync(body.tenant_id)
    if not result.success:
        return JSONResponse(
            status_code=504 if result.vm_status == "provisioning" else 502,
            content=result.model_dump(by_alias=True, exclude_none=True),
        )
    return result


@router.post("/register", response_model=schemas.RegisterResponse)
def register(
    body: schemas.RegisterRequest,
    db: Session = Depends(deps.get_db),
) -> Any:
    message = register_vm(db, body.subdomain, body.auth_secret, body.public_key)
    return schemas.RegisterResponse(success=True, message=message)
