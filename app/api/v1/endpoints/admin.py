"""
Platform admin API (ADMIN_API_TOKEN bearer)

Reset a tenant's VM state, inspect DNS records and health bookkeeping.
"""
import logging
from typing import Any, List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api import deps
from app.crud import crud_tenant_vm
from app.models.tenant_vm import VMStatus
from app.schemas import tenant_vm as schemas
from app.services.dns import CloudflareDNS
from app.services.provisioning import ProvisioningOrchestrator

router = APIRouter(dependencies=[Depends(deps.require_admin_token)])
logger = logging.getLogger("vmorch.admin")


@router.post("/reset", response_model=schemas.ResetResponse)
def reset_vm(
    body: schemas.ResetRequest,
    orchestrator: ProvisioningOrchestrator = Depends(deps.get_orchestrator),
) -> Any:
    """
    Clear a tenant's VM identity so it can be provisioned again.

    `status=error` reproduces the dashboard "retry setup" flow; `teardown=true`
    deletes the recorded DNS record and compute instance first. If a deletion
    fails the record is left as it was and the call answers 502.
    """
    result = orchestrator.reset(
        body.tenant_id, status=VMStatus(body.status), teardown=body.teardown
    )
    logger.info("[Admin] Reset VM status for tenant %s", body.tenant_id)
    return schemas.ResetResponse(
        success=True,
        message=f"VM status reset for tenant {body.tenant_id}",
        vm_status=result["vm_status"],
        teardown=result["teardown"],
    )


@router.get("/dns-records", response_model=List[schemas.DnsRecord])
def list_dns_records(
    dns: CloudflareDNS = Depends(deps.get_dns_manager),
) -> Any:
    return dns.list_records()


@router.get("/health-failures", response_model=List[schemas.HealthFailureStat])
def health_failures(
    db: Session = Depends(deps.get_db),
) -> Any:
    """Tenants with a non-zero consecutive probe-failure count."""
    records = crud_tenant_vm.get_multi(db)
    return [
        schemas.HealthFailureStat(
            tenant_id=r.tenant_id,
            subdomain=r.subdomain,
            status=r.status,
            consecutive_failures=r.health_failures or 0,
            last_check=r.last_health_check_at,
        )
        for r in records
        if r.health_failures
    ]
