import logging

from app.celery_app import celery_app
from app.services.health_monitor import default_health_monitor
from app.services.provisioning import default_orchestrator

logger = logging.getLogger(__name__)


@celery_app.task(bind=True)
def provision_vm_task(self, tenant_id: str):
    """
    Background task: run the provisioning workflow for a claimed tenant.

    The API already moved the tenant to `provisioning`; failures end up on
    the record as `error` and are logged here, never re-raised.
    """
    result = default_orchestrator().run(tenant_id)
    if result.success:
        logger.info("Background provisioning done for tenant %s (%s)", tenant_id, result.subdomain)
    else:
        logger.error("Background provisioning failed for tenant %s: %s", tenant_id, result.error)
    return result.model_dump()


@celery_app.task
def health_sweep_task():
    """Background task: probe all ready VMs and escalate persistent failures."""
    summary = default_health_monitor().check_all()
    return summary.model_dump(by_alias=True, exclude={"checks"})
