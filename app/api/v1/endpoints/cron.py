"""
VM Health Check Cron Endpoint

Called by an external scheduler (recommended every 5-10 minutes):

    curl -H "Authorization: Bearer $CRON_SECRET" https://orchestrator/api/v1/cron/health-check
"""
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from app.api import deps
from app.services.health_monitor import HealthMonitor

router = APIRouter(dependencies=[Depends(deps.require_cron_token)])
logger = logging.getLogger("vmorch.cron")


@router.get("/health-check")
def health_check(
    monitor: HealthMonitor = Depends(deps.get_health_monitor),
) -> Any:
    logger.info("Starting VM health check sweep...")
    summary = monitor.check_all()
    body = summary.model_dump(by_alias=True, exclude={"checks"})
    return {
        "success": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **body,
        "message": f"Checked {summary.total} VMs: {summary.healthy} healthy, {summary.unhealthy} unhealthy",
        "checks": [c.model_dump(by_alias=True) for c in summary.checks],
    }
