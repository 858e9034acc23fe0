"""
VM Health Monitoring Service

- Probes every `ready` VM's liveness endpoint
- Tracks consecutive failures on the tenant record (survives restarts)
- Escalates to `error` after VM_HEALTH_MAX_FAILURES consecutive failures
- Never aborts a sweep because of one bad probe

Triggered from outside (cron endpoint / Celery beat); it does not schedule itself.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.crud import crud_tenant_vm
from app.middleware.metrics import ESCALATIONS_TOTAL, HEALTH_CHECKS_TOTAL
from app.models.tenant_vm import VMStatus
from app.schemas.tenant_vm import HealthCheckDetail, HealthSweepSummary

logger = logging.getLogger("vmorch.health")


@dataclass
class ProbeResult:
    healthy: bool
    status_code: Optional[int] = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None


def http_probe(
    url: str, timeout: float, transport: Optional[httpx.BaseTransport] = None
) -> ProbeResult:
    """GET `url`; any 2xx is alive. Timeouts and connection errors are unhealthy, not raised."""
    start = time.perf_counter()
    try:
        with httpx.Client(timeout=timeout, transport=transport, follow_redirects=False) as client:
            response = client.get(url)
    except httpx.TimeoutException:
        return ProbeResult(healthy=False, error=f"VM health check timed out after {timeout:.0f}s")
    except httpx.HTTPError as e:
        return ProbeResult(healthy=False, error=f"Connection failed: {e}")

    latency = round((time.perf_counter() - start) * 1000, 1)
    if response.is_success:
        return ProbeResult(healthy=True, status_code=response.status_code, latency_ms=latency)
    return ProbeResult(
        healthy=False,
        status_code=response.status_code,
        latency_ms=latency,
        error=f"VM health check returned HTTP {response.status_code}",
    )


Probe = Callable[[str, float], ProbeResult]


class HealthMonitor:
    page_size = 500

    def __init__(
        self,
        session_factory: Callable[[], Session],
        probe: Optional[Probe] = None,
        *,
        max_failures: Optional[int] = None,
        timeout: Optional[float] = None,
        concurrency: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.probe = probe or http_probe
        self.max_failures = max_failures or settings.VM_HEALTH_MAX_FAILURES
        self.timeout = timeout or settings.VM_HEALTH_CHECK_TIMEOUT
        self.concurrency = max(1, concurrency or settings.HEALTH_SWEEP_CONCURRENCY)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    @staticmethod
    def vm_url(subdomain: str) -> str:
        return f"{settings.VM_SCHEME}://{subdomain}.{settings.VM_BASE_DOMAIN}{settings.VM_HEALTH_PATH}"

    def check_tenant(self, tenant_id: str, subdomain: str) -> HealthCheckDetail:
        """Probe one VM and update its failure count; escalate at the threshold."""
        try:
            result = self.probe(self.vm_url(subdomain), self.timeout)
        except Exception as e:
            result = ProbeResult(healthy=False, error=str(e) or e.__class__.__name__)

        with self._session() as db:
            if result.healthy:
                crud_tenant_vm.record_probe_success(db, tenant_id)
                HEALTH_CHECKS_TOTAL.labels(result="healthy").inc()
                return HealthCheckDetail(tenant_id=tenant_id, subdomain=subdomain, healthy=True)

            HEALTH_CHECKS_TOTAL.labels(result="unhealthy").inc()
            failures = crud_tenant_vm.record_probe_failure(db, tenant_id)
            logger.warning(
                "VM health check failed for tenant %s (%s). Consecutive failures: %d/%d",
                tenant_id, subdomain, failures, self.max_failures,
            )

            escalated = False
            if failures >= self.max_failures:
                reason = (
                    f"VM failed {failures} consecutive health checks: "
                    f"{result.error or 'VM health check failed'}"
                )
                escalated = crud_tenant_vm.transition(
                    db,
                    tenant_id,
                    [VMStatus.READY],
                    status=VMStatus.ERROR,
                    status_reason=reason,
                )
                if escalated:
                    ESCALATIONS_TOTAL.inc()
                    logger.error("Marked VM for tenant %s (%s) as 'error': %s", tenant_id, subdomain, reason)

            return HealthCheckDetail(
                tenant_id=tenant_id,
                subdomain=subdomain,
                healthy=False,
                consecutive_failures=failures,
                status_updated=escalated,
                error=result.error or "VM health check failed",
            )

    def _ready_tenants(self) -> List[Tuple[str, str]]:
        """Every `ready` tenant with a subdomain, read page by page."""
        targets: List[Tuple[str, str]] = []
        skip = 0
        with self._session() as db:
            while True:
                page = crud_tenant_vm.get_multi(db, status=VMStatus.READY, skip=skip, limit=self.page_size)
                targets.extend((r.tenant_id, r.subdomain) for r in page if r.subdomain)
                if len(page) < self.page_size:
                    return targets
                skip += self.page_size

    def _safe_check(self, target: Tuple[str, str]) -> Tuple[HealthCheckDetail, bool]:
        tenant_id, subdomain = target
        try:
            return self.check_tenant(tenant_id, subdomain), False
        except Exception as e:
            logger.exception("Failed to check VM for tenant %s", tenant_id)
            return HealthCheckDetail(
                tenant_id=tenant_id, subdomain=subdomain, healthy=False, error=str(e)
            ), True

    def check_all(self) -> HealthSweepSummary:
        start = time.perf_counter()
        summary = HealthSweepSummary()
        targets = self._ready_tenants()
        summary.total = len(targets)

        if not targets:
            logger.info("No VMs with status='ready' found")
            return summary

        logger.info("Starting health checks for %d VMs...", len(targets))
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(targets))) as pool:
            outcomes = list(pool.map(self._safe_check, targets))

        for detail, errored in outcomes:
            if errored:
                summary.errors += 1
            if detail.healthy:
                summary.healthy += 1
            else:
                summary.unhealthy += 1
                if detail.status_updated:
                    summary.marked_as_error += 1
            summary.checks.append(detail)

        summary.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "Health check completed in %dms. Healthy: %d, Unhealthy: %d, Marked as error: %d",
            summary.duration_ms, summary.healthy, summary.unhealthy, summary.marked_as_error,
        )
        return summary


def default_health_monitor() -> HealthMonitor:
    from app.db.session import SessionLocal

    return HealthMonitor(SessionLocal)
