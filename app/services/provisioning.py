"""
VM Provisioning Orchestrator

Drives a tenant from "no VM" to "VM booting with DNS pointed at it":

    claim (pending -> provisioning, compare-and-swap)
      -> reserve subdomain (unique constraint)
      -> create compute instance (cloud-init carries the handshake secret)
      -> record instance id / ip / secret hash
      -> create DNS A record
      -> record DNS record id

The VM later calls the registration endpoint, which moves the record to
`ready`. Any failure after the claim leaves whatever identifiers were
obtained on the record and marks it `error`, so orphaned cloud resources can
always be found from the database.
"""
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    OrchestratorError,
    UpstreamError,
)
from app.core.security import generate_auth_secret, get_secret_hash
from app.crud import crud_tenant_vm
from app.logging_config import tenant_id_ctx
from app.middleware.metrics import PROVISIONING_TOTAL
from app.models.tenant_vm import VMStatus
from app.schemas.tenant_vm import ProvisionResult
from app.services.cloud_init import render_cloud_init
from app.services.compute import ComputeProvider, InstanceSpec
from app.services.dns import CloudflareDNS, is_valid_ipv4
from app.services.subdomain import SubdomainAllocator

logger = logging.getLogger("vmorch.provisioning")

# Runs synchronous-mode workflows so the caller can stop waiting at the ceiling
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="provision")

_LABEL_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _label_value(value: str) -> str:
    """Hetzner label values: 63 chars of [A-Za-z0-9_.-], alphanumeric at both ends."""
    return _LABEL_UNSAFE.sub("-", value)[:63].strip("-_.") or "unknown"


class ProvisioningOrchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        compute: ComputeProvider,
        dns: CloudflareDNS,
        *,
        allocator_factory: Optional[Callable[[Callable[[str], bool]], SubdomainAllocator]] = None,
        reserve_attempts: Optional[int] = None,
        sync_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.compute = compute
        self.dns = dns
        self.allocator_factory = allocator_factory or (
            lambda is_available: SubdomainAllocator(
                is_available, max_attempts=settings.SUBDOMAIN_MAX_ATTEMPTS
            )
        )
        self.reserve_attempts = reserve_attempts or settings.SUBDOMAIN_RESERVE_ATTEMPTS
        self.sync_timeout = sync_timeout or settings.PROVISION_SYNC_TIMEOUT_SECONDS

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # ═══════════════════════════════════════════
    #  Claim: guard + pending -> provisioning
    # ═══════════════════════════════════════════

    def claim(self, tenant_id: str) -> None:
        """
        Atomically move a tenant into `provisioning`.

        Raises NotFoundError, ForbiddenError (no billing access) or
        ConflictError (already provisioned / in progress / lost a race).
        An `error` tenant is torn down and reset to `pending` first; if the
        teardown fails it stays `error` and UpstreamError is raised.
        """
        with self._session() as db:
            record = crud_tenant_vm.get(db, tenant_id)
            if not record:
                raise NotFoundError("Tenant not found")
            if not record.has_access:
                PROVISIONING_TOTAL.labels(outcome="rejected").inc()
                raise ForbiddenError("Subscription required. Please subscribe first.")

            status = VMStatus(record.status)
            if status is VMStatus.READY:
                PROVISIONING_TOTAL.labels(outcome="rejected").inc()
                raise ConflictError("VM already provisioned")
            if status is VMStatus.PROVISIONING:
                PROVISIONING_TOTAL.labels(outcome="rejected").inc()
                raise ConflictError("VM provisioning already in progress")

        if status is VMStatus.ERROR:
            self._reset_for_retry(tenant_id)

        with self._session() as db:
            claimed = crud_tenant_vm.transition(
                db,
                tenant_id,
                [VMStatus.PENDING],
                status=VMStatus.PROVISIONING,
                status_reason=None,
                health_failures=0,
            )
            if not claimed:
                PROVISIONING_TOTAL.labels(outcome="rejected").inc()
                current = crud_tenant_vm.get(db, tenant_id)
                raise ConflictError(
                    f"VM status changed concurrently (now '{current.status if current else 'missing'}')"
                )

        PROVISIONING_TOTAL.labels(outcome="started").inc()
        logger.info("Claimed tenant %s for provisioning", tenant_id)

    def _reset_for_retry(self, tenant_id: str) -> None:
        teardown = self.teardown(tenant_id)
        if teardown["errors"]:
            reason = "Could not tear down previous VM resources: " + "; ".join(teardown["errors"])
            with self._session() as db:
                crud_tenant_vm.transition(db, tenant_id, [VMStatus.ERROR], status_reason=reason)
            PROVISIONING_TOTAL.labels(outcome="rejected").inc()
            logger.warning("Retry blocked for tenant %s: %s", tenant_id, reason)
            raise UpstreamError(reason, provider="teardown")
        with self._session() as db:
            if not crud_tenant_vm.reset(db, tenant_id, status=VMStatus.PENDING, expected=[VMStatus.ERROR]):
                raise ConflictError("VM status changed concurrently during retry")
        logger.info("Reset tenant %s from error to pending for retry", tenant_id)

    # ═══════════════════════════════════════════
    #  Run: the workflow for a claimed tenant
    # ═══════════════════════════════════════════

    def run(self, tenant_id: str) -> ProvisionResult:
        """Execute the provisioning steps. Never raises; failures mark the record `error`."""
        token = tenant_id_ctx.set(tenant_id)
        started = time.perf_counter()
        subdomain: Optional[str] = None
        ip: Optional[str] = None
        try:
            with self._session() as db:
                record = crud_tenant_vm.get(db, tenant_id)
                if not record:
                    raise NotFoundError("Tenant not found")
                if record.status != VMStatus.PROVISIONING.value:
                    raise ConflictError(f"Tenant is not claimed for provisioning (status '{record.status}')")
                if record.provider_instance_id:
                    raise ConflictError("Provisioning already ran for this claim")

                subdomain = self._reserve_subdomain(db, tenant_id)

                auth_secret = generate_auth_secret()
                user_data = render_cloud_init(subdomain, auth_secret)
                secret_hash = get_secret_hash(auth_secret)
                del auth_secret

                instance = self.compute.create_instance(
                    InstanceSpec(
                        name=subdomain,
                        user_data=user_data,
                        labels={"tenant_id": _label_value(tenant_id), "subdomain": subdomain},
                    )
                )
                del user_data
                ip = instance.ipv4
                crud_tenant_vm.update_fields(
                    db,
                    tenant_id,
                    provider_instance_id=instance.instance_id,
                    ip=ip,
                    auth_secret_hash=secret_hash,
                )
                logger.info("Instance %s created for %s at %s", instance.instance_id, subdomain, ip)
                if not is_valid_ipv4(ip or ""):
                    raise UpstreamError(
                        f"Compute provider returned no usable IPv4 address ({ip!r})", provider="compute"
                    )

                dns_record = self.dns.create_record(subdomain, ip)
                crud_tenant_vm.update_fields(db, tenant_id, dns_record_id=dns_record.id)

            elapsed = time.perf_counter() - started
            PROVISIONING_TOTAL.labels(outcome="succeeded").inc()
            logger.info(
                "Provisioning finished for tenant %s: %s -> %s in %.1fs, awaiting registration",
                tenant_id, subdomain, ip, elapsed,
            )
            return ProvisionResult(
                success=True,
                subdomain=subdomain,
                ip=ip,
                vm_status=VMStatus.PROVISIONING.value,
                message="VM is booting and will register itself",
            )

        except Exception as e:
            message = e.message if isinstance(e, OrchestratorError) else str(e) or e.__class__.__name__
            if isinstance(e, OrchestratorError):
                logger.error("Provisioning failed for tenant %s: %s", tenant_id, message)
            else:
                logger.exception("Unexpected provisioning failure for tenant %s", tenant_id)
            self._mark_failed(tenant_id, message)
            PROVISIONING_TOTAL.labels(outcome="failed").inc()
            return ProvisionResult(
                success=False,
                subdomain=subdomain,
                ip=ip,
                error=message,
                vm_status=VMStatus.ERROR.value,
            )
        finally:
            tenant_id_ctx.reset(token)

    def _reserve_subdomain(self, db: Session, tenant_id: str) -> str:
        allocator = self.allocator_factory(
            lambda name: crud_tenant_vm.is_subdomain_available(db, name)
        )
        for attempt in range(1, self.reserve_attempts + 1):
            subdomain = allocator.allocate()
            if crud_tenant_vm.reserve_subdomain(db, tenant_id, subdomain):
                logger.info("Reserved subdomain %s for tenant %s", subdomain, tenant_id)
                return subdomain
            logger.info("Subdomain %s was taken (attempt %d), retrying", subdomain, attempt)
        raise ConflictError("Could not reserve a unique subdomain")

    def _mark_failed(self, tenant_id: str, reason: str) -> None:
        try:
            with self._session() as db:
                crud_tenant_vm.transition(
                    db,
                    tenant_id,
                    [VMStatus.PROVISIONING],
                    status=VMStatus.ERROR,
                    status_reason=reason[:1000],
                )
        except Exception:
            logger.exception("Could not record provisioning failure for tenant %s", tenant_id)

    # ═══════════════════════════════════════════
    #  Invocation modes
    # ═══════════════════════════════════════════

    def provision(self, tenant_id: str) -> ProvisionResult:
        """Claim and run in the calling thread; rejections come back as results."""
        try:
            self.claim(tenant_id)
        except OrchestratorError as e:
            return ProvisionResult(success=False, error=e.message)
        return self.run(tenant_id)

    def provision_sync(self, tenant_id: str, timeout: Optional[float] = None) -> ProvisionResult:
        """
        Claim, then wait for the workflow up to `timeout` seconds.

        Past the ceiling the workflow keeps running in the background and
        reaches the same persisted state; the caller just stops waiting.
        """
        self.claim(tenant_id)
        future = _executor.submit(self.run, tenant_id)
        ceiling = timeout or self.sync_timeout
        try:
            return future.result(timeout=ceiling)
        except FutureTimeout:
            logger.warning(
                "Provisioning for tenant %s exceeded %.0fs; continuing in background", tenant_id, ceiling
            )
            return ProvisionResult(
                success=False,
                error=f"Provisioning did not finish within {ceiling:.0f}s; it continues in the background",
                vm_status=VMStatus.PROVISIONING.value,
            )

    def provision_background(self, tenant_id: str, dispatch: Callable[[str], Any]) -> ProvisionResult:
        """Claim, then hand the workflow to `dispatch` (e.g. a Celery task) and return."""
        self.claim(tenant_id)
        try:
            dispatch(tenant_id)
        except Exception as e:
            logger.exception("Could not dispatch provisioning for tenant %s", tenant_id)
            self._mark_failed(tenant_id, f"Could not queue provisioning: {e}")
            raise UpstreamError("Could not queue provisioning", provider="queue") from e
        return ProvisionResult(
            success=True,
            vm_status=VMStatus.PROVISIONING.value,
            message="VM provisioning started",
        )

    # ═══════════════════════════════════════════
    #  Teardown / reset
    # ═══════════════════════════════════════════

    def teardown(self, tenant_id: str) -> Dict[str, Any]:
        """
        Best-effort removal of the DNS record and compute instance on record.

        Each identifier is cleared once its resource is gone; failures are
        collected in `errors` and leave the identifier in place.
        """
        with self._session() as db:
            record = crud_tenant_vm.get(db, tenant_id)
            if not record:
                raise NotFoundError("Tenant not found")
            subdomain = record.subdomain
            dns_record_id = record.dns_record_id
            instance_id = record.provider_instance_id

        result: Dict[str, Any] = {"dns_deleted": None, "instance_deleted": None, "errors": []}

        if dns_record_id or subdomain:
            try:
                if not dns_record_id:
                    found = self.dns.get_record(subdomain)
                    dns_record_id = found.id if found else None
                if dns_record_id:
                    self.dns.delete_record(dns_record_id)
                    result["dns_deleted"] = dns_record_id
                    with self._session() as db:
                        crud_tenant_vm.update_fields(db, tenant_id, dns_record_id=None)
            except OrchestratorError as e:
                logger.error("DNS teardown failed for tenant %s: %s", tenant_id, e.message)
                result["errors"].append(f"dns: {e.message}")

        if instance_id:
            try:
                self.compute.delete_instance(instance_id)
                result["instance_deleted"] = instance_id
                with self._session() as db:
                    crud_tenant_vm.update_fields(db, tenant_id, provider_instance_id=None)
            except OrchestratorError as e:
                logger.error("Instance teardown failed for tenant %s: %s", tenant_id, e.message)
                result["errors"].append(f"instance: {e.message}")

        return result

    def reset(
        self, tenant_id: str, *, status: VMStatus = VMStatus.PENDING, teardown: bool = False
    ) -> Dict[str, Any]:
        """
        Privileged full reset: clear VM identity fields and set `status`.

        With `teardown`, a failed resource deletion aborts the reset and the
        record keeps its identifiers.
        """
        teardown_result = self.teardown(tenant_id) if teardown else None
        if teardown_result and teardown_result["errors"]:
            raise UpstreamError(
                "Could not tear down VM resources: " + "; ".join(teardown_result["errors"]),
                provider="teardown",
            )
        with self._session() as db:
            if not crud_tenant_vm.get(db, tenant_id):
                raise NotFoundError("Tenant not found")
            crud_tenant_vm.reset(db, tenant_id, status=status)
        logger.info("Reset VM state for tenant %s to %s", tenant_id, status.value)
        return {"vm_status": status.value, "teardown": teardown_result}


def default_orchestrator() -> ProvisioningOrchestrator:
    from app.db.session import SessionLocal
    from app.services.compute import HetznerCompute

    return ProvisioningOrchestrator(SessionLocal, HetznerCompute(), CloudflareDNS())
