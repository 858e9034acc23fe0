"""
VM Registration Handshake

A booted VM calls back once with the secret that was embedded in its
cloud-init data. A matching secret moves the tenant from `provisioning` to
`ready`; registration is one-shot and replays are rejected.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.core.exceptions import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from app.core.security import get_secret_hash, verify_secret
from app.crud import crud_tenant_vm
from app.middleware.metrics import REGISTRATIONS_TOTAL
from app.models.tenant_vm import VMStatus

logger = logging.getLogger("vmorch.registration")


def register_vm(
    db: Session,
    subdomain: str,
    provided_secret: str,
    public_key: Optional[str] = None,
    *,
    allow_unhashed: Optional[bool] = None,
) -> str:
    """
    Verify the handshake secret and mark the VM ready.

    `allow_unhashed` enables the legacy variant where no hash was stored at
    provisioning time and the first secret presented is hashed and trusted.

    Returns a confirmation message; raises NotFoundError, ConflictError,
    BadRequestError or UnauthorizedError.
    """
    if allow_unhashed is None:
        allow_unhashed = settings.REGISTRATION_ALLOW_UNHASHED

    record = crud_tenant_vm.get_by_subdomain(db, subdomain)
    if not record:
        REGISTRATIONS_TOTAL.labels(outcome="not_found").inc()
        raise NotFoundError("VM not found")

    if record.status == VMStatus.READY.value:
        REGISTRATIONS_TOTAL.labels(outcome="replay").inc()
        raise ConflictError("VM already registered")

    values = {}
    if not record.auth_secret_hash:
        if not allow_unhashed:
            REGISTRATIONS_TOTAL.labels(outcome="no_secret").inc()
            raise BadRequestError("No auth secret expected for this VM")
        logger.warning("Registering %s without a pre-stored secret hash (legacy mode)", subdomain)
        values["auth_secret_hash"] = get_secret_hash(provided_secret)
    elif not verify_secret(provided_secret, record.auth_secret_hash):
        REGISTRATIONS_TOTAL.labels(outcome="unauthorized").inc()
        logger.error("Invalid auth secret for subdomain %s", subdomain)
        raise UnauthorizedError("Invalid auth secret")

    registered = crud_tenant_vm.transition(
        db,
        record.tenant_id,
        [VMStatus.PROVISIONING],
        status=VMStatus.READY,
        public_key=public_key or None,
        provisioned_at=datetime.now(timezone.utc),
        status_reason=None,
        health_failures=0,
        **values,
    )
    if not registered:
        db.expire_all()
        current = crud_tenant_vm.get_by_subdomain(db, subdomain)
        REGISTRATIONS_TOTAL.labels(outcome="conflict").inc()
        if current and current.status == VMStatus.READY.value:
            raise ConflictError("VM already registered")
        raise ConflictError(
            f"VM is not awaiting registration (status '{current.status if current else 'missing'}')"
        )

    REGISTRATIONS_TOTAL.labels(outcome="registered").inc()
    logger.info("VM registered successfully for subdomain %s", subdomain)
    return "VM registered successfully"
