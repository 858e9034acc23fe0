"""
Tenant VM record store.

Status changes go through `transition`, a single conditional UPDATE keyed on
the expected current status. The status column doubles as the per-tenant
lock, so a read-then-write here would let two provisioning requests both
pass the guard.
"""
from typing import Iterable, List, Optional
from datetime import datetime, timezone
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.models.tenant_vm import TenantVM, VMStatus, RESET_FIELDS
from app.schemas.tenant_vm import TenantVMCreate


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce(values: dict) -> dict:
    status = values.get("status")
    if isinstance(status, VMStatus):
        values["status"] = status.value
    return values


def get(db: Session, tenant_id: str) -> Optional[TenantVM]:
    return db.query(TenantVM).filter(TenantVM.tenant_id == tenant_id).first()


def get_by_subdomain(db: Session, subdomain: str) -> Optional[TenantVM]:
    return db.query(TenantVM).filter(TenantVM.subdomain == subdomain).first()


def get_multi(
    db: Session, *, status: Optional[VMStatus] = None, skip: int = 0, limit: int = 1000
) -> List[TenantVM]:
    query = db.query(TenantVM)
    if status is not None:
        query = query.filter(TenantVM.status == status.value)
    return query.order_by(TenantVM.created_at, TenantVM.tenant_id).offset(skip).limit(limit).all()


def create(db: Session, *, obj_in: TenantVMCreate) -> TenantVM:
    db_obj = TenantVM(
        tenant_id=obj_in.tenant_id,
        has_access=obj_in.has_access,
        status=VMStatus.PENDING.value,
        health_failures=0,
    )
    db.add(db_obj)
    db.commit()
    db.refresh(db_obj)
    return db_obj


def set_access(db: Session, *, db_obj: TenantVM, has_access: bool) -> TenantVM:
    db_obj.has_access = has_access
    db.add(db_obj)
    db.commit()
    db.refresh(db_obj)
    return db_obj


def is_subdomain_available(db: Session, subdomain: str) -> bool:
    """A name is taken while any non-failed record holds it."""
    existing = db.query(TenantVM.id).filter(
        TenantVM.subdomain == subdomain,
        TenantVM.status != VMStatus.ERROR.value,
    ).first()
    return existing is None


def transition(
    db: Session, tenant_id: str, expected: Iterable[VMStatus], **values
) -> bool:
    """
    Compare-and-swap on status.

    Applies `values` only if the record's status is one of `expected`.
    Returns True when exactly one row was updated.
    """
    values = _coerce(values)
    values.setdefault("updated_at", _now())
    stmt = (
        update(TenantVM)
        .where(
            TenantVM.tenant_id == tenant_id,
            TenantVM.status.in_([s.value for s in expected]),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1


def reserve_subdomain(db: Session, tenant_id: str, subdomain: str) -> bool:
    """
    Attempt to claim `subdomain` for a tenant that is mid-provisioning.

    The unique constraint on `subdomain` is the reservation: a concurrent
    holder makes the UPDATE fail and the name counts as taken.
    """
    try:
        return transition(db, tenant_id, [VMStatus.PROVISIONING], subdomain=subdomain)
    except IntegrityError:
        db.rollback()
        return False


def update_fields(db: Session, tenant_id: str, **values) -> bool:
    """Unconditional write, used to record provider identifiers as soon as they exist."""
    values = _coerce(values)
    values.setdefault("updated_at", _now())
    stmt = (
        update(TenantVM)
        .where(TenantVM.tenant_id == tenant_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1


def reset(
    db: Session,
    tenant_id: str,
    *,
    status: VMStatus = VMStatus.PENDING,
    expected: Optional[Iterable[VMStatus]] = None,
) -> bool:
    """Clear every VM identity field and put the record back to `status`."""
    values = {field: None for field in RESET_FIELDS}
    values.update(status=status, status_reason=None, health_failures=0, last_health_check_at=None)
    if expected is None:
        return update_fields(db, tenant_id, **values)
    return transition(db, tenant_id, expected, **values)


# ═══════════════════════════════════════════
#  Health bookkeeping
# ═══════════════════════════════════════════

def record_probe_success(db: Session, tenant_id: str) -> None:
    stmt = (
        update(TenantVM)
        .where(TenantVM.tenant_id == tenant_id, TenantVM.status == VMStatus.READY.value)
        .values(health_failures=0, last_health_check_at=_now())
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)
    db.commit()


def record_probe_failure(db: Session, tenant_id: str) -> int:
    """Atomically bump the consecutive-failure counter; returns the new count."""
    stmt = (
        update(TenantVM)
        .where(TenantVM.tenant_id == tenant_id, TenantVM.status == VMStatus.READY.value)
        .values(health_failures=TenantVM.health_failures + 1, last_health_check_at=_now())
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)
    db.commit()
    count = db.query(TenantVM.health_failures).filter(TenantVM.tenant_id == tenant_id).scalar()
    return int(count or 0)
