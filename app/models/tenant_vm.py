"""
Tenant VM record.

One row per tenant account. It is the only durable memory of in-flight
provisioning work: every component reads it, acts, and writes back.
"""
import enum
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, func
from sqlalchemy.dialects.postgresql import UUID
from app.db.base_class import Base


class VMStatus(str, enum.Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    READY = "ready"
    ERROR = "error"


class TenantVM(Base):
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    tenant_id = Column(String(64), unique=True, nullable=False, index=True)
    has_access = Column(Boolean, default=False, nullable=False)     # billing guard
    status = Column(String(16), default=VMStatus.PENDING.value, nullable=False, index=True)
    status_reason = Column(Text, nullable=True)                     # last failure / escalation reason

    # ── VM identity ──
    subdomain = Column(String(63), unique=True, nullable=True, index=True)
    ip = Column(String(15), nullable=True)
    provider_instance_id = Column(String(64), nullable=True)
    dns_record_id = Column(String(64), nullable=True)

    # ── Handshake ──
    auth_secret_hash = Column(String(128), nullable=True)           # bcrypt; never plaintext
    public_key = Column(Text, nullable=True)
    provisioned_at = Column(DateTime(timezone=True), nullable=True)

    # ── Health supervision ──
    health_failures = Column(Integer, default=0, nullable=False)
    last_health_check_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


# Fields cleared by a full reset
RESET_FIELDS = (
    "subdomain",
    "ip",
    "provider_instance_id",
    "dns_record_id",
    "auth_secret_hash",
    "public_key",
    "provisioned_at",
)
