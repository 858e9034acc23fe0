from typing import Optional, List
from uuid import UUID
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


# ── Tenant record ──

class TenantVMCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(alias="tenantId", min_length=1, max_length=64)
    has_access: bool = Field(default=False, alias="hasAccess")


class TenantAccessUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_access: bool = Field(alias="hasAccess")


class TenantVM(BaseModel):
    """Public view of a tenant record; never exposes the secret hash."""
    id: Optional[UUID] = None
    tenant_id: str
    has_access: bool = False
    status: str
    status_reason: Optional[str] = None
    subdomain: Optional[str] = None
    ip: Optional[str] = None
    provider_instance_id: Optional[str] = None
    provisioned_at: Optional[datetime] = None
    health_failures: int = 0
    last_health_check_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    dashboard_url: Optional[str] = None

    class Config:
        from_attributes = True


# ── Provisioning ──

class ProvisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(alias="tenantId", min_length=1, max_length=64)
    wait: bool = False  # True: block until the workflow finishes (bounded)


class ProvisionResult(BaseModel):
    success: bool
    subdomain: Optional[str] = None
    ip: Optional[str] = None
    error: Optional[str] = None
    vm_status: Optional[str] = Field(default=None, serialization_alias="vmStatus")
    message: Optional[str] = None


# ── Registration handshake ──

class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subdomain: str = Field(min_length=1, max_length=63)
    auth_secret: str = Field(alias="authSecret", min_length=1, max_length=256)
    public_key: Optional[str] = Field(default=None, alias="publicKey")


class RegisterResponse(BaseModel):
    success: bool
    message: str


# ── Admin ──

class ResetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(alias="tenantId", min_length=1, max_length=64)
    teardown: bool = False        # delete recorded instance / DNS record first
    status: str = Field(default="pending", pattern="^(pending|error)$")


class ResetResponse(BaseModel):
    success: bool
    message: str
    vm_status: str = Field(serialization_alias="vmStatus")
    teardown: Optional[dict] = None


class DnsRecord(BaseModel):
    id: str
    name: str
    type: str = "A"
    content: str
    ttl: int
    proxied: bool = False
    created: Optional[str] = None


class HealthFailureStat(BaseModel):
    tenant_id: str
    subdomain: Optional[str] = None
    status: str
    consecutive_failures: int
    last_check: Optional[datetime] = None


# ── Health sweep ──

class HealthCheckDetail(BaseModel):
    tenant_id: str = Field(serialization_alias="tenantId")
    subdomain: Optional[str] = None
    healthy: bool
    consecutive_failures: int = Field(default=0, serialization_alias="consecutiveFailures")
    status_updated: bool = Field(default=False, serialization_alias="statusUpdated")
    error: Optional[str] = None


class HealthSweepSummary(BaseModel):
    total: int = 0
    healthy: int = 0
    unhealthy: int = 0
    errors: int = 0
    marked_as_error: int = Field(default=0, serialization_alias="markedAsError")
    duration_ms: int = Field(default=0, serialization_alias="durationMs")
    checks: List[HealthCheckDetail] = Field(default_factory=list)
