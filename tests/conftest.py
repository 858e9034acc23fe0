"""Pytest configuration and fixtures."""
import os

# Must be set before app.config is imported anywhere
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite://")
os.environ.setdefault("APP_ENV", "test")

import re
import uuid
from typing import Dict, List, Optional

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import sessionmaker

from app.core.exceptions import UpstreamError, ValidationError
from app.db.base_class import Base
from app.db.session import build_engine
from app.models.tenant_vm import TenantVM, VMStatus
from app.schemas.tenant_vm import DnsRecord
from app.services.compute import Instance, InstanceSpec
from app.services.dns import is_valid_ipv4
from app.services.health_monitor import HealthMonitor, ProbeResult
from app.services.provisioning import ProvisioningOrchestrator

ADMIN_TOKEN = "a" * 40
CRON_TOKEN = "cron-secret-for-tests"

_SECRET_IN_USER_DATA = re.compile(r"VM_AUTH_SECRET=(\S+)")


# --- Fake external providers ---

class FakeCompute:
    """In-memory compute provider; remembers the secret each VM was booted with."""

    def __init__(self):
        self.created: List[InstanceSpec] = []
        self.deleted: List[str] = []
        self.secrets: Dict[str, str] = {}
        self.fail_create: Optional[str] = None
        self.fail_delete: Optional[str] = None
        self.ipv4: Optional[str] = None

    def create_instance(self, spec: InstanceSpec) -> Instance:
        if self.fail_create:
            raise UpstreamError(self.fail_create, provider="hetzner")
        self.created.append(spec)
        match = _SECRET_IN_USER_DATA.search(spec.user_data)
        if match:
            self.secrets[spec.name] = match.group(1)
        n = len(self.created)
        ip = self.ipv4 if self.ipv4 is not None else f"10.0.0.{n}"
        return Instance(instance_id=f"srv-{n}", ipv4=ip, status="initializing", name=spec.name)

    def delete_instance(self, instance_id: str) -> None:
        if self.fail_delete:
            raise UpstreamError(self.fail_delete, provider="hetzner")
        self.deleted.append(instance_id)


class FakeDNS:
    """In-memory DNS manager with the same surface as CloudflareDNS."""

    zone_name = "alfredos.site"

    def __init__(self):
        self.records: Dict[str, DnsRecord] = {}
        self.create_calls = 0
        self.deleted: List[str] = []
        self.fail_create: Optional[str] = None

    def create_record(self, subdomain: str, ip: str) -> DnsRecord:
        if not is_valid_ipv4(ip):
            raise ValidationError("Valid IPv4 address is required")
        self.create_calls += 1
        if self.fail_create:
            raise UpstreamError(f"Cloudflare API error: {self.fail_create}", provider="cloudflare")
        record = DnsRecord(
            id=f"rec-{self.create_calls}",
            name=f"{subdomain}.{self.zone_name}",
            content=ip,
            ttl=300,
            proxied=False,
        )
        self.records[record.id] = record
        return record

    def get_record(self, subdomain: str) -> Optional[DnsRecord]:
        name = f"{subdomain}.{self.zone_name}"
        return next((r for r in self.records.values() if r.name == name), None)

    def list_records(self) -> List[DnsRecord]:
        return list(self.records.values())

    def delete_record(self, record_id: str) -> dict:
        if record_id not in self.records:
            return {"success": True, "deleted_record_id": record_id, "already_deleted": True}
        del self.records[record_id]
        self.deleted.append(record_id)
        return {"success": True, "deleted_record_id": record_id}


class FakeProbe:
    """Liveness probe answering from a per-subdomain table (default healthy)."""

    def __init__(self):
        self.down: set = set()
        self.raises: set = set()
        self.calls: List[str] = []

    def __call__(self, url: str, timeout: float) -> ProbeResult:
        self.calls.append(url)
        host = url.split("://", 1)[1].split(".", 1)[0]
        if host in self.raises:
            raise RuntimeError("probe blew up")
        if host in self.down:
            return ProbeResult(healthy=False, error="Connection failed: refused")
        return ProbeResult(healthy=True, status_code=200, latency_ms=1.0)


# --- Database ---

def _test_db_url() -> str:
    return os.getenv("TEST_DATABASE_URL", "sqlite://")


@pytest.fixture(scope="session")
def test_engine():
    engine = build_engine(_test_db_url())
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Fresh tables per test."""
    import app.models  # noqa: F401

    Base.metadata.create_all(bind=test_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    yield factory
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# --- Services ---

@pytest.fixture
def fake_compute():
    return FakeCompute()


@pytest.fixture
def fake_dns():
    return FakeDNS()


@pytest.fixture
def fake_probe():
    return FakeProbe()


@pytest.fixture
def orchestrator(session_factory, fake_compute, fake_dns):
    return ProvisioningOrchestrator(session_factory, fake_compute, fake_dns, sync_timeout=10)


@pytest.fixture
def monitor(session_factory, fake_probe):
    return HealthMonitor(session_factory, fake_probe, max_failures=3, timeout=1, concurrency=1)


@pytest.fixture
async def client(session_factory, fake_compute, fake_dns, fake_probe, monkeypatch):
    """Async HTTP client against the app with the DB and providers swapped for fakes."""
    from app.main import app as fastapi_app
    from app.api import deps
    from app.config import settings

    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr(settings, "CRON_SECRET", CRON_TOKEN)
    monkeypatch.setattr(settings, "ORCHESTRATOR_SERVICE_TOKEN", "")

    fastapi_app.dependency_overrides[deps.get_session_factory] = lambda: session_factory
    fastapi_app.dependency_overrides[deps.get_compute] = lambda: fake_compute
    fastapi_app.dependency_overrides[deps.get_dns_manager] = lambda: fake_dns
    fastapi_app.dependency_overrides[deps.get_health_monitor] = lambda: HealthMonitor(
        session_factory, fake_probe, max_failures=3, timeout=1, concurrency=1
    )

    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def cron_headers() -> dict:
    return {"Authorization": f"Bearer {CRON_TOKEN}"}


# --- Helpers ---

def add_tenant(session_factory, tenant_id: Optional[str] = None, *, has_access: bool = True, **fields) -> str:
    """Insert a tenant record directly and return its tenant_id."""
    tenant_id = tenant_id or f"user-{uuid.uuid4().hex[:8]}"
    status = fields.pop("status", VMStatus.PENDING)
    db = session_factory()
    try:
        db.add(TenantVM(
            tenant_id=tenant_id,
            has_access=has_access,
            status=status.value if isinstance(status, VMStatus) else status,
            health_failures=fields.pop("health_failures", 0),
            **fields,
        ))
        db.commit()
    finally:
        db.close()
    return tenant_id


def load_tenant(session_factory, tenant_id: str) -> TenantVM:
    db = session_factory()
    try:
        record = db.query(TenantVM).filter(TenantVM.tenant_id == tenant_id).first()
        db.expunge_all()
        return record
    finally:
        db.close()
