"""
Provisioning orchestrator tests
Claim guards, the happy path, partial failures and the invocation modes.
"""
import random
import threading

import pytest

from app.core.exceptions import ConflictError, ForbiddenError, NotFoundError, UpstreamError
from app.core.security import verify_secret
from app.models.tenant_vm import VMStatus
from app.services.provisioning import ProvisioningOrchestrator
from app.services.subdomain import SubdomainAllocator
from tests.conftest import add_tenant, load_tenant


# ─── Claim guards ───

def test_unknown_tenant(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.claim("nobody")


def test_no_access_is_forbidden_and_unchanged(orchestrator, session_factory, fake_compute):
    tid = add_tenant(session_factory, has_access=False)
    with pytest.raises(ForbiddenError):
        orchestrator.claim(tid)
    assert load_tenant(session_factory, tid).status == "pending"
    assert fake_compute.created == []


@pytest.mark.parametrize("status, message", [
    (VMStatus.READY, "VM already provisioned"),
    (VMStatus.PROVISIONING, "VM provisioning already in progress"),
])
def test_busy_tenant_is_rejected_without_mutation(orchestrator, session_factory, fake_compute, status, message):
    tid = add_tenant(session_factory, status=status, subdomain="cozy-peanut", ip="10.0.0.9")
    with pytest.raises(ConflictError) as exc:
        orchestrator.claim(tid)
    assert exc.value.message == message

    record = load_tenant(session_factory, tid)
    assert record.status == status.value
    assert record.subdomain == "cozy-peanut"
    assert fake_compute.created == []


def test_second_claim_loses(orchestrator, session_factory):
    tid = add_tenant(session_factory)
    orchestrator.claim(tid)
    with pytest.raises(ConflictError):
        orchestrator.claim(tid)
    assert load_tenant(session_factory, tid).status == "provisioning"


# ─── Happy path ───

def test_provision_happy_path(orchestrator, session_factory, fake_compute, fake_dns):
    tid = add_tenant(session_factory)
    result = orchestrator.provision(tid)

    assert result.success is True
    assert result.vm_status == "provisioning"
    assert result.ip == "10.0.0.1"

    record = load_tenant(session_factory, tid)
    assert record.status == "provisioning"
    assert record.subdomain == result.subdomain
    assert record.ip == "10.0.0.1"
    assert record.provider_instance_id == "srv-1"
    assert record.dns_record_id == "rec-1"

    # plaintext secret reached the VM; only its hash was stored
    secret = fake_compute.secrets[result.subdomain]
    assert record.auth_secret_hash != secret
    assert secret not in record.auth_secret_hash
    assert verify_secret(secret, record.auth_secret_hash)

    spec = fake_compute.created[0]
    assert spec.name == result.subdomain
    assert spec.labels["tenant_id"] == tid
    assert fake_dns.get_record(result.subdomain).content == "10.0.0.1"


def test_run_requires_a_claim(orchestrator, session_factory, fake_compute):
    tid = add_tenant(session_factory)
    result = orchestrator.run(tid)
    assert result.success is False
    assert fake_compute.created == []
    # not claimed: the pending record is left alone
    assert load_tenant(session_factory, tid).status == "pending"


def test_reservation_retries_when_name_is_taken(session_factory, fake_compute, fake_dns):
    add_tenant(session_factory, status=VMStatus.ERROR, subdomain="cozy-peanut")
    tid = add_tenant(session_factory)

    names = iter(["cozy-peanut", "brave-otter"])

    class _Scripted(SubdomainAllocator):
        def allocate(self):
            return next(names)

    orchestrator = ProvisioningOrchestrator(
        session_factory, fake_compute, fake_dns,
        allocator_factory=lambda is_available: _Scripted(is_available, rng=random.Random(0)),
    )
    result = orchestrator.provision(tid)
    assert result.success is True
    assert result.subdomain == "brave-otter"


# ─── Partial failures ───

def test_compute_failure_marks_error(orchestrator, session_factory, fake_compute, fake_dns):
    fake_compute.fail_create = "Hetzner API error (422): server type unavailable"
    tid = add_tenant(session_factory)

    result = orchestrator.provision(tid)
    assert result.success is False
    assert "server type unavailable" in result.error

    record = load_tenant(session_factory, tid)
    assert record.status == "error"
    assert "server type unavailable" in record.status_reason
    assert record.provider_instance_id is None
    assert fake_dns.create_calls == 0


def test_dns_failure_keeps_instance_id_for_cleanup(orchestrator, session_factory, fake_compute, fake_dns):
    fake_dns.fail_create = "Record already exists"
    tid = add_tenant(session_factory)

    result = orchestrator.provision(tid)
    assert result.success is False
    assert result.error == "Cloudflare API error: Record already exists"

    record = load_tenant(session_factory, tid)
    assert record.status == "error"
    assert record.provider_instance_id == "srv-1"
    assert record.ip == "10.0.0.1"
    assert record.dns_record_id is None


def test_instance_without_ipv4_marks_error(orchestrator, session_factory, fake_compute, fake_dns):
    fake_compute.ipv4 = ""
    tid = add_tenant(session_factory)

    result = orchestrator.provision(tid)
    assert result.success is False
    assert load_tenant(session_factory, tid).status == "error"
    assert load_tenant(session_factory, tid).provider_instance_id == "srv-1"
    assert fake_dns.create_calls == 0


def test_retry_from_error_tears_down_and_starts_fresh(orchestrator, session_factory, fake_compute, fake_dns):
    fake_dns.fail_create = "temporary"
    tid = add_tenant(session_factory)
    first = orchestrator.provision(tid)
    assert first.success is False

    fake_dns.fail_create = None
    second = orchestrator.provision(tid)
    assert second.success is True

    assert fake_compute.deleted == ["srv-1"]
    record = load_tenant(session_factory, tid)
    assert record.status == "provisioning"
    assert record.provider_instance_id == "srv-2"
    assert record.status_reason is None


def test_retry_blocked_while_old_instance_cannot_be_deleted(orchestrator, session_factory, fake_compute):
    tid = add_tenant(
        session_factory, status=VMStatus.ERROR, subdomain="cozy-peanut", provider_instance_id="srv-orphan"
    )
    fake_compute.fail_delete = "Hetzner API error (503): unavailable"

    result = orchestrator.provision(tid)
    assert result.success is False
    assert "Could not tear down previous VM resources" in result.error

    record = load_tenant(session_factory, tid)
    assert record.status == "error"
    assert record.provider_instance_id == "srv-orphan"
    assert record.subdomain == "cozy-peanut"
    assert "unavailable" in record.status_reason
    assert fake_compute.created == []

    fake_compute.fail_delete = None
    assert orchestrator.provision(tid).success is True
    assert fake_compute.deleted == ["srv-orphan"]
    assert load_tenant(session_factory, tid).provider_instance_id == "srv-1"


# ─── Invocation modes ───

def test_provision_sync_waits_for_result(orchestrator, session_factory):
    tid = add_tenant(session_factory)
    result = orchestrator.provision_sync(tid, timeout=10)
    assert result.success is True
    assert result.subdomain


def test_provision_sync_ceiling(session_factory, fake_dns):
    release = threading.Event()

    class _SlowCompute:
        def create_instance(self, spec):
            release.wait(5)
            raise UpstreamError("gave up", provider="hetzner")

        def delete_instance(self, instance_id):
            pass

    finished = threading.Event()

    class _Tracked(ProvisioningOrchestrator):
        def run(self, tenant_id):
            try:
                return super().run(tenant_id)
            finally:
                finished.set()

    tid = add_tenant(session_factory)
    orchestrator = _Tracked(session_factory, _SlowCompute(), fake_dns)
    result = orchestrator.provision_sync(tid, timeout=0.1)

    assert result.success is False
    assert result.vm_status == "provisioning"
    assert "continues in the background" in result.error

    # the workflow still reaches its persisted end state
    release.set()
    assert finished.wait(5)
    assert load_tenant(session_factory, tid).status == "error"


def test_provision_background_dispatches(orchestrator, session_factory, fake_compute):
    tid = add_tenant(session_factory)
    queued = []

    result = orchestrator.provision_background(tid, queued.append)
    assert result.success is True
    assert result.vm_status == "provisioning"
    assert queued == [tid]
    assert load_tenant(session_factory, tid).status == "provisioning"
    assert fake_compute.created == []


def test_provision_background_dispatch_failure(orchestrator, session_factory):
    tid = add_tenant(session_factory)

    def broken(_):
        raise ConnectionError("broker down")

    with pytest.raises(UpstreamError):
        orchestrator.provision_background(tid, broken)
    record = load_tenant(session_factory, tid)
    assert record.status == "error"
    assert "broker down" in record.status_reason


def test_provision_rejection_is_a_result(orchestrator, session_factory):
    tid = add_tenant(session_factory, has_access=False)
    result = orchestrator.provision(tid)
    assert result.success is False
    assert result.error == "Subscription required. Please subscribe first."


# ─── Teardown / reset ───

def test_teardown_removes_recorded_resources(orchestrator, session_factory, fake_compute, fake_dns):
    tid = add_tenant(session_factory)
    orchestrator.provision(tid)

    result = orchestrator.teardown(tid)
    assert result == {"dns_deleted": "rec-1", "instance_deleted": "srv-1", "errors": []}
    assert fake_dns.records == {}


def test_teardown_reports_errors_without_raising(orchestrator, session_factory, fake_compute):
    tid = add_tenant(session_factory, status=VMStatus.ERROR, provider_instance_id="srv-7")
    fake_compute.fail_delete = "Hetzner API error (500): internal error"

    result = orchestrator.teardown(tid)
    assert result["instance_deleted"] is None
    assert result["errors"] == ["instance: Hetzner API error (500): internal error"]
    assert load_tenant(session_factory, tid).provider_instance_id == "srv-7"


def test_teardown_clears_identifiers_it_deleted(orchestrator, session_factory, fake_compute, fake_dns):
    tid = add_tenant(session_factory)
    orchestrator.provision(tid)
    fake_compute.fail_delete = "Hetzner API error (500): internal error"

    result = orchestrator.teardown(tid)
    assert result["dns_deleted"] == "rec-1"
    record = load_tenant(session_factory, tid)
    assert record.dns_record_id is None
    assert record.provider_instance_id == "srv-1"


def test_reset_with_failed_teardown_keeps_record(orchestrator, session_factory, fake_compute):
    tid = add_tenant(session_factory, status=VMStatus.READY, subdomain="cozy-peanut", provider_instance_id="srv-7")
    fake_compute.fail_delete = "Hetzner API error (500): internal error"

    with pytest.raises(UpstreamError):
        orchestrator.reset(tid, status=VMStatus.PENDING, teardown=True)
    record = load_tenant(session_factory, tid)
    assert record.status == "ready"
    assert record.provider_instance_id == "srv-7"
    assert record.subdomain == "cozy-peanut"


def test_reset_to_error_for_retry_setup(orchestrator, session_factory):
    tid = add_tenant(session_factory, status=VMStatus.READY, subdomain="cozy-peanut", ip="10.0.0.3")
    result = orchestrator.reset(tid, status=VMStatus.ERROR)

    assert result == {"vm_status": "error", "teardown": None}
    record = load_tenant(session_factory, tid)
    assert record.status == "error"
    assert record.subdomain is None
    assert record.ip is None
