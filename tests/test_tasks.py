"""Celery task wiring (tasks executed in-process)."""
from unittest.mock import patch

from app.models.tenant_vm import VMStatus
from app.services.health_monitor import HealthMonitor
from app.services.provisioning import ProvisioningOrchestrator
from app.tasks.vm_tasks import health_sweep_task, provision_vm_task
from tests.conftest import add_tenant, load_tenant


def test_provision_task_runs_claimed_workflow(session_factory, fake_compute, fake_dns):
    tid = add_tenant(session_factory)
    orchestrator = ProvisioningOrchestrator(session_factory, fake_compute, fake_dns)
    orchestrator.claim(tid)

    with patch("app.tasks.vm_tasks.default_orchestrator", return_value=orchestrator):
        result = provision_vm_task(tid)

    assert result["success"] is True
    assert result["subdomain"] == load_tenant(session_factory, tid).subdomain


def test_provision_task_reports_failure(session_factory, fake_compute, fake_dns):
    tid = add_tenant(session_factory)
    orchestrator = ProvisioningOrchestrator(session_factory, fake_compute, fake_dns)
    orchestrator.claim(tid)
    fake_compute.fail_create = "no capacity"

    with patch("app.tasks.vm_tasks.default_orchestrator", return_value=orchestrator):
        result = provision_vm_task(tid)

    assert result["success"] is False
    assert load_tenant(session_factory, tid).status == "error"


def test_health_sweep_task(session_factory, fake_probe):
    add_tenant(session_factory, status=VMStatus.READY, subdomain="up-vm")
    monitor = HealthMonitor(session_factory, fake_probe, max_failures=3, timeout=1, concurrency=1)
    with patch("app.tasks.vm_tasks.default_health_monitor", return_value=monitor):
        result = health_sweep_task()

    assert result["total"] == 1
    assert result["healthy"] == 1
    assert result["markedAsError"] == 0
    assert "checks" not in result
