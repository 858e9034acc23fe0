"""
Prometheus Metrics

HTTP (via middleware):
  - http_requests_total           (counter)
  - http_request_duration_seconds (histogram)
  - http_requests_in_progress     (gauge)
  - app_info                      (info)

VM lifecycle (incremented by the services):
  - vm_provisioning_total{outcome}
  - vm_registrations_total{outcome}
  - vm_health_checks_total{result}
  - vm_escalations_total
"""

import re
import time

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP metrics ──
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "Request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)
REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of in-progress requests",
    ["method"],
)
APP_INFO = Info("app", "Application metadata")

# ── VM lifecycle metrics ──
PROVISIONING_TOTAL = Counter(
    "vm_provisioning_total",
    "Provisioning attempts by outcome",
    ["outcome"],  # started / succeeded / failed / rejected
)
REGISTRATIONS_TOTAL = Counter(
    "vm_registrations_total",
    "VM registration callbacks by outcome",
    ["outcome"],
)
HEALTH_CHECKS_TOTAL = Counter(
    "vm_health_checks_total",
    "VM liveness probes by result",
    ["result"],  # healthy / unhealthy
)
ESCALATIONS_TOTAL = Counter(
    "vm_escalations_total",
    "Ready VMs moved to error after repeated probe failures",
)

_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")
_TENANT_PATH_RE = re.compile(r"(/tenants/)[^/]+")


def _normalize_path(path: str) -> str:
    """Collapse id path segments to prevent cardinality explosion."""
    path = _UUID_RE.sub("{id}", path)
    path = _TENANT_PATH_RE.sub(r"\1{tenant_id}", path)
    path = re.sub(r"/\d+", "/{id}", path)
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        method = request.method
        path = _normalize_path(request.url.path)

        # Skip metrics endpoint itself
        if path == "/metrics":
            return await call_next(request)

        REQUESTS_IN_PROGRESS.labels(method=method).inc()
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            REQUEST_COUNT.labels(method=method, endpoint=path, status="500").inc()
            REQUEST_DURATION.labels(method=method, endpoint=path).observe(
                time.perf_counter() - start
            )
            REQUESTS_IN_PROGRESS.labels(method=method).dec()
            raise

        elapsed = time.perf_counter() - start
        REQUEST_COUNT.labels(method=method, endpoint=path, status=str(response.status_code)).inc()
        REQUEST_DURATION.labels(method=method, endpoint=path).observe(elapsed)
        REQUESTS_IN_PROGRESS.labels(method=method).dec()

        return response


def metrics_endpoint(request: Request) -> Response:
    """Expose /metrics for Prometheus scraping."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def set_app_info(version: str = "1.0.0", env: str = "development") -> None:
    APP_INFO.info({"version": version, "environment": env})
