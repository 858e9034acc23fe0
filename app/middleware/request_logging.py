"""
Request Logging Middleware

- Assigns a unique request_id to every request (echoed as X-Request-ID)
- Sets tenant_id context when the path names a tenant
- Logs request start & end with timing
"""

import logging
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.logging_config import generate_request_id, request_id_ctx, tenant_id_ctx

logger = logging.getLogger("vmorch.request")

_TENANT_IN_PATH = re.compile(r"/tenants/([^/]+)")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        rid = request.headers.get("X-Request-ID") or generate_request_id()
        request_id_ctx.set(rid[:64])

        match = _TENANT_IN_PATH.search(request.url.path)
        tenant_id_ctx.set(match.group(1) if match else "-")

        method = request.method
        path = request.url.path
        client_ip = request.client.host if request.client else "-"

        logger.info("→ %s %s from %s", method, path, client_ip)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = (time.perf_counter() - start) * 1000
            logger.exception("✗ %s %s (%.1fms, unhandled exception)", method, path, elapsed)
            raise

        elapsed = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = rid[:64]

        logger.info("← %s %s %d %.1fms", method, path, response.status_code, elapsed)
        return response
