"""
Orchestrator error taxonomy.

Every error carries the HTTP status it maps to, so API handlers can render
it without a lookup table.
"""
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class OrchestratorError(Exception):
    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigError(OrchestratorError):
    """Missing credential or setting. Fatal, never retried."""
    status_code = 500


class ValidationError(OrchestratorError):
    status_code = 400


class BadRequestError(OrchestratorError):
    status_code = 400


class UnauthorizedError(OrchestratorError):
    status_code = 401


class ForbiddenError(OrchestratorError):
    status_code = 403


class NotFoundError(OrchestratorError):
    status_code = 404


class ConflictError(OrchestratorError):
    status_code = 409


class UpstreamError(OrchestratorError):
    """Compute or DNS provider failure. `upstream_status` is the provider's HTTP status, if any."""
    status_code = 502

    def __init__(self, message: str, provider: str = "upstream", upstream_status: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.upstream_status = upstream_status


async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message},
    )
