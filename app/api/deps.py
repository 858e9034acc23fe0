import hmac
import logging
from typing import Callable, Generator, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.config import settings
from app.db.session import SessionLocal
from app.services.compute import ComputeProvider, HetznerCompute
from app.services.dns import CloudflareDNS
from app.services.health_monitor import HealthMonitor
from app.services.provisioning import ProvisioningOrchestrator

logger = logging.getLogger("vmorch.auth")

bearer_scheme = HTTPBearer(auto_error=False)


# ── Database ──

def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def get_db(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


# ── External providers ──

def get_dns_manager() -> CloudflareDNS:
    return CloudflareDNS()


def get_compute() -> ComputeProvider:
    return HetznerCompute()


def get_orchestrator(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    compute: ComputeProvider = Depends(get_compute),
    dns: CloudflareDNS = Depends(get_dns_manager),
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(session_factory, compute, dns)


def get_health_monitor(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> HealthMonitor:
    return HealthMonitor(session_factory)


# ── Bearer tokens ──

def _token_matches(credentials: Optional[HTTPAuthorizationCredentials], expected: str) -> bool:
    if credentials is None or not expected:
        return False
    return hmac.compare_digest(credentials.credentials.encode(), expected.encode())


def require_admin_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    """Admin endpoints are closed unless ADMIN_API_TOKEN is configured and presented."""
    if not _token_matches(credentials, settings.ADMIN_API_TOKEN):
        logger.warning("Rejected admin request without a valid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_cron_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    if not settings.CRON_SECRET:
        logger.warning(
            "CRON_SECRET not set - health check endpoint is not protected. "
            "Set CRON_SECRET to secure this endpoint."
        )
        return
    if not _token_matches(credentials, settings.CRON_SECRET):
        logger.warning("Unauthorized health check attempt")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_service_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    """Dashboard-to-orchestrator calls; open when no service token is configured (development)."""
    if not settings.ORCHESTRATOR_SERVICE_TOKEN:
        return
    if not _token_matches(credentials, settings.ORCHESTRATOR_SERVICE_TOKEN):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
