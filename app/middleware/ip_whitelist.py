"""
IP allow-list for privileged endpoints

The admin API (/api/v1/admin/*) and the health sweep trigger
(/api/v1/cron/*) already require bearer tokens; with
ADMIN_IP_WHITELIST_ENABLED they additionally only answer callers from
ADMIN_IP_WHITELIST (comma-separated IPs / CIDRs).

Forwarding headers are honoured only when the direct peer is listed in
ADMIN_TRUSTED_PROXY_IPS.
"""

import ipaddress
import logging
from typing import List, Optional, Union

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from app.config import settings

logger = logging.getLogger("vmorch.ip_whitelist")

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

PRIVILEGED_PREFIXES = (
    f"{settings.API_V1_STR}/admin",
    f"{settings.API_V1_STR}/cron",
)


def parse_networks(raw: str) -> List[Network]:
    networks: List[Network] = []
    for entry in filter(None, (part.strip() for part in raw.split(","))):
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.warning("Ignoring invalid IP/CIDR %r in allow-list", entry)
    return networks


def ip_in(ip: Optional[str], networks: List[Network]) -> bool:
    try:
        addr = ipaddress.ip_address(ip or "")
    except ValueError:
        return False
    return any(addr in net for net in networks)


def client_ip(request: Request, trusted_proxies: List[Network]) -> str:
    peer = request.client.host if request.client else ""
    if not ip_in(peer, trusted_proxies):
        return peer
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP", peer).strip()


def is_privileged(path: str) -> bool:
    return path.startswith(PRIVILEGED_PREFIXES)


class AdminIPWhitelistMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, enabled: Optional[bool] = None, whitelist: Optional[str] = None,
                 trusted_proxies: Optional[str] = None):
        super().__init__(app)
        self.enabled = settings.ADMIN_IP_WHITELIST_ENABLED if enabled is None else enabled
        self.whitelist = parse_networks(settings.ADMIN_IP_WHITELIST if whitelist is None else whitelist)
        self.trusted_proxies = parse_networks(
            settings.ADMIN_TRUSTED_PROXY_IPS if trusted_proxies is None else trusted_proxies
        )
        if self.enabled:
            logger.info("Privileged IP allow-list active: %s", [str(n) for n in self.whitelist])

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.enabled or not is_privileged(request.url.path):
            return await call_next(request)

        ip = client_ip(request, self.trusted_proxies)
        if ip_in(ip, self.whitelist):
            return await call_next(request)

        logger.warning("Privileged API access denied: IP=%s path=%s", ip, request.url.path)
        return JSONResponse(status_code=403, content={"success": False, "error": "Access denied"})
