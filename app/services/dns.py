"""
DNS Record Manager (Cloudflare)

Maps `<subdomain>.<VM_BASE_DOMAIN>` to a VM's IPv4 address with a
non-proxied A record. Proxying stays off because tenant VMs expose non-HTTP
protocols that need direct L4 connectivity.

The zone id is looked up once per process and cached.
"""
import ipaddress
import logging
import re
import threading
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import settings
from app.core.exceptions import ConfigError, UpstreamError, ValidationError
from app.schemas.tenant_vm import DnsRecord

logger = logging.getLogger("vmorch.dns")

_IPV4_RE = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")

# (api_base, zone_name) -> zone id, shared by every manager in the process
_zone_cache: Dict[tuple, str] = {}
_zone_lock = threading.Lock()


def clear_zone_cache() -> None:
    with _zone_lock:
        _zone_cache.clear()


def is_valid_ipv4(ip: str) -> bool:
    if not ip or not _IPV4_RE.match(ip):
        return False
    try:
        ipaddress.IPv4Address(ip)
    except ValueError:
        return False
    return True


def _to_record(raw: Dict[str, Any]) -> DnsRecord:
    return DnsRecord(
        id=raw["id"],
        name=raw["name"],
        type=raw.get("type", "A"),
        content=raw["content"],
        ttl=raw.get("ttl", 1),
        proxied=bool(raw.get("proxied", False)),
        created=raw.get("created_on"),
    )


class CloudflareDNS:
    """Cloudflare DNS record API for the VM base domain."""

    def __init__(
        self,
        api_token: Optional[str] = None,
        zone_name: Optional[str] = None,
        api_base: Optional[str] = None,
        ttl: Optional[int] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_token = settings.CLOUDFLARE_API_TOKEN if api_token is None else api_token
        self.zone_name = zone_name or settings.VM_BASE_DOMAIN
        self.api_base = (api_base or settings.CLOUDFLARE_API_BASE).rstrip("/")
        self.ttl = ttl or settings.DNS_RECORD_TTL
        self.timeout = timeout
        self.transport = transport

    # ── HTTP plumbing ──

    def _require_token(self) -> None:
        if not self.api_token:
            raise ConfigError("CLOUDFLARE_API_TOKEN environment variable is not set")

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.api_base,
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self.transport,
        )

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        with self._client() as client:
            return client.request(method, path, **kwargs)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    def _send_idempotent(self, method: str, path: str, **kwargs) -> httpx.Response:
        return self._send(method, path, **kwargs)

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        self._require_token()
        sender = self._send_idempotent if method in ("GET", "DELETE") else self._send
        try:
            response = sender(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Cloudflare %s %s failed: %s", method, path, e)
            raise UpstreamError(f"Cloudflare request failed: {e}", provider="cloudflare") from e

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(
                f"Cloudflare returned a non-JSON response ({response.status_code})",
                provider="cloudflare",
                upstream_status=response.status_code,
            ) from e

        if not data.get("success", False):
            errors = data.get("errors") or []
            message = ", ".join(str(e.get("message", "")) for e in errors if e) or "Unknown error"
            logger.error("Cloudflare API error on %s %s: %s", method, path, message)
            raise UpstreamError(
                f"Cloudflare API error: {message}",
                provider="cloudflare",
                upstream_status=response.status_code,
            )
        return data

    def get_zone_id(self) -> str:
        key = (self.api_base, self.zone_name)
        cached = _zone_cache.get(key)
        if cached:
            return cached

        self._require_token()
        with _zone_lock:
            if key in _zone_cache:
                return _zone_cache[key]
            data = self._request("GET", "/zones", params={"name": self.zone_name})
            zones = data.get("result") or []
            if not zones:
                raise ConfigError(f"Zone not found: {self.zone_name}")
            _zone_cache[key] = zones[0]["id"]
            logger.info("Resolved Cloudflare zone %s -> %s", self.zone_name, zones[0]["id"])
            return _zone_cache[key]

    def fqdn(self, subdomain: str) -> str:
        return f"{subdomain}.{self.zone_name}"

    # ── Record operations ──

    def create_record(self, subdomain: str, ip: str) -> DnsRecord:
        if not subdomain:
            raise ValidationError("Subdomain is required")
        if not is_valid_ipv4(ip):
            raise ValidationError("Valid IPv4 address is required")
        self._require_token()

        zone_id = self.get_zone_id()
        payload = {
            "type": "A",
            "name": self.fqdn(subdomain),
            "content": ip,
            "ttl": self.ttl,
            "proxied": False,
            "comment": "Created by VM provisioning",
        }
        data = self._request("POST", f"/zones/{zone_id}/dns_records", json=payload)
        record = _to_record(data["result"])
        logger.info("Created A record %s -> %s (id=%s)", record.name, record.content, record.id)
        return record

    def get_record(self, subdomain: str) -> Optional[DnsRecord]:
        if not subdomain:
            raise ValidationError("Subdomain is required")
        self._require_token()

        zone_id = self.get_zone_id()
        data = self._request(
            "GET",
            f"/zones/{zone_id}/dns_records",
            params={"type": "A", "name": self.fqdn(subdomain)},
        )
        results = data.get("result") or []
        if not results:
            return None
        return _to_record(results[0])

    def list_records(self) -> List[DnsRecord]:
        self._require_token()

        zone_id = self.get_zone_id()
        records: List[DnsRecord] = []
        page, total_pages = 1, 1
        while page <= total_pages:
            data = self._request(
                "GET",
                f"/zones/{zone_id}/dns_records",
                params={"type": "A", "page": page, "per_page": 100},
            )
            records.extend(_to_record(r) for r in data.get("result") or [])
            total_pages = (data.get("result_info") or {}).get("total_pages", 1) or 1
            page += 1
        return records

    def delete_record(self, record_id: str) -> Dict[str, Any]:
        if not record_id:
            raise ValidationError("Record ID is required")
        self._require_token()

        zone_id = self.get_zone_id()
        try:
            self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")
        except UpstreamError as e:
            if e.upstream_status != 404:
                raise
            logger.info("DNS record %s already gone", record_id)
            return {"success": True, "deleted_record_id": record_id, "already_deleted": True}
        logger.info("Deleted DNS record %s", record_id)
        return {"success": True, "deleted_record_id": record_id}
