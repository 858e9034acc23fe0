"""
Compute provisioning provider.

`ComputeProvider` is the seam the orchestrator depends on; `HetznerCompute`
is the production implementation over the Hetzner Cloud API.
API Documentation: https://docs.hetzner.cloud/
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import settings
from app.core.exceptions import ConfigError, UpstreamError, ValidationError

logger = logging.getLogger("vmorch.compute")

MANAGED_BY_LABEL = "vmorch"


@dataclass
class InstanceSpec:
    name: str
    user_data: str
    labels: Dict[str, str] = field(default_factory=dict)
    location: Optional[str] = None
    server_type: Optional[str] = None
    image: Optional[str] = None
    ssh_keys: List[str] = field(default_factory=list)


@dataclass
class Instance:
    instance_id: str
    ipv4: Optional[str]
    status: str = "unknown"
    name: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


class ComputeProvider(Protocol):
    def create_instance(self, spec: InstanceSpec) -> Instance: ...

    def delete_instance(self, instance_id: str) -> None: ...


def _to_instance(server: Dict[str, Any]) -> Instance:
    public_net = server.get("public_net") or {}
    ipv4 = (public_net.get("ipv4") or {}).get("ip")
    return Instance(
        instance_id=str(server["id"]),
        ipv4=ipv4,
        status=server.get("status", "unknown"),
        name=server.get("name"),
        labels=server.get("labels") or {},
    )


class HetznerCompute:
    """Hetzner Cloud servers, one per tenant."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = settings.HETZNER_API_KEY if api_key is None else api_key
        self.api_base = (api_base or settings.HETZNER_API_BASE).rstrip("/")
        self.timeout = timeout or settings.HETZNER_TIMEOUT
        self.transport = transport

    def _client(self) -> httpx.Client:
        if not self.api_key:
            raise ConfigError("HETZNER_API_KEY environment variable is not set")
        return httpx.Client(
            base_url=self.api_base,
            headers={
                "Authorization": f"Bearer {self.api_key}",
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
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _send_idempotent(self, method: str, path: str, **kwargs) -> httpx.Response:
        return self._send(method, path, **kwargs)

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        # Server creation is not idempotent: never retried
        sender = self._send if method == "POST" else self._send_idempotent
        try:
            response = sender(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Hetzner %s %s failed: %s", method, path, e)
            raise UpstreamError(f"Hetzner request failed: {e}", provider="hetzner") from e

        if response.status_code == 204 or not response.content:
            data: Dict[str, Any] = {}
        else:
            try:
                data = response.json()
            except ValueError:
                data = {}

        if response.is_error:
            message = (data.get("error") or {}).get("message") or response.text or "Unknown error"
            logger.error("Hetzner API error (%d) on %s %s: %s", response.status_code, method, path, message)
            raise UpstreamError(
                f"Hetzner API error ({response.status_code}): {message}",
                provider="hetzner",
                upstream_status=response.status_code,
            )
        return data

    def create_instance(self, spec: InstanceSpec) -> Instance:
        if not spec.name:
            raise ValidationError("Server name is required")

        payload: Dict[str, Any] = {
            "name": spec.name,
            "server_type": spec.server_type or settings.HETZNER_SERVER_TYPE,
            "image": spec.image or settings.HETZNER_IMAGE,
            "location": spec.location or settings.HETZNER_LOCATION,
            "start_after_create": True,
            "labels": {
                **spec.labels,
                "managed_by": MANAGED_BY_LABEL,
                "created_at": datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ"),
            },
        }
        if spec.user_data:
            payload["user_data"] = spec.user_data
        ssh_keys = spec.ssh_keys or settings.hetzner_ssh_keys
        if ssh_keys:
            payload["ssh_keys"] = ssh_keys

        data = self._request("POST", "/servers", json=payload)
        instance = _to_instance(data["server"])
        logger.info("Created Hetzner server %s (%s) ip=%s", instance.name, instance.instance_id, instance.ipv4)
        return instance

    def delete_instance(self, instance_id: str) -> None:
        if not instance_id:
            raise ValidationError("Server ID is required")
        try:
            self._request("DELETE", f"/servers/{instance_id}")
        except UpstreamError as e:
            if e.upstream_status != 404:
                raise
            logger.info("Hetzner server %s already gone", instance_id)
            return
        logger.info("Deleted Hetzner server %s", instance_id)

    def get_instance(self, instance_id: str) -> Instance:
        if not instance_id:
            raise ValidationError("Server ID is required")
        data = self._request("GET", f"/servers/{instance_id}")
        return _to_instance(data["server"])

    def list_instances(self, label_selector: str = f"managed_by={MANAGED_BY_LABEL}") -> List[Instance]:
        data = self._request("GET", "/servers", params={"label_selector": label_selector})
        return [_to_instance(s) for s in data.get("servers") or []]
