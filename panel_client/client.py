"""
Remote control-plane client.

Thin wrapper over the panel's application and client APIs. Every call has a
bounded timeout, goes through the "panel" circuit breaker and comes back either
as a parsed payload or as one of two error classes:

- ``TransientRemoteError``: connection failure, timeout, 429 or 5xx
- ``PermanentRemoteError``: any other 4xx (404 is ``RemoteNotFoundError``)

Idempotent calls are retried on transient errors; ``create_instance`` is not,
since a timed-out create may still have provisioned a server.
"""
import asyncio
from typing import Any, Dict, Optional
import logging

import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, panel_circuit_breaker
from common.error_handling import (
    TransientRemoteError, PermanentRemoteError, RemoteNotFoundError,
    NoAllocationAvailable, CatalogItemNotFound,
)
from common.retry import (
    RetryConfig, retry_async,
    PANEL_READ_RETRY_CONFIG, PANEL_IDEMPOTENT_WRITE_RETRY_CONFIG, PANEL_CREATE_RETRY_CONFIG,
)
from common.settings import settings
from common.tracing import get_trace_headers
from panel_client.schemas import RemoteInstanceSnapshot, CatalogItem, CreateInstanceSpec

logger = logging.getLogger(__name__)

POWER_SIGNALS = ("start", "stop", "restart", "kill")

def _error_detail(response: requests.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or None
    if isinstance(body, dict) and "errors" in body:
        return body["errors"]
    return body

class PanelClient:
    def __init__(self, base_url: str = None, api_key: str = None, client_key: str = None,
                 timeout: float = None, breaker: CircuitBreaker = None,
                 session: requests.Session = None):
        self.base_url = (base_url or settings.panel_url).rstrip("/")
        self.api_key = api_key or settings.panel_key
        self.client_key = client_key or settings.panel_client_key
        self.timeout = timeout or settings.panel_timeout_seconds
        self.breaker = breaker or panel_circuit_breaker
        self.session = session or requests.Session()
        self.read_retry: RetryConfig = PANEL_READ_RETRY_CONFIG
        self.write_retry: RetryConfig = PANEL_IDEMPOTENT_WRITE_RETRY_CONFIG
        self.create_retry: RetryConfig = PANEL_CREATE_RETRY_CONFIG

    def _request(self, method: str, path: str, key: str, headers: Dict[str, str],
                 json: Any = None, params: Dict[str, Any] = None) -> Optional[Dict[str, Any]]:
        """Blocking HTTP call; runs in the executor behind the circuit breaker"""
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            **headers,
        }
        try:
            response = self.session.request(method, url, headers=headers, json=json,
                                            params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientRemoteError(f"{method} {path} failed: {e}", original_error=e)
        except requests.RequestException as e:
            raise PermanentRemoteError(f"{method} {path} failed: {e}")

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientRemoteError(f"{method} {path} returned {status}", status=status)
        if status == 404:
            raise RemoteNotFoundError(f"{method} {path} returned 404", detail=_error_detail(response))
        if status >= 400:
            raise PermanentRemoteError(f"{method} {path} was rejected ({status})", status=status,
                                       detail=_error_detail(response))
        if status == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise PermanentRemoteError(f"{method} {path} returned a non-JSON body", status=status) from e

    async def _call(self, retry: RetryConfig, method: str, path: str, client_api: bool = False,
                    json: Any = None, params: Dict[str, Any] = None) -> Optional[Dict[str, Any]]:
        key = self.client_key if client_api else self.api_key
        # Executor threads do not inherit context vars, so resolve trace headers here
        headers = get_trace_headers()

        async def attempt():
            try:
                return await self.breaker.call(self._request, method, path, key, headers,
                                               json=json, params=params)
            except CircuitBreakerException as e:
                raise TransientRemoteError(str(e), original_error=e)
            except asyncio.TimeoutError as e:
                raise TransientRemoteError(f"{method} {path} timed out", original_error=e)

        attempt.__name__ = f"panel {method} {path}"
        return await retry_async(attempt, retry)

    async def create_instance(self, spec: CreateInstanceSpec) -> RemoteInstanceSnapshot:
        payload = await self._call(self.create_retry, "POST", "/api/application/servers",
                                   json=spec.to_payload())
        snapshot = RemoteInstanceSnapshot.from_payload(payload)
        logger.info(f"Panel created server {snapshot.id} ({snapshot.name}) for user {spec.user}")
        return snapshot

    async def get_instance(self, server_id: int) -> RemoteInstanceSnapshot:
        payload = await self._call(self.read_retry, "GET", f"/api/application/servers/{server_id}",
                                   params={"include": "allocations,variables"})
        return RemoteInstanceSnapshot.from_payload(payload)

    async def patch_limits(self, server_id: int, allocation_id: int, quota: Dict[str, int],
                           swap: int = None, io: int = None, backups: int = None) -> RemoteInstanceSnapshot:
        """Set absolute limits. The panel wants the whole build block every time."""
        body = {
            "allocation": allocation_id,
            "limits": {
                "memory": quota["ram"],
                "swap": settings.default_swap if swap is None else swap,
                "disk": quota["disk"],
                "io": settings.default_io if io is None else io,
                "cpu": quota["cpu"],
            },
            "feature_limits": {
                "databases": quota["databases"],
                "allocations": quota["allocations"],
                "backups": settings.default_backups if backups is None else backups,
            },
        }
        payload = await self._call(self.write_retry, "PATCH", f"/api/application/servers/{server_id}/build",
                                   json=body)
        return RemoteInstanceSnapshot.from_payload(payload) if payload else None

    async def patch_details(self, server_id: int, user: int, name: str,
                            description: str = None) -> RemoteInstanceSnapshot:
        body = {"name": name, "user": user}
        if description is not None:
            body["description"] = description
        payload = await self._call(self.write_retry, "PATCH", f"/api/application/servers/{server_id}/details",
                                   json=body)
        return RemoteInstanceSnapshot.from_payload(payload) if payload else None

    async def delete_instance(self, server_id: int) -> bool:
        """Delete a server. Returns False when the panel had already lost it."""
        try:
            await self._call(self.write_retry, "DELETE", f"/api/application/servers/{server_id}")
        except RemoteNotFoundError:
            logger.info(f"Panel server {server_id} already gone, treating delete as done")
            return False
        logger.info(f"Panel deleted server {server_id}")
        return True

    async def list_unassigned_allocation(self, node_id: int) -> int:
        page = 1
        while True:
            payload = await self._call(self.read_retry, "GET", f"/api/application/nodes/{node_id}/allocations",
                                       params={"page": page})
            for item in payload.get("data", []):
                attrs = item.get("attributes", {})
                if attrs.get("assigned") is False:
                    return attrs["id"]
            pagination = (payload.get("meta") or {}).get("pagination") or {}
            if page >= pagination.get("total_pages", 1):
                raise NoAllocationAvailable(node_id)
            page += 1

    async def resolve_catalog_item(self, egg_id: int) -> CatalogItem:
        """Find an egg by scanning every nest until one contains it"""
        page = 1
        while True:
            nests = await self._call(self.read_retry, "GET", "/api/application/nests", params={"page": page})
            for nest in nests.get("data", []):
                nest_id = nest["attributes"]["id"]
                try:
                    eggs = await self._call(self.read_retry, "GET", f"/api/application/nests/{nest_id}/eggs",
                                            params={"include": "variables"})
                except PermanentRemoteError as e:
                    # Hidden or removed nest; transient failures propagate
                    logger.warning(f"Skipping nest {nest_id}, eggs not readable: {e}")
                    continue
                for egg in eggs.get("data", []):
                    if egg["attributes"]["id"] == egg_id:
                        logger.info(f"Found egg {egg_id} in nest {nest_id}")
                        return CatalogItem.from_payload(egg)
            pagination = (nests.get("meta") or {}).get("pagination") or {}
            if page >= pagination.get("total_pages", 1):
                raise CatalogItemNotFound(egg_id)
            page += 1

    async def get_resource_usage(self, identifier: str) -> Dict[str, Any]:
        payload = await self._call(self.read_retry, "GET", f"/api/client/servers/{identifier}/resources",
                                   client_api=True)
        return (payload or {}).get("attributes", {})

    async def send_power_signal(self, identifier: str, signal: str) -> None:
        if signal not in POWER_SIGNALS:
            raise PermanentRemoteError(f"Invalid power signal {signal!r}, must be one of {', '.join(POWER_SIGNALS)}")
        await self._call(self.write_retry, "POST", f"/api/client/servers/{identifier}/power",
                         client_api=True, json={"signal": signal})
        logger.info(f"Sent {signal} to panel server {identifier}")

    async def ping(self) -> bool:
        await self._call(self.read_retry, "GET", "/api/application/nodes", params={"per_page": 1})
        return True
