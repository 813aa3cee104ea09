"""Request/response channel to the whtzup backend.

SyncHttpClient is the only place the client performs HTTP I/O. Every request
carries the device id in X-Device-ID. Failures are normalised into
TransportError (worth retrying later) or ValidationRejected (never retried).
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from whtzup.errors import TransportError, ValidationRejected
from whtzup.types import Event, SyncOperation

logger = logging.getLogger(__name__)

DEVICE_HEADER = "X-Device-ID"

# 4xx codes that describe a transient condition rather than a bad request
_RETRYABLE_CLIENT_ERRORS = {408, 425, 429}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error", "detail", "message"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


class SyncHttpClient:
    """Async HTTP client scoped to one device.

    Args:
        base_url: Backend root, e.g. http://localhost:4000
        device_id: Sent as X-Device-ID on every call.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use MockTransport or
            ASGITransport).
    """

    def __init__(
        self,
        base_url: str,
        device_id: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={DEVICE_HEADER: device_id},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            message = _error_message(response)
            try:
                body = response.json()
            except ValueError:
                body = None
            logger.debug(f"{method} {path} -> {response.status_code}: {message}")
            if 400 <= response.status_code < 500 and (
                response.status_code not in _RETRYABLE_CLIENT_ERRORS
            ):
                raise ValidationRejected(message, status_code=response.status_code, body=body)
            raise TransportError(message, status_code=response.status_code, body=body)

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(
                f"{method} {path} returned a non-JSON body", status_code=response.status_code
            ) from e
        return data if isinstance(data, dict) else {"data": data}

    # === Health ===

    async def health(self) -> bool:
        """True when the backend answers its health check."""
        try:
            data = await self._request("GET", "/api/health")
        except TransportError:
            return False
        return data.get("status") in ("ok", "healthy")

    # === Events ===

    async def create_event(self, event: Event) -> Event:
        data = await self._request("POST", "/api/events", json=event.to_api())
        return Event.from_api(data["data"])

    async def update_event(self, event: Event) -> Event:
        data = await self._request(
            "PUT", f"/api/events/{event.id}", json=event.mutable_api_fields()
        )
        return Event.from_api(data["data"])

    async def delete_event(self, event_id: str) -> bool:
        data = await self._request("DELETE", f"/api/events/{event_id}")
        return bool(data.get("success", True))

    async def get_event(self, event_id: str) -> Event:
        data = await self._request("GET", f"/api/events/{event_id}")
        return Event.from_api(data["data"])

    async def fetch_events(
        self,
        category: Optional[str] = None,
        venue: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        radius: Optional[float] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Event]:
        params = {
            "category": category,
            "venue": venue,
            "latitude": latitude,
            "longitude": longitude,
            "radius": radius,
            "limit": limit,
            "offset": offset,
        }
        params = {k: v for k, v in params.items() if v is not None}
        data = await self._request("GET", "/api/events", params=params)
        return [Event.from_api(item) for item in data.get("data") or []]

    # === Sync endpoints ===

    async def queue_operation(self, operation: SyncOperation) -> Dict[str, Any]:
        """Submit one queued operation to the server-side queue.

        The operation id travels as clientOperationId so a resubmission after
        a lost response does not create a second server entry.
        """
        data = await self._request(
            "POST",
            "/api/sync/queue",
            json={
                "operation": operation.kind.value,
                "eventData": operation.payload(),
                "deviceId": self.device_id,
                "clientOperationId": operation.id,
            },
        )
        return data.get("data") or {}

    async def process_queue(self) -> Dict[str, Any]:
        return await self._request("POST", "/api/sync/process", json={"deviceId": self.device_id})

    async def sync_status(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/sync/status", params={"deviceId": self.device_id})

    async def resolve_conflicts(self, conflicts: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._request("POST", "/api/sync/conflicts", json={"conflicts": conflicts})

