"""Live broadcast of event changes over websockets.

Connections join a device group with a join-device message. Every durable
write is broadcast to all connections except those of the originating
device, which already holds the change locally.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from .logging_config import get_logger

logger = get_logger("whtzup.broadcast")

EVENT_CREATED = "event-created"
EVENT_UPDATED = "event-updated"
EVENT_DELETED = "event-deleted"
RELAYED_EVENTS = frozenset({EVENT_CREATED, EVENT_UPDATED, EVENT_DELETED})

OPERATION_EVENTS = {
    "CREATE": EVENT_CREATED,
    "UPDATE": EVENT_UPDATED,
    "DELETE": EVENT_DELETED,
}


def build_message(
    event: str,
    event_id: str,
    device_id: str | None,
    event_data: dict[str, Any] | None = None,
    timestamp: str | None = None,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "eventId": event_id,
        "deviceId": device_id,
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
    }
    if event_data is not None:
        data["eventData"] = event_data
    return {"event": event, "data": data}


class ConnectionManager:
    """Tracks websocket connections grouped by device id."""

    def __init__(self) -> None:
        self.active_connections: dict[str, WebSocket] = {}
        # connection_id -> device_id (None until join-device)
        self.connection_devices: dict[str, str | None] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """Accept and register a connection. Returns its connection id."""
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket
        self.connection_devices[connection_id] = None
        logger.info(f"WebSocket connection established: {connection_id}")
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        if self.active_connections.pop(connection_id, None) is not None:
            device_id = self.connection_devices.pop(connection_id, None)
            logger.info(f"WebSocket connection closed: {connection_id} (device {device_id})")

    def join_device(self, connection_id: str, device_id: str) -> None:
        """Put a connection into its device's broadcast group."""
        if connection_id in self.active_connections:
            self.connection_devices[connection_id] = device_id
            logger.info(f"Device {device_id} joined on connection {connection_id}")

    def device_connections(self, device_id: str) -> list[str]:
        return [cid for cid, dev in self.connection_devices.items() if dev == device_id]

    async def broadcast(
        self,
        event: str,
        event_id: str,
        event_data: dict[str, Any] | None = None,
        exclude_device: str | None = None,
        timestamp: str | None = None,
    ) -> int:
        """Send a change notification to every other device. Returns deliveries."""
        message = build_message(event, event_id, exclude_device, event_data, timestamp)
        delivered = 0
        for connection_id, websocket in list(self.active_connections.items()):
            if exclude_device and self.connection_devices.get(connection_id) == exclude_device:
                continue
            try:
                await websocket.send_json(message)
                delivered += 1
            except (ConnectionError, RuntimeError, WebSocketDisconnect) as e:
                logger.warning(f"Dropping dead connection {connection_id}: {e}")
                self.disconnect(connection_id)
        logger.debug(f"Broadcast {event} for {event_id} to {delivered} connection(s)")
        return delivered


manager = ConnectionManager()


def get_broadcaster() -> ConnectionManager:
    """FastAPI dependency for the process-wide connection manager."""
    return manager
