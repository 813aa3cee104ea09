"""Live broadcast channel.

LiveChannel keeps a websocket open to the backend's /ws endpoint, joins the
device's broadcast group and turns incoming event-created / event-updated /
event-deleted messages into RemoteChange objects.

Reconnects follow a bounded exponential backoff. Once the bound is exhausted
the channel sits in DISCONNECTED until reconnect() is called; HTTP flushing
does not depend on it.
"""

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from whtzup.types import Event, OperationKind, RemoteChange, parse_datetime

logger = logging.getLogger(__name__)

REMOTE_EVENT_KINDS = {
    "event-created": OperationKind.CREATE,
    "event-updated": OperationKind.UPDATE,
    "event-deleted": OperationKind.DELETE,
}


class ChannelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


ChangeHandler = Callable[[RemoteChange], Union[None, Awaitable[None]]]
StateHandler = Callable[[ChannelState], None]


def join_message(device_id: str) -> Dict[str, Any]:
    return {"event": "join-device", "data": {"deviceId": device_id}}


def parse_remote_message(raw: Union[str, bytes], own_device_id: Optional[str] = None):
    """Decode a broadcast frame into a RemoteChange.

    Returns None for frames that are not event notifications or that
    originate from this device.

    Raises:
        ValueError: if an event notification is malformed.
    """
    message = json.loads(raw)
    if not isinstance(message, dict):
        raise ValueError("Broadcast frame must be an object")

    kind = REMOTE_EVENT_KINDS.get(message.get("event"))
    if kind is None:
        return None

    data = message.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError("Broadcast data must be an object")
    if own_device_id and data.get("deviceId") == own_device_id:
        return None

    event_data = data.get("eventData")
    event = Event.from_api(event_data) if event_data else None
    event_id = data.get("eventId") or (event.id if event else None)
    if not event_id:
        raise ValueError("Broadcast is missing eventId")

    return RemoteChange(
        kind=kind,
        event_id=str(event_id),
        event=event,
        device_id=data.get("deviceId"),
        timestamp=parse_datetime(data.get("timestamp")),
    )


class LiveChannel:
    """Websocket subscription to other devices' changes.

    Args:
        url: ws:// or wss:// URL of the broadcast endpoint.
        device_id: Announced with join-device on every connect.
        on_change: Called with each RemoteChange; may be a coroutine function.
        on_state: Called on every state transition.
        max_attempts: Reconnect attempts before giving up.
        base_delay: First backoff delay in seconds, doubled per attempt.
        max_delay: Backoff cap in seconds.
        connect: Coroutine function opening the socket (websockets.connect).
        sleep: Coroutine function used for backoff waits.
    """

    def __init__(
        self,
        url: str,
        device_id: str,
        on_change: Optional[ChangeHandler] = None,
        on_state: Optional[StateHandler] = None,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        connect: Optional[Callable[..., Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.device_id = device_id
        self.on_change = on_change
        self.on_state = on_state
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._connect = connect or websockets.connect
        self._sleep = sleep

        self._state = ChannelState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._socket: Any = None
        self._closing = False

    @property
    def state(self) -> ChannelState:
        return self._state

    def _set_state(self, state: ChannelState) -> None:
        if state == self._state:
            return
        logger.debug(f"Live channel {self._state.value} -> {state.value}")
        self._state = state
        if self.on_state is not None:
            try:
                self.on_state(state)
            except Exception as e:
                logger.error(f"Live channel state handler failed: {e}", exc_info=True)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number `attempt` (1-based)."""
        return min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)

    # === Lifecycle ===

    def start(self) -> None:
        """Open the channel from IDLE. Later entries go through reconnect()."""
        if self._state != ChannelState.IDLE or self._task is not None:
            return
        self._spawn()

    def reconnect(self) -> bool:
        """Leave DISCONNECTED (or IDLE) and start connecting again.

        Returns False when the channel is already connected or retrying.
        """
        if self._task is not None and not self._task.done():
            return False
        self._spawn()
        return True

    def _spawn(self) -> None:
        self._closing = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def close(self) -> None:
        self._closing = True
        if self._socket is not None:
            try:
                await self._socket.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"Error closing live channel: {e}")
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._socket = None
        self._set_state(ChannelState.IDLE)

    async def wait_closed(self) -> None:
        """Wait until the connection loop ends (terminal state or close())."""
        if self._task is not None:
            await asyncio.shield(self._task)

    # === Connection loop ===

    async def _run(self) -> None:
        failures = 0
        self._set_state(ChannelState.CONNECTING)

        while not self._closing:
            try:
                socket = await self._connect(self.url)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                failures += 1
                if failures > self.max_attempts:
                    logger.warning(
                        f"Live channel gave up after {self.max_attempts} reconnect attempts: {e}"
                    )
                    self._set_state(ChannelState.DISCONNECTED)
                    return
                delay = self.backoff_delay(failures)
                logger.debug(f"Live channel connect failed ({e}); retrying in {delay:.1f}s")
                self._set_state(ChannelState.RECONNECTING)
                await self._sleep(delay)
                continue

            failures = 0
            self._socket = socket
            self._set_state(ChannelState.CONNECTED)
            try:
                await self._serve(socket)
            except ConnectionClosed as e:
                logger.info(f"Live channel closed: {e}")
            except OSError as e:
                logger.info(f"Live channel dropped: {e}")
            finally:
                self._socket = None

            if not self._closing:
                self._set_state(ChannelState.RECONNECTING)
                await self._sleep(self.backoff_delay(1))

    async def _serve(self, socket: Any) -> None:
        await socket.send(json.dumps(join_message(self.device_id)))
        logger.info(f"Live channel joined as device {self.device_id}")
        async for raw in socket:
            await self._handle_frame(raw)

    async def _handle_frame(self, raw: Union[str, bytes]) -> None:
        try:
            change = parse_remote_message(raw, own_device_id=self.device_id)
        except ValueError as e:
            logger.warning(f"Ignoring malformed broadcast: {e}")
            return
        if change is None or self.on_change is None:
            return
        try:
            result = self.on_change(change)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Remote change handler failed for {change.event_id}: {e}", exc_info=True)