"""Offline-first sync service.

SyncService ties the local store, the HTTP transport, the live channel and
the network monitor together:

- Mutations are applied optimistically to the local cache. When online they
  go straight to the REST API; when offline, or when the call fails, they are
  appended to the operation queue instead. The UI never sees a transport
  exception from a mutation call.
- On connectivity RESTORED the queue is reloaded, flushed immediately and
  then flushed periodically until the next LOST.
- A flush submits each pending operation to the server queue (keyed by its
  client operation id), asks the server to process the device's queue, and
  dequeues exactly the operations the server reports as applied.
- Changes broadcast by other devices update the cache and are republished on
  the EventBus.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from whtzup.config import ClientConfig
from whtzup.errors import SyncError, TransportError, ValidationRejected
from whtzup.events import EventBus, SyncEventKind
from whtzup.network import ConnectivityTransition, NetworkMonitor
from whtzup.storage import LocalStore
from whtzup.transport.http import SyncHttpClient
from whtzup.transport.live import ChannelState, LiveChannel
from whtzup.types import (
    MUTABLE_EVENT_FIELDS,
    OP_FAILED,
    CreateOperation,
    DeleteOperation,
    Event,
    FlushResult,
    OperationKind,
    RemoteChange,
    SyncOperation,
    SyncStatus,
    UpdateOperation,
    new_local_event_id,
    new_operation_id,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_RECENT_ERRORS = 20

_CHANGE_EVENT_KINDS = {
    OperationKind.CREATE: SyncEventKind.EVENT_CREATED,
    OperationKind.UPDATE: SyncEventKind.EVENT_UPDATED,
    OperationKind.DELETE: SyncEventKind.EVENT_DELETED,
}


class SyncService:
    """Client-side sync coordinator.

    Constructed once per process with its collaborators injected; use
    from_config() to build the default wiring.
    """

    def __init__(
        self,
        store: LocalStore,
        http: SyncHttpClient,
        monitor: Optional[NetworkMonitor] = None,
        channel: Optional[LiveChannel] = None,
        bus: Optional[EventBus] = None,
        queue=None,
        cache=None,
        clock: Callable[[], datetime] = utc_now,
        sync_interval: float = 30.0,
    ):
        self.store = store
        self.queue = queue if queue is not None else store.queue
        self.cache = cache if cache is not None else store.cache
        self.http = http
        self.monitor = monitor or NetworkMonitor()
        self.channel = channel
        self.bus = bus or EventBus()
        self.clock = clock
        self.sync_interval = sync_interval

        self._flush_lock = asyncio.Lock()
        self._periodic_task: Optional[asyncio.Task] = None
        self._errors: List[str] = []

        self.monitor.add_handler(self._on_connectivity)
        if self.channel is not None:
            self.channel.on_change = self.handle_remote_change
            self.channel.on_state = self._on_channel_state

    @classmethod
    def from_config(
        cls,
        config: Optional[ClientConfig] = None,
        transport=None,
        connect=None,
    ) -> "SyncService":
        """Wire up the default store, transports and monitor for a config."""
        config = config or ClientConfig.load()
        store = LocalStore(config.db_path, max_retries=config.max_retries)
        device_id = store.get_device_id()
        http = SyncHttpClient(
            config.api_url,
            device_id,
            timeout=config.request_timeout,
            transport=transport,
        )
        channel = LiveChannel(
            config.ws_url,
            device_id,
            max_attempts=config.reconnect_attempts,
            base_delay=config.reconnect_delay,
            max_delay=config.reconnect_max_delay,
            connect=connect,
        )
        monitor = NetworkMonitor(probe=http.health)
        return cls(
            store=store,
            http=http,
            monitor=monitor,
            channel=channel,
            sync_interval=config.sync_interval,
        )

    @property
    def device_id(self) -> str:
        return self.http.device_id

    @property
    def is_online(self) -> bool:
        return self.monitor.is_online

    # === Lifecycle ===

    async def start(self) -> None:
        """Reload the queue and start observing connectivity and broadcasts."""
        pending = self.queue.restore()
        if pending:
            logger.info(f"{len(pending)} operations pending from a previous session")
        if self.channel is not None:
            self.channel.start()
        self.monitor.start()
        if self.monitor.is_online:
            await self.flush()
        # connectivity may have dropped during the flush
        if self.monitor.is_online:
            self._start_periodic()

    async def close(self) -> None:
        await self._stop_periodic()
        await self.monitor.stop()
        if self.channel is not None:
            await self.channel.close()
        await self.http.close()
        self.store.close()

    async def _on_connectivity(self, transition: ConnectivityTransition) -> None:
        online = transition is ConnectivityTransition.RESTORED
        self.bus.publish(SyncEventKind.NETWORK_STATUS, {"isOnline": online})

        if not online:
            await self._stop_periodic()
            return

        self.queue.restore()
        if self.channel is not None and self.channel.state in (
            ChannelState.DISCONNECTED,
            ChannelState.IDLE,
        ):
            self.channel.reconnect()
        await self.flush()
        if self.monitor.is_online:
            self._start_periodic()

    def _on_channel_state(self, state: ChannelState) -> None:
        self.bus.publish(SyncEventKind.SOCKET_STATUS, {"state": state.value})

    def _start_periodic(self) -> None:
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_flush())

    async def _stop_periodic(self) -> None:
        task, self._periodic_task = self._periodic_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _periodic_flush(self) -> None:
        while True:
            await asyncio.sleep(self.sync_interval)
            if not self.monitor.is_online:
                continue
            try:
                await self.flush()
            except SyncError as e:
                logger.error(f"Periodic flush failed: {e}", exc_info=True)

    # === Mutations ===

    async def create_event(self, event: Event) -> Optional[Event]:
        """Create an event locally and on the server (or queue it).

        Returns None if the server rejected the event as invalid.
        """
        now = self.clock()
        event = event.with_changes(
            id=event.id or new_local_event_id(),
            created_at=event.created_at or now,
            updated_at=event.updated_at or now,
        )
        self.cache.upsert(event)
        self.bus.publish(SyncEventKind.EVENT_CREATED, event)

        operation = CreateOperation(
            id=new_operation_id(), device_id=self.device_id, created_at=now, event=event
        )
        return await self._send_or_queue(operation, previous=None)

    async def update_event(self, event_id: str, **changes: Any) -> Event:
        """Change mutable fields of a cached event.

        Raises:
            ValueError: for fields that clients may not change.
            SyncError: if the event is not in the local cache.
        """
        unknown = set(changes) - set(MUTABLE_EVENT_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        previous = self.cache.get(event_id)
        if previous is None:
            raise SyncError(f"Event {event_id} is not available locally")

        now = self.clock()
        event = previous.with_changes(updated_at=now, **changes)
        self.cache.upsert(event)
        self.bus.publish(SyncEventKind.EVENT_UPDATED, event)

        operation = UpdateOperation(
            id=new_operation_id(), device_id=self.device_id, created_at=now, event=event
        )
        return await self._send_or_queue(operation, previous=previous)

    async def delete_event(self, event_id: str) -> bool:
        """Soft-delete an event. Returns True once applied or queued, False if rejected."""
        previous = self.cache.get(event_id)
        self.cache.remove(event_id)
        self.bus.publish(SyncEventKind.EVENT_DELETED, {"eventId": event_id})

        operation = DeleteOperation(
            id=new_operation_id(),
            device_id=self.device_id,
            created_at=self.clock(),
            target_id=event_id,
        )
        result = await self._send_or_queue(operation, previous=previous)
        return result is True

    async def _send_or_queue(self, operation: SyncOperation, previous: Optional[Event]):
        """Apply directly when possible, otherwise append to the queue.

        An operation for an event that still has queued work is queued
        behind it so the server sees both in the order they were made.
        """
        if self.monitor.is_online and not self.queue.has_pending(operation.event_id):
            try:
                result = await self._apply_direct(operation)
            except ValidationRejected as e:
                self._reject(operation, e, previous)
                return previous
            except TransportError as e:
                logger.info(
                    f"{operation.kind.value} for {operation.event_id} failed ({e}); queued"
                )
                self._note_error(str(e))
            else:
                self.store.set_last_sync_time(self.clock())
                return result

        self.queue.enqueue(operation)
        self._publish_pending()
        return operation.event if operation.kind is not OperationKind.DELETE else True

    async def _apply_direct(self, operation: SyncOperation):
        if operation.kind is OperationKind.CREATE:
            saved = await self.http.create_event(operation.event)
            self.cache.upsert(saved)
            return saved
        if operation.kind is OperationKind.UPDATE:
            saved = await self.http.update_event(operation.event)
            self.cache.upsert(saved)
            return saved
        await self.http.delete_event(operation.event_id)
        return True

    def _reject(
        self, operation: SyncOperation, error: ValidationRejected, previous: Optional[Event]
    ) -> None:
        """Record a server rejection as a failed operation and undo the optimistic change."""
        logger.warning(f"Server rejected {operation.kind.value} for {operation.event_id}: {error}")
        if previous is not None:
            self.cache.upsert(previous)
        elif operation.kind is OperationKind.CREATE:
            self.cache.remove(operation.event_id)

        operation.status = OP_FAILED
        operation.last_error = str(error)
        self.queue.enqueue(operation)
        self.bus.publish(
            SyncEventKind.OPERATION_FAILED,
            {
                "operationId": operation.id,
                "kind": operation.kind.value,
                "eventId": operation.event_id,
                "error": str(error),
            },
        )

    # === Reads ===

    async def fetch_events(self, **filters: Any) -> List[Event]:
        """List events from the server when reachable, else from the cache.

        A full unfiltered listing replaces the cache; pending local changes
        are laid back on top so optimistic state is not lost.
        """
        if self.monitor.is_online:
            try:
                events = await self.http.fetch_events(**filters)
            except TransportError as e:
                logger.info(f"Fetching events failed ({e}); serving cache")
                self._note_error(str(e))
            else:
                if any(v is not None for v in filters.values()):
                    for event in events:
                        self.cache.upsert(event)
                else:
                    self.cache.replace_all(events)
                    self._overlay_pending()
                return events

        return self.cache.list(
            category=filters.get("category"),
            venue=filters.get("venue"),
            limit=filters.get("limit"),
        )

    def get_cached_event(self, event_id: str) -> Optional[Event]:
        return self.cache.get(event_id)

    def _overlay_pending(self) -> None:
        for operation in self.queue.list():
            if operation.kind is OperationKind.DELETE:
                self.cache.remove(operation.event_id)
            else:
                self.cache.upsert(operation.event)

    # === Flush ===

    async def flush(self) -> FlushResult:
        """Drain the local queue to the server in FIFO order.

        Never runs concurrently with itself; a call made while a flush is in
        progress returns immediately with skipped=True.
        """
        result = FlushResult()
        if self._flush_lock.locked():
            result.skipped = True
            return result

        async with self._flush_lock:
            operations = self.queue.list()
            if not operations:
                return result

            logger.debug(f"Flushing {len(operations)} queued operations")
            awaiting: List[SyncOperation] = []
            for operation in operations:
                try:
                    entry = await self.http.queue_operation(operation)
                except ValidationRejected as e:
                    self._fail_permanently(operation, str(e), result)
                    continue
                except TransportError as e:
                    result.errors.append(str(e))
                    self._note_error(str(e))
                    break

                result.submitted += 1
                if entry.get("processed") and not entry.get("errorMessage"):
                    # applied by an earlier process call whose response was lost
                    self.queue.dequeue(operation.id)
                    result.applied += 1
                else:
                    awaiting.append(operation)

            if awaiting:
                await self._process_submitted(awaiting, result)

            if result.applied:
                self.store.set_last_sync_time(self.clock())

        logger.info(
            f"Flush complete: {result.applied} applied, {result.failed} failed, "
            f"{len(result.errors)} transport errors"
        )
        self._publish_pending()
        return result

    async def _process_submitted(self, awaiting: List[SyncOperation], result: FlushResult) -> None:
        try:
            report = await self.http.process_queue()
        except TransportError as e:
            result.errors.append(str(e))
            self._note_error(str(e))
            return

        outcomes: Dict[str, Dict[str, Any]] = {}
        for item in report.get("results") or []:
            client_id = item.get("clientOperationId")
            if client_id:
                outcomes[client_id] = item

        for operation in awaiting:
            outcome = outcomes.get(operation.id)
            if outcome is None:
                # claimed by another process call; the next flush picks it up
                continue
            if outcome.get("success"):
                self.queue.dequeue(operation.id)
                result.applied += 1
                continue

            error = outcome.get("error") or "Server failed to apply operation"
            retries = self.queue.record_failure(operation.id, error)
            result.failed += 1
            if retries >= self.queue.max_retries:
                result.exhausted.append(operation.id)
                self._publish_failure(operation, error)

    def _fail_permanently(self, operation: SyncOperation, error: str, result: FlushResult) -> None:
        self.queue.mark_failed(operation.id, error)
        result.failed += 1
        result.exhausted.append(operation.id)
        self._publish_failure(operation, error)

    def _publish_failure(self, operation: SyncOperation, error: str) -> None:
        self.bus.publish(
            SyncEventKind.OPERATION_FAILED,
            {
                "operationId": operation.id,
                "kind": operation.kind.value,
                "eventId": operation.event_id,
                "error": error,
            },
        )

    def _publish_pending(self) -> None:
        self.bus.publish(SyncEventKind.PENDING_OPERATIONS, {"count": self.queue.count()})

    def _note_error(self, message: str) -> None:
        self._errors.append(message)
        del self._errors[:-MAX_RECENT_ERRORS]

    # === Remote changes ===

    def handle_remote_change(self, change: RemoteChange) -> None:
        """Apply another device's change to the cache and notify subscribers."""
        if change.kind is OperationKind.DELETE:
            self.cache.remove(change.event_id)
            self.bus.publish(SyncEventKind.EVENT_DELETED, {"eventId": change.event_id})
            return

        if change.event is None:
            logger.debug(f"Remote {change.kind.value} for {change.event_id} carried no event")
            return

        if self.queue.has_pending(change.event_id):
            logger.debug(f"Keeping local state for {change.event_id}; changes still queued")
        else:
            self.cache.upsert(change.event)
        self.bus.publish(_CHANGE_EVENT_KINDS[change.kind], change.event)

    # === Conflicts ===

    async def resolve_conflicts(self, conflicts: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Ask the server to reconcile diverged events and cache the outcome.

        Each conflict is {eventId, localVersion, serverVersion?, resolution}.

        Raises:
            TransportError: if the server cannot be reached.
        """
        report = await self.http.resolve_conflicts(conflicts)
        for item in report.get("results") or []:
            if item.get("success") and item.get("data"):
                event = Event.from_api(item["data"])
                self.cache.upsert(event)
                self.bus.publish(SyncEventKind.EVENT_UPDATED, event)
        return report

    # === Status ===

    def status(self) -> SyncStatus:
        counts = self.queue.status()
        return SyncStatus(
            is_online=self.monitor.is_online,
            last_sync_at=self.store.get_last_sync_time(),
            pending_operations=counts["pending"],
            failed_operations=counts["failed"],
            socket_state=self.channel.state.value if self.channel else ChannelState.IDLE.value,
            errors=list(self._errors),
        )

    async def remote_status(self) -> Dict[str, Any]:
        """Local status merged with the server's view of this device's queue."""
        local = self.status().to_dict()
        try:
            server = await self.http.sync_status()
        except TransportError as e:
            logger.debug(f"Server status unavailable: {e}")
            return {"local": local, "server": None}
        return {"local": local, "server": server}
