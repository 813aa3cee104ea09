"""In-process pub/sub for sync notifications.

UI code subscribes to a closed set of event kinds instead of free-form
string names. Handler failures are logged and never reach the publisher.
"""

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class SyncEventKind(str, Enum):
    NETWORK_STATUS = "network-status"
    SOCKET_STATUS = "socket-status"
    PENDING_OPERATIONS = "pending-operations"
    EVENT_CREATED = "event-created"
    EVENT_UPDATED = "event-updated"
    EVENT_DELETED = "event-deleted"
    OPERATION_FAILED = "operation-failed"
    ERROR = "error"


Handler = Callable[[SyncEventKind, Any], None]


class EventBus:
    """Subscriber lists keyed on SyncEventKind.

    A handler subscribed with kind=None receives every event.
    """

    def __init__(self):
        self._subscribers: Dict[Optional[SyncEventKind], List[Handler]] = defaultdict(list)

    def subscribe(self, kind: Optional[SyncEventKind], handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a callable that removes it again."""
        self._subscribers[kind].append(handler)

        def unsubscribe():
            try:
                self._subscribers[kind].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, kind: SyncEventKind, payload: Any = None) -> int:
        """Deliver to the kind's subscribers and the catch-all ones. Returns handler count."""
        handlers = list(self._subscribers.get(kind, [])) + list(self._subscribers.get(None, []))
        for handler in handlers:
            try:
                handler(kind, payload)
            except Exception as e:
                logger.error(f"Subscriber for {kind.value} failed: {e}", exc_info=True)
        return len(handlers)

    def clear(self) -> None:
        self._subscribers.clear()
