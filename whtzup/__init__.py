"""whtzup - offline-first event sync client.

Local operation queue, connectivity monitor, REST and live transports, and
the SyncService that coordinates them.
"""

from whtzup.config import ClientConfig
from whtzup.errors import SyncError, TransportError, ValidationRejected
from whtzup.events import EventBus, SyncEventKind
from whtzup.sync import SyncService
from whtzup.types import Event, FlushResult, OperationKind, SyncStatus

__version__ = "0.1.0"
__all__ = [
    "ClientConfig",
    "Event",
    "EventBus",
    "FlushResult",
    "OperationKind",
    "SyncError",
    "SyncEventKind",
    "SyncService",
    "SyncStatus",
    "TransportError",
    "ValidationRejected",
]
