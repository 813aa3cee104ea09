"""Core data types for whtzup sync.

Events, queued sync operations and the status structures shared by the
queue, the transport and the sync service.
"""

import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# Retry bound for queued operations before they need explicit attention
MAX_RETRY_COUNT = 3

# Queue entry states
OP_PENDING = "pending"
OP_FAILED = "failed"


class Category(str, Enum):
    """Closed set of event categories."""

    MUSIC = "music"
    FOOD = "food"
    SPORTS = "sports"
    ART = "art"
    BUSINESS = "business"
    OTHER = "other"


VALID_CATEGORY_VALUES = frozenset(c.value for c in Category)


class OperationKind(str, Enum):
    """Kinds of mutation that can be queued while offline."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (accepting a trailing Z) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        raise ValueError(f"Cannot parse datetime from {type(value).__name__}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


# snake_case attribute -> camelCase wire name
_API_FIELD_NAMES = {
    "starts_at": "startsAt",
    "created_by": "createdBy",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "deleted_at": "deletedAt",
}
_DATETIME_FIELDS = ("starts_at", "created_at", "updated_at", "deleted_at")

# Fields a client may change on an existing event
MUTABLE_EVENT_FIELDS = (
    "name",
    "description",
    "category",
    "venue",
    "address",
    "latitude",
    "longitude",
    "starts_at",
    "created_by",
)


def api_field_name(name: str) -> str:
    return _API_FIELD_NAMES.get(name, name)


MUTABLE_API_FIELDS = frozenset(api_field_name(name) for name in MUTABLE_EVENT_FIELDS)


@dataclass
class Event:
    """An event record as seen by the client."""

    id: str
    name: str
    venue: str = ""
    description: str = ""
    category: str = Category.OTHER.value
    address: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    starts_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_api(self) -> Dict[str, Any]:
        """Serialize to the camelCase JSON shape used by the REST API."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            data[api_field_name(f.name)] = value
        return data

    def mutable_api_fields(self) -> Dict[str, Any]:
        """The client-editable subset of to_api(), as sent on update."""
        return {k: v for k, v in self.to_api().items() if k in MUTABLE_API_FIELDS}

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Event":
        """Build an Event from API JSON, accepting camelCase or snake_case keys.

        Coordinates arrive as strings from some backends (Postgres numeric),
        so they are coerced to float.
        """
        if not isinstance(data, dict):
            raise ValueError("Event payload must be an object")
        if not data.get("id"):
            raise ValueError("Event payload is missing 'id'")

        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            api_name = _API_FIELD_NAMES.get(f.name, f.name)
            if api_name in data:
                kwargs[f.name] = data[api_name]
            elif f.name in data:
                kwargs[f.name] = data[f.name]

        for name in _DATETIME_FIELDS:
            if name in kwargs:
                kwargs[name] = parse_datetime(kwargs[name])
        for name in ("latitude", "longitude"):
            if name in kwargs:
                kwargs[name] = float(kwargs[name] or 0.0)
        for name in ("name", "venue", "description", "address"):
            if name in kwargs and kwargs[name] is None:
                kwargs[name] = ""
        if not kwargs.get("category"):
            kwargs["category"] = Category.OTHER.value
        if kwargs.get("version") is None:
            kwargs["version"] = 1
        kwargs.setdefault("name", "")
        return cls(**kwargs)

    def with_changes(self, **changes: Any) -> "Event":
        return replace(self, **changes)


def new_local_event_id() -> str:
    """Client-generated event id; the server keeps it on CREATE."""
    return str(uuid.uuid4())


def new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex}"


@dataclass
class _OperationBase:
    id: str
    device_id: str
    created_at: datetime
    retry_count: int = 0
    last_error: Optional[str] = None
    status: str = OP_PENDING


@dataclass
class CreateOperation(_OperationBase):
    """Create a new event on the server."""

    event: Optional[Event] = None
    kind: OperationKind = field(default=OperationKind.CREATE, init=False)

    @property
    def event_id(self) -> str:
        return self.event.id

    def payload(self) -> Dict[str, Any]:
        return self.event.to_api()


@dataclass
class UpdateOperation(_OperationBase):
    """Overwrite the mutable fields of an existing event."""

    event: Optional[Event] = None
    kind: OperationKind = field(default=OperationKind.UPDATE, init=False)

    @property
    def event_id(self) -> str:
        return self.event.id

    def payload(self) -> Dict[str, Any]:
        return self.event.to_api()


@dataclass
class DeleteOperation(_OperationBase):
    """Soft-delete an event."""

    target_id: str = ""
    kind: OperationKind = field(default=OperationKind.DELETE, init=False)

    @property
    def event_id(self) -> str:
        return self.target_id

    def payload(self) -> Dict[str, Any]:
        return {"id": self.target_id}


SyncOperation = Union[CreateOperation, UpdateOperation, DeleteOperation]


def build_operation(
    kind: Union[OperationKind, str],
    payload: Dict[str, Any],
    device_id: str,
    *,
    operation_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
    retry_count: int = 0,
    last_error: Optional[str] = None,
    status: str = OP_PENDING,
) -> SyncOperation:
    """Decode an operation from its kind and JSON payload.

    Raises:
        ValueError: if the kind is unknown or the payload does not fit it.
    """
    kind = OperationKind(kind)
    common = dict(
        id=operation_id or new_operation_id(),
        device_id=device_id,
        created_at=created_at or utc_now(),
        retry_count=retry_count,
        last_error=last_error,
        status=status,
    )
    if kind is OperationKind.DELETE:
        target_id = payload.get("id") if isinstance(payload, dict) else None
        if not target_id:
            raise ValueError("DELETE payload requires an event id")
        return DeleteOperation(target_id=str(target_id), **common)

    event = Event.from_api(payload)
    if kind is OperationKind.CREATE:
        return CreateOperation(event=event, **common)
    return UpdateOperation(event=event, **common)


@dataclass
class RemoteChange:
    """A create/update/delete announced by another device over the live channel."""

    kind: OperationKind
    event_id: str
    event: Optional[Event] = None
    device_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class FlushResult:
    """Outcome of draining the local queue to the server."""

    submitted: int = 0
    applied: int = 0
    failed: int = 0
    exhausted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def success(self) -> bool:
        return not self.errors and self.failed == 0


@dataclass
class SyncStatus:
    """Aggregate status exposed to the UI layer."""

    is_online: bool
    last_sync_at: Optional[datetime]
    pending_operations: int
    failed_operations: int = 0
    socket_state: str = "idle"
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["last_sync_at"] = format_datetime(self.last_sync_at)
        return d
