"""Pydantic models for API requests and the row <-> JSON shapes."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Category = Literal["music", "food", "sports", "art", "business", "other"]
OperationKind = Literal["CREATE", "UPDATE", "DELETE"]
ResolutionStrategy = Literal["take-local", "take-server", "field-level-merge"]

# Columns a client may write; id, timestamps and version are server-owned
MUTABLE_COLUMNS = (
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
NON_NULL_COLUMNS = frozenset({"name", "venue", "category", "latitude", "longitude", "starts_at"})

# snake_case column -> camelCase JSON
_API_NAMES = {
    "starts_at": "startsAt",
    "created_by": "createdBy",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "deleted_at": "deletedAt",
}


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


# =============================================================================
# Event Models
# =============================================================================

class EventFields(BaseModel):
    """Shared validation for event payloads. Accepts camelCase or snake_case."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    def to_row(self) -> dict[str, Any]:
        """Column values for the provided fields, ready for the events table."""
        row = {}
        for column, value in self.model_dump(exclude_unset=True).items():
            if column not in MUTABLE_COLUMNS:
                continue
            if value is None and column in NON_NULL_COLUMNS:
                continue
            row[column] = _iso(value)
        return row


class EventCreate(EventFields):
    """Request to create an event."""
    id: str | None = Field(None, min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=500)
    description: str | None = Field("", max_length=2000)
    category: Category = "other"
    venue: str = Field(..., min_length=1, max_length=500)
    address: str | None = Field("", max_length=1000)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    starts_at: datetime = Field(..., alias="startsAt")
    created_by: str | None = Field(None, max_length=255, alias="createdBy")

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v: Any) -> Any:
        return "other" if v in (None, "") else v

    def to_row(self) -> dict[str, Any]:
        row = {column: _iso(getattr(self, column)) for column in MUTABLE_COLUMNS}
        row["description"] = row["description"] or ""
        row["address"] = row["address"] or ""
        return row


class EventUpdate(EventFields):
    """Partial update; only the fields present in the request are written."""
    id: str | None = None
    name: str | None = Field(None, min_length=1, max_length=500)
    description: str | None = Field(None, max_length=2000)
    category: Category | None = None
    venue: str | None = Field(None, min_length=1, max_length=500)
    address: str | None = Field(None, max_length=1000)
    latitude: float | None = Field(None, ge=-90, le=90)
    longitude: float | None = Field(None, ge=-180, le=180)
    starts_at: datetime | None = Field(None, alias="startsAt")
    created_by: str | None = Field(None, max_length=255, alias="createdBy")


def event_to_api(row: dict[str, Any]) -> dict[str, Any]:
    """Database row -> camelCase API JSON."""
    data = {_API_NAMES.get(k, k): _iso(v) for k, v in row.items()}
    for key in ("latitude", "longitude"):
        if data.get(key) is not None:
            data[key] = float(data[key])
    return data


# =============================================================================
# Sync Models
# =============================================================================

class QueueOperationRequest(BaseModel):
    """Request to append an operation to the server-side offline queue."""
    model_config = ConfigDict(populate_by_name=True)

    operation: OperationKind
    event_data: dict[str, Any] = Field(..., alias="eventData")
    device_id: str = Field(..., min_length=1, max_length=255, alias="deviceId")
    # Client-side operation id; resubmissions with the same id are idempotent
    client_operation_id: str | None = Field(
        None, min_length=1, max_length=128, alias="clientOperationId"
    )


class ProcessQueueRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str | None = Field(None, min_length=1, max_length=255, alias="deviceId")


class ConflictItem(BaseModel):
    """One diverged event and how to reconcile it."""
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(..., min_length=1, alias="eventId")
    local_version: dict[str, Any] = Field(..., alias="localVersion")
    server_version: dict[str, Any] | None = Field(None, alias="serverVersion")
    resolution: str
    merge_preference: Literal["local", "server"] | None = Field(None, alias="mergePreference")


class ConflictRequest(BaseModel):
    conflicts: list[ConflictItem]


def queue_entry_to_api(row: dict[str, Any]) -> dict[str, Any]:
    """offline_queue row -> camelCase API JSON."""
    return {
        "id": row.get("id"),
        "operation": row.get("operation"),
        "eventData": row.get("event_data"),
        "deviceId": row.get("device_id"),
        "clientOperationId": row.get("client_operation_id"),
        "timestamp": _iso(row.get("timestamp")),
        "processed": bool(row.get("processed")),
        "errorMessage": row.get("error_message"),
        "processedAt": _iso(row.get("processed_at")),
    }
