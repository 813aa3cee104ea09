"""Database utilities for Supabase integration."""

import math
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import Depends

from supabase import Client, create_client

from .config import Settings, get_settings
from .errors import EventDeletedError, EventNotFoundError, VersionConflictError
from .models import EventCreate, EventUpdate

_supabase_client: Client | None = None

def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        # Prefer new secret key, fall back to legacy service_role_key
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not api_key:
            raise ValueError("Either SUPABASE_SECRET_KEY or SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


def get_db(settings: Annotated[Settings, Depends(get_settings)]) -> Client:
    """FastAPI dependency for Supabase client."""
    return get_supabase_client(settings)


# Type alias for dependency injection
Database = Annotated[Client, Depends(get_db)]


# =============================================================================
# Table Names
# =============================================================================

EVENTS_TABLE = "events"
OFFLINE_QUEUE_TABLE = "offline_queue"
SYNC_LOG_TABLE = "sync_log"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# =============================================================================
# Event Reads
# =============================================================================

async def get_event(db: Client, event_id: str, include_deleted: bool = False) -> dict | None:
    """Fetch one event. Soft-deleted events are hidden unless include_deleted."""
    query = db.table(EVENTS_TABLE).select("*").eq("id", event_id)
    if not include_deleted:
        query = query.is_("deleted_at", "null")
    result = query.limit(1).execute()
    return result.data[0] if result.data else None


async def get_live_event(db: Client, event_id: str) -> dict:
    """Fetch an event that may still be mutated.

    Raises:
        EventNotFoundError: no such event.
        EventDeletedError: the event is soft-deleted.
    """
    row = await get_event(db, event_id, include_deleted=True)
    if row is None:
        raise EventNotFoundError(event_id)
    if row.get("deleted_at"):
        raise EventDeletedError(event_id)
    return row


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    r = 6371.0
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * r * math.asin(math.sqrt(a))


async def list_events(
    db: Client,
    *,
    limit: int,
    offset: int = 0,
    category: str | None = None,
    venue: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    radius_km: float | None = None,
) -> list[dict]:
    """Live events, most recent start first.

    A radius search narrows by bounding box in the query and then filters by
    exact great-circle distance here; pagination applies after the distance
    filter in that case.
    """
    query = db.table(EVENTS_TABLE).select("*").is_("deleted_at", "null")
    if category:
        query = query.eq("category", category)
    if venue:
        query = query.ilike("venue", f"%{venue}%")

    geo = latitude is not None and longitude is not None and radius_km is not None
    if geo:
        lat_delta = radius_km / 111.0
        lon_delta = radius_km / max(111.0 * math.cos(math.radians(latitude)), 1e-6)
        query = (
            query.gte("latitude", latitude - lat_delta)
            .lte("latitude", latitude + lat_delta)
            .gte("longitude", longitude - lon_delta)
            .lte("longitude", longitude + lon_delta)
        )

    query = query.order("starts_at", desc=True)
    if not geo:
        result = query.range(offset, offset + limit - 1).execute()
        return result.data or []

    rows = [
        row
        for row in (query.execute().data or [])
        if haversine_km(latitude, longitude, float(row["latitude"]), float(row["longitude"]))
        <= radius_km
    ]
    return rows[offset:offset + limit]


async def find_live_event_by_name_and_venue(db: Client, name: str, venue: str) -> dict | None:
    result = (
        db.table(EVENTS_TABLE)
        .select("*")
        .eq("name", name)
        .eq("venue", venue)
        .is_("deleted_at", "null")
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


# =============================================================================
# Event Mutations
# =============================================================================

async def insert_event(db: Client, payload: EventCreate) -> dict:
    """Insert a new event at version 1, keeping a client-supplied id."""
    now = _now_iso()
    row = payload.to_row()
    row.update(
        {
            "id": payload.id or str(uuid.uuid4()),
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
            "version": 1,
        }
    )
    result = db.table(EVENTS_TABLE).insert(row).execute()
    return result.data[0] if result.data else row


async def write_event_fields(db: Client, current: dict, fields: dict[str, Any]) -> dict:
    """Overwrite fields of a live event, bumping its version.

    The write is guarded by the version that was read, so an interleaved
    update makes this one fail instead of being silently lost.

    Raises:
        VersionConflictError: the row changed since `current` was read.
        EventDeletedError: the row was soft-deleted in the meantime.
    """
    expected = int(current.get("version") or 1)
    changes = dict(fields)
    changes["version"] = expected + 1
    changes["updated_at"] = _now_iso()
    result = (
        db.table(EVENTS_TABLE)
        .update(changes)
        .eq("id", current["id"])
        .eq("version", expected)
        .is_("deleted_at", "null")
        .execute()
    )
    if result.data:
        return result.data[0]

    latest = await get_event(db, current["id"], include_deleted=True)
    if latest is not None and latest.get("deleted_at"):
        raise EventDeletedError(current["id"])
    if latest is None:
        raise EventNotFoundError(current["id"])
    raise VersionConflictError(current["id"], expected)


async def update_event(db: Client, event_id: str, payload: EventUpdate) -> tuple[dict, dict]:
    """Apply a partial update. Returns (old_row, new_row)."""
    current = await get_live_event(db, event_id)
    updated = await write_event_fields(db, current, payload.to_row())
    return current, updated


async def soft_delete_event(db: Client, event_id: str) -> tuple[dict, dict]:
    """Set deleted_at on a live event. Returns (old_row, new_row)."""
    current = await get_live_event(db, event_id)
    now = _now_iso()
    result = (
        db.table(EVENTS_TABLE)
        .update({"deleted_at": now, "updated_at": now})
        .eq("id", event_id)
        .is_("deleted_at", "null")
        .execute()
    )
    if not result.data:
        raise EventDeletedError(event_id)
    return current, result.data[0]


# =============================================================================
# Offline Queue
# =============================================================================

async def insert_queue_entry(
    db: Client,
    operation: str,
    event_data: dict,
    device_id: str,
    client_operation_id: str | None = None,
) -> dict:
    row = {
        "operation": operation,
        "event_data": event_data,
        "device_id": device_id,
        "client_operation_id": client_operation_id,
        "timestamp": _now_iso(),
        "processed": False,
    }
    result = db.table(OFFLINE_QUEUE_TABLE).insert(row).execute()
    return result.data[0] if result.data else row


async def find_reusable_queue_entry(
    db: Client, device_id: str, client_operation_id: str
) -> dict | None:
    """Latest entry for this client operation that is pending or succeeded.

    Entries that were processed with an error are not reusable: a resubmission
    after a failure appends a fresh entry.
    """
    result = (
        db.table(OFFLINE_QUEUE_TABLE)
        .select("*")
        .eq("device_id", device_id)
        .eq("client_operation_id", client_operation_id)
        .order("id", desc=True)
        .execute()
    )
    for row in result.data or []:
        if not row.get("processed") or not row.get("error_message"):
            return row
    return None


async def claim_queue_entries(
    db: Client, device_id: str, claim_token: str, stale_before: datetime
) -> list[dict]:
    """Atomically claim a device's unprocessed entries.

    A single conditional UPDATE takes every unprocessed row that is unclaimed
    or whose claim is older than stale_before. Rows claimed by a concurrent
    caller do not match, so no row is handed to two processors.
    """
    stale = stale_before.isoformat()
    result = (
        db.table(OFFLINE_QUEUE_TABLE)
        .update({"claim_token": claim_token, "claimed_at": _now_iso()})
        .eq("device_id", device_id)
        .eq("processed", False)
        .or_(f'claim_token.is.null,claimed_at.lt."{stale}"')
        .execute()
    )
    return [row for row in (result.data or []) if row.get("claim_token") == claim_token]


async def complete_queue_entry(db: Client, entry_id: int, error: str | None = None) -> None:
    db.table(OFFLINE_QUEUE_TABLE).update(
        {
            "processed": True,
            "processed_at": _now_iso(),
            "error_message": error,
        }
    ).eq("id", entry_id).execute()


async def get_queue_counts(db: Client, device_id: str) -> dict[str, int]:
    result = (
        db.table(OFFLINE_QUEUE_TABLE)
        .select("id, processed, error_message")
        .eq("device_id", device_id)
        .execute()
    )
    rows = result.data or []
    processed = sum(1 for row in rows if row.get("processed"))
    return {
        "total": len(rows),
        "processed": processed,
        "pending": len(rows) - processed,
        "errors": sum(1 for row in rows if row.get("error_message")),
    }


# =============================================================================
# Sync Log
# =============================================================================

async def append_sync_log(
    db: Client,
    event_id: str | None,
    operation: str,
    device_id: str | None,
    old_data: dict | None = None,
    new_data: dict | None = None,
) -> None:
    db.table(SYNC_LOG_TABLE).insert(
        {
            "event_id": event_id,
            "operation": operation,
            "old_data": old_data,
            "new_data": new_data,
            "device_id": device_id,
            "timestamp": _now_iso(),
        }
    ).execute()


async def get_last_sync(db: Client, device_id: str) -> str | None:
    """Timestamp of the device's most recent logged change."""
    result = (
        db.table(SYNC_LOG_TABLE)
        .select("timestamp")
        .eq("device_id", device_id)
        .order("timestamp", desc=True)
        .limit(1)
        .execute()
    )
    return result.data[0]["timestamp"] if result.data else None
