"""Event routes: REST CRUD over the events table.

Every successful write is appended to sync_log and broadcast to the other
devices. Soft-deleted events are invisible here.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ..broadcast import EVENT_CREATED, EVENT_DELETED, EVENT_UPDATED, ConnectionManager, get_broadcaster
from ..config import Settings, get_settings
from ..database import (
    Database,
    append_sync_log,
    find_live_event_by_name_and_venue,
    get_event,
    insert_event,
    list_events,
    soft_delete_event,
    update_event,
)
from ..device import DeviceId
from ..logging_config import get_logger, log_sync_operation
from ..models import Category, EventCreate, EventUpdate, event_to_api

logger = get_logger("whtzup.events")
router = APIRouter(prefix="/api/events", tags=["events"])

Broadcaster = Annotated[ConnectionManager, Depends(get_broadcaster)]


@router.get("")
async def get_events(
    device_id: DeviceId,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
    limit: Annotated[int | None, Query(ge=1)] = None,
    offset: Annotated[int, Query(ge=0)] = 0,
    category: Category | None = None,
    venue: Annotated[str | None, Query(max_length=500)] = None,
    latitude: Annotated[float | None, Query(ge=-90, le=90)] = None,
    longitude: Annotated[float | None, Query(ge=-180, le=180)] = None,
    radius: Annotated[float | None, Query(gt=0, description="Search radius in km")] = None,
):
    """List live events, most recent start first."""
    limit = min(limit or settings.events_default_limit, settings.events_max_limit)
    rows = await list_events(
        db,
        limit=limit,
        offset=offset,
        category=category,
        venue=venue,
        latitude=latitude,
        longitude=longitude,
        radius_km=radius,
    )
    return {
        "success": True,
        "data": [event_to_api(row) for row in rows],
        "count": len(rows),
        "deviceId": device_id,
    }


@router.get("/{event_id}")
async def get_single_event(event_id: str, device_id: DeviceId, db: Database):
    row = await get_event(db, event_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return {"success": True, "data": event_to_api(row)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_event(
    response: Response,
    body: EventCreate,
    device_id: DeviceId,
    db: Database,
    broadcaster: Broadcaster,
):
    """
    Create an event.

    A live event with the same id, or the same name and venue, is returned
    instead of creating a duplicate.
    """
    existing = None
    if body.id:
        existing = await get_event(db, body.id)
    if existing is None:
        existing = await find_live_event_by_name_and_venue(db, body.name, body.venue)
    if existing is not None:
        response.status_code = status.HTTP_200_OK
        return {
            "success": True,
            "data": event_to_api(existing),
            "message": "Event already exists",
            "isDuplicate": True,
        }

    row = await insert_event(db, body)
    data = event_to_api(row)
    await append_sync_log(db, row["id"], "CREATE", device_id, new_data=row)
    await broadcaster.broadcast(EVENT_CREATED, row["id"], data, exclude_device=device_id)
    log_sync_operation(device_id, "CREATE", row["id"], True)
    return {"success": True, "data": data, "message": "Event created successfully"}


@router.put("/{event_id}")
async def modify_event(
    event_id: str,
    body: EventUpdate,
    device_id: DeviceId,
    db: Database,
    broadcaster: Broadcaster,
):
    """Update the provided fields of a live event and bump its version."""
    old, new = await update_event(db, event_id, body)
    data = event_to_api(new)
    await append_sync_log(db, event_id, "UPDATE", device_id, old_data=old, new_data=new)
    await broadcaster.broadcast(EVENT_UPDATED, event_id, data, exclude_device=device_id)
    log_sync_operation(device_id, "UPDATE", event_id, True)
    return {"success": True, "data": data, "message": "Event updated successfully"}


@router.delete("/{event_id}")
async def remove_event(
    event_id: str,
    device_id: DeviceId,
    db: Database,
    broadcaster: Broadcaster,
):
    """Soft-delete a live event."""
    old, new = await soft_delete_event(db, event_id)
    await append_sync_log(db, event_id, "DELETE", device_id, old_data=old, new_data=new)
    await broadcaster.broadcast(EVENT_DELETED, event_id, exclude_device=device_id)
    log_sync_operation(device_id, "DELETE", event_id, True)
    return {
        "success": True,
        "message": "Event deleted successfully",
        "data": {"id": event_id, "deletedAt": new.get("deleted_at")},
    }
