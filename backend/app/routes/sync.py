"""Sync routes: the server-side offline queue and conflict resolution."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from ..broadcast import ConnectionManager, get_broadcaster
from ..config import Settings, get_settings
from ..conflicts import resolve_conflicts
from ..database import (
    Database,
    find_reusable_queue_entry,
    get_last_sync,
    get_queue_counts,
    insert_queue_entry,
)
from ..device import DeviceId, is_valid_device_id
from ..logging_config import get_logger
from ..models import ConflictRequest, ProcessQueueRequest, QueueOperationRequest, queue_entry_to_api
from ..processor import process_device_queue
from ..rate_limit import limiter, sync_rate_limit

logger = get_logger("whtzup.sync")
router = APIRouter(prefix="/api/sync", tags=["sync"])

Broadcaster = Annotated[ConnectionManager, Depends(get_broadcaster)]
CurrentSettings = Annotated[Settings, Depends(get_settings)]


def _resolve_device(requested: str | None, header_device: str) -> str:
    device_id = requested or header_device
    if not is_valid_device_id(device_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid device ID format: must be a valid UUID",
        )
    return device_id


@router.post("/queue", status_code=status.HTTP_201_CREATED)
@limiter.limit(sync_rate_limit)
async def queue_operation(
    request: Request,
    response: Response,
    body: QueueOperationRequest,
    device_id: DeviceId,
    db: Database,
):
    """
    Append an operation to the device's offline queue.

    When clientOperationId matches an entry that is still pending or already
    succeeded, that entry is returned (200) instead of adding a duplicate.
    """
    owner = _resolve_device(body.device_id, device_id)

    if body.client_operation_id:
        existing = await find_reusable_queue_entry(db, owner, body.client_operation_id)
        if existing is not None:
            logger.info(f"QUEUE | {owner} | {body.client_operation_id} already queued")
            response.status_code = status.HTTP_200_OK
            return {
                "success": True,
                "data": queue_entry_to_api(existing),
                "message": "Operation already queued",
            }

    entry = await insert_queue_entry(
        db, body.operation, body.event_data, owner, body.client_operation_id
    )
    logger.info(f"QUEUE | {owner} | {body.operation} queued as {entry.get('id')}")
    return {
        "success": True,
        "data": queue_entry_to_api(entry),
        "message": "Operation queued for sync",
    }


@router.post("/process")
@limiter.limit(sync_rate_limit)
async def process_queue(
    request: Request,
    device_id: DeviceId,
    db: Database,
    settings: CurrentSettings,
    broadcaster: Broadcaster,
    body: ProcessQueueRequest | None = None,
):
    """
    Process the device's unprocessed queue entries in arrival order.

    Per-entry failures are recorded on the entry and reported here; they
    never abort the batch. `errors` is the failure count and `failures`
    carries the detail.
    """
    owner = _resolve_device(body.device_id if body else None, device_id)
    result = await process_device_queue(db, owner, settings=settings, broadcaster=broadcaster)
    return {
        "success": True,
        "processed": result.processed,
        "failed": result.failed,
        "errors": result.failed,
        "results": result.results,
        "failures": result.errors,
    }


@router.get("/status")
async def sync_status(
    device_id: DeviceId,
    db: Database,
    requested_device: Annotated[str | None, Query(alias="deviceId")] = None,
):
    """Queue counts and last logged change for a device."""
    owner = _resolve_device(requested_device, device_id)
    counts = await get_queue_counts(db, owner)
    last_sync = await get_last_sync(db, owner)
    return {
        "success": True,
        "deviceId": owner,
        "queue": counts,
        "lastSync": last_sync,
        "isOnline": True,
    }


@router.post("/conflicts")
@limiter.limit(sync_rate_limit)
async def resolve_sync_conflicts(
    request: Request,
    body: ConflictRequest,
    device_id: DeviceId,
    db: Database,
    settings: CurrentSettings,
    broadcaster: Broadcaster,
):
    """Reconcile diverged events using the requested strategy per conflict."""
    report = await resolve_conflicts(
        db,
        body.conflicts,
        device_id=device_id,
        default_preference=settings.merge_preference,
        broadcaster=broadcaster,
    )
    return {
        "success": True,
        "resolved": report.resolved,
        "failed": report.failed,
        "results": report.results,
    }
