"""Server-side queue processor.

Drains one device's offline_queue in arrival order. Rows are claimed with a
single conditional update before anything is applied, so two concurrent
process calls for the same device never apply the same row twice. Every
claimed row ends up processed, with error_message set when it failed; one
bad entry never stops the rest of the batch.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from postgrest.exceptions import APIError
from pydantic import ValidationError
from supabase import Client

from .broadcast import OPERATION_EVENTS, ConnectionManager
from .config import Settings
from .database import (
    append_sync_log,
    claim_queue_entries,
    complete_queue_entry,
    get_event,
    insert_event,
    parse_timestamp,
    soft_delete_event,
    update_event,
    utc_now,
)
from .errors import (
    EventDeletedError,
    InvalidPayloadError,
    SyncDomainError,
    UnknownOperationError,
    describe_error,
)
from .logging_config import get_logger, log_sync_operation
from .models import EventCreate, EventUpdate, event_to_api

logger = get_logger("whtzup.processor")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class ProcessResult:
    """Outcome of one processing run."""
    processed: int = 0
    failed: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


def _target_id(event_data: dict) -> str:
    event_id = event_data.get("id")
    if not event_id or not isinstance(event_id, str):
        raise InvalidPayloadError("Event data is missing 'id'")
    return event_id


async def apply_queue_entry(db: Client, entry: dict) -> tuple[str, dict | None, dict]:
    """Apply one queued operation. Returns (event_id, old_row, new_row).

    A CREATE whose id already names a live event is a replay of a create
    that already landed: nothing is written and the stored row comes back
    as both old_row and new_row.

    Raises:
        UnknownOperationError: operation outside CREATE/UPDATE/DELETE.
        InvalidPayloadError / ValidationError: unusable event data.
        EventNotFoundError / EventDeletedError / VersionConflictError: bad target.
        APIError: database rejected the write.
    """
    operation = entry.get("operation")
    event_data = entry.get("event_data")
    if operation not in OPERATION_EVENTS:
        raise UnknownOperationError(str(operation))
    if not isinstance(event_data, dict):
        raise InvalidPayloadError("Event data must be an object")

    if operation == "CREATE":
        payload = EventCreate.model_validate(event_data)
        if payload.id:
            existing = await get_event(db, payload.id, include_deleted=True)
            if existing is not None:
                if existing.get("deleted_at") is not None:
                    raise EventDeletedError(payload.id)
                return existing["id"], existing, existing
        row = await insert_event(db, payload)
        return row["id"], None, row

    event_id = _target_id(event_data)
    if operation == "UPDATE":
        old, new = await update_event(db, event_id, EventUpdate.model_validate(event_data))
    else:
        old, new = await soft_delete_event(db, event_id)
    return event_id, old, new


def _sort_key(entry: dict) -> tuple:
    try:
        timestamp = parse_timestamp(entry.get("timestamp")) or _EPOCH
    except ValueError:
        timestamp = _EPOCH
    return timestamp, entry.get("id") or 0


async def process_device_queue(
    db: Client,
    device_id: str,
    *,
    settings: Settings,
    broadcaster: ConnectionManager | None = None,
) -> ProcessResult:
    """Claim and apply every unprocessed entry of one device, oldest first."""
    result = ProcessResult()
    claim_token = str(uuid.uuid4())
    stale_before = utc_now() - timedelta(seconds=settings.queue_claim_timeout_seconds)

    entries = await claim_queue_entries(db, device_id, claim_token, stale_before)
    entries.sort(key=_sort_key)
    logger.info(f"PROCESS | {device_id} | claimed {len(entries)} entries")

    for entry in entries:
        operation = entry.get("operation")
        event_data = entry.get("event_data")
        event_id = event_data.get("id") if isinstance(event_data, dict) else None
        outcome = {
            "queueId": entry.get("id"),
            "clientOperationId": entry.get("client_operation_id"),
            "operation": operation,
            "eventId": event_id,
        }

        error = None
        old_row = new_row = None
        try:
            event_id, old_row, new_row = await apply_queue_entry(db, entry)
        except (SyncDomainError, ValidationError, APIError) as e:
            error = describe_error(e)
        except Exception as e:
            # Log full error server-side for debugging
            logger.error(f"Unexpected error applying queue entry {entry.get('id')}: {e}")
            error = "Internal error applying operation"

        try:
            await complete_queue_entry(db, entry["id"], error)
        except APIError as e:
            # Entry stays claimed and is picked up again once the claim goes stale
            logger.error(f"Failed to mark queue entry {entry.get('id')} processed: {e.message or e.code}")
        log_sync_operation(device_id, str(operation), event_id, error is None, error)

        if error is not None:
            failure = {**outcome, "success": False, "error": error}
            result.failed += 1
            result.results.append(failure)
            result.errors.append(failure)
            continue

        outcome["eventId"] = event_id
        if operation == "CREATE" and old_row is not None:
            logger.info(f"PROCESS | {device_id} | CREATE {event_id} already applied")
            result.processed += 1
            result.results.append(
                {**outcome, "success": True, "data": event_to_api(new_row), "isDuplicate": True}
            )
            continue

        try:
            await append_sync_log(db, event_id, operation, device_id, old_data=old_row, new_data=new_row)
        except APIError as e:
            logger.warning(f"Sync log write failed for {operation} {event_id}: {e.message or e.code}")
        if broadcaster is not None:
            await broadcaster.broadcast(
                OPERATION_EVENTS[operation],
                event_id,
                None if operation == "DELETE" else event_to_api(new_row),
                exclude_device=device_id,
            )
        result.processed += 1
        result.results.append({**outcome, "success": True, "data": event_to_api(new_row)})

    logger.info(
        f"PROCESS COMPLETE | {device_id} | processed={result.processed} failed={result.failed}"
    )
    return result
