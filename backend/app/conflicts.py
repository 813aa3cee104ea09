"""Conflict resolution between a client's stale edit and the server's copy.

resolve() is pure: given the local payload, the authoritative server row and
a strategy, it returns the field set that should become canonical and
whether a write is needed. resolve_conflicts() applies it to a batch against
the database.

Strategies:
- take-local: the client's fields overwrite the server's.
- take-server: nothing is written; the server row is returned as-is.
- field-level-merge: per mutable field, the preferred side wins unless its
  value is empty (None, blank string, or 0 for coordinates), in which case
  the other side's value is kept. This is not a three-way merge; when both
  sides changed the same field the preferred side wins.
"""

from dataclasses import dataclass, field
from typing import Any

from postgrest.exceptions import APIError
from pydantic import ValidationError
from supabase import Client

from .broadcast import EVENT_UPDATED, ConnectionManager
from .database import append_sync_log, get_live_event, write_event_fields
from .errors import SyncDomainError, UnknownStrategyError, describe_error
from .logging_config import get_logger, log_sync_operation
from .models import MUTABLE_COLUMNS, ConflictItem, EventUpdate, event_to_api

logger = get_logger("whtzup.conflicts")

TAKE_LOCAL = "take-local"
TAKE_SERVER = "take-server"
FIELD_LEVEL_MERGE = "field-level-merge"

STRATEGY_ALIASES = {
    TAKE_LOCAL: TAKE_LOCAL,
    TAKE_SERVER: TAKE_SERVER,
    FIELD_LEVEL_MERGE: FIELD_LEVEL_MERGE,
    "local": TAKE_LOCAL,
    "server": TAKE_SERVER,
    "merge": FIELD_LEVEL_MERGE,
}

COORDINATE_COLUMNS = frozenset({"latitude", "longitude"})

_CAMEL_NAMES = {"starts_at": "startsAt", "created_by": "createdBy"}


def normalize_strategy(strategy: str) -> str:
    try:
        return STRATEGY_ALIASES[strategy.strip().lower()]
    except (KeyError, AttributeError):
        raise UnknownStrategyError(str(strategy)) from None


def _column_value(payload: dict[str, Any], column: str) -> Any:
    """Value of a column in a camelCase or snake_case payload."""
    camel = _CAMEL_NAMES.get(column, column)
    if camel in payload:
        return payload[camel]
    return payload.get(column)


def is_empty(column: str, value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if column in COORDINATE_COLUMNS:
        try:
            return float(value) == 0.0
        except (TypeError, ValueError):
            return True
    return False


@dataclass
class Resolution:
    """Outcome of resolving one conflict."""
    strategy: str
    fields: dict[str, Any] = field(default_factory=dict)
    write: bool = False


def resolve(
    local: dict[str, Any],
    server: dict[str, Any],
    strategy: str,
    preference: str = "local",
) -> Resolution:
    """Decide the canonical mutable fields for one event.

    Raises:
        UnknownStrategyError: for a strategy outside the closed set.
        pydantic.ValidationError: if the chosen fields are not a valid event.
    """
    strategy = normalize_strategy(strategy)

    if strategy == TAKE_SERVER:
        return Resolution(strategy=strategy, write=False)

    if strategy == TAKE_LOCAL:
        fields = EventUpdate.model_validate(local).to_row()
        return Resolution(strategy=strategy, fields=fields, write=True)

    preferred, fallback = (local, server) if preference != "server" else (server, local)
    merged: dict[str, Any] = {}
    for column in MUTABLE_COLUMNS:
        value = _column_value(preferred, column)
        if is_empty(column, value):
            value = _column_value(fallback, column)
        if not is_empty(column, value):
            merged[column] = value
    fields = EventUpdate.model_validate(merged).to_row()
    return Resolution(strategy=strategy, fields=fields, write=True)


@dataclass
class ConflictReport:
    resolved: int = 0
    failed: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)


async def resolve_conflicts(
    db: Client,
    conflicts: list[ConflictItem],
    *,
    device_id: str | None,
    default_preference: str = "local",
    broadcaster: ConnectionManager | None = None,
) -> ConflictReport:
    """Resolve each conflict against the stored event. One failure never affects the rest."""
    report = ConflictReport()

    for conflict in conflicts:
        try:
            server_row = await get_live_event(db, conflict.event_id)
            resolution = resolve(
                conflict.local_version,
                server_row,
                conflict.resolution,
                conflict.merge_preference or default_preference,
            )
            final_row = server_row
            if resolution.write:
                final_row = await write_event_fields(db, server_row, resolution.fields)
                await append_sync_log(
                    db, conflict.event_id, "UPDATE", device_id, old_data=server_row, new_data=final_row
                )
                if broadcaster is not None:
                    await broadcaster.broadcast(
                        EVENT_UPDATED,
                        conflict.event_id,
                        event_to_api(final_row),
                        exclude_device=device_id,
                    )
            log_sync_operation(device_id, f"RESOLVE:{resolution.strategy}", conflict.event_id, True)
            report.resolved += 1
            report.results.append(
                {
                    "eventId": conflict.event_id,
                    "success": True,
                    "resolution": resolution.strategy,
                    "data": event_to_api(final_row),
                }
            )
        except (SyncDomainError, ValidationError, APIError) as e:
            error = describe_error(e)
            log_sync_operation(device_id, "RESOLVE", conflict.event_id, False, error)
            report.failed += 1
            report.results.append(
                {"eventId": conflict.event_id, "success": False, "error": error}
            )

    logger.info(f"CONFLICTS | {device_id} | resolved={report.resolved} failed={report.failed}")
    return report

