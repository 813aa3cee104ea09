"""Offline operation queue.

OperationQueue persists client mutations that have not yet been confirmed by
the server. It receives the host LocalStore for connection handling and keeps
no in-memory copy: every call reads or writes the database directly, so the
queue survives a restart between enqueue and flush.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from whtzup.errors import QueueError
from whtzup.types import (
    MAX_RETRY_COUNT,
    OP_FAILED,
    OP_PENDING,
    SyncOperation,
    build_operation,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = """seq, id, device_id, kind, event_id, payload, created_at,
                     status, retry_count, last_error, last_attempt_at"""


class OperationQueue:
    """Durable FIFO of pending sync operations for one device.

    Order is the autoincrement ``seq`` column, assigned at enqueue time, so
    two operations can never tie and flushing never reorders them.

    Args:
        host: The LocalStore providing DB access and JSON helpers.
        max_retries: Failures after which an entry leaves the auto-retry path.
    """

    def __init__(self, host, max_retries: int = MAX_RETRY_COUNT):
        self._host = host
        self.max_retries = max_retries

    # === Queue Operations ===

    def enqueue(self, operation: SyncOperation) -> int:
        """Append an operation and persist it. Returns its queue sequence number.

        Raises:
            QueueError: if an operation with the same id is already queued.
        """
        payload_json = self._host._to_json(operation.payload())
        try:
            with self._host._connect() as conn:
                cursor = conn.execute(
                    """INSERT INTO pending_operations
                       (id, device_id, kind, event_id, payload, created_at,
                        status, retry_count, last_error)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        operation.id,
                        operation.device_id,
                        operation.kind.value,
                        operation.event_id,
                        payload_json,
                        format_datetime(operation.created_at),
                        operation.status,
                        operation.retry_count,
                        operation.last_error,
                    ),
                )
                seq = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise QueueError(f"Operation {operation.id} is already queued") from e

        logger.debug(
            f"Queued {operation.kind.value} for event {operation.event_id} as {operation.id}"
        )
        return seq

    def dequeue(self, operation_id: str) -> bool:
        """Remove a server-confirmed operation. Returns whether a row was removed."""
        with self._host._connect() as conn:
            cursor = conn.execute("DELETE FROM pending_operations WHERE id = ?", (operation_id,))
            removed = cursor.rowcount > 0
        if removed:
            logger.debug(f"Dequeued operation {operation_id}")
        return removed

    def list(self) -> List[SyncOperation]:
        """Pending operations in enqueue order.

        Rows that cannot be decoded are skipped here; restore() moves them
        out of the pending state.
        """
        operations = []
        for row in self._select(OP_PENDING):
            try:
                operations.append(self._row_to_operation(row))
            except ValueError as e:
                logger.warning(f"Skipping undecodable queued operation {row['id']}: {e}")
        return operations

    def restore(self) -> List[SyncOperation]:
        """Reload the pending queue from disk.

        Called at start and on every connectivity restore. Corrupt rows
        (unreadable payload or unknown kind) are marked failed instead of
        aborting the load, so one bad row never hides the rest.
        """
        operations = []
        corrupt: List[tuple] = []
        for row in self._select(OP_PENDING):
            try:
                operations.append(self._row_to_operation(row))
            except ValueError as e:
                corrupt.append((row["id"], f"Corrupt queue entry: {e}"))

        for operation_id, error in corrupt:
            logger.warning(f"{error} ({operation_id}); moved to failed")
            self.mark_failed(operation_id, error)

        logger.debug(f"Restored {len(operations)} pending operations")
        return operations

    def get(self, operation_id: str) -> Optional[SyncOperation]:
        with self._host._connect() as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM pending_operations WHERE id = ?",
                (operation_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_operation(row)

    # === Retry bookkeeping ===

    def record_failure(self, operation_id: str, error: str) -> int:
        """Record a failed attempt and increment the retry count.

        When the count reaches max_retries the entry is moved to the failed
        state and no longer returned by list(). Returns the new retry count.
        """
        now = self._host._now()
        with self._host._connect() as conn:
            conn.execute(
                """UPDATE pending_operations
                   SET retry_count = retry_count + 1,
                       last_error = ?,
                       last_attempt_at = ?
                   WHERE id = ?""",
                (error[:500], now, operation_id),
            )
            row = conn.execute(
                "SELECT retry_count FROM pending_operations WHERE id = ?", (operation_id,)
            ).fetchone()
            if row is None:
                return 0
            retry_count = row["retry_count"]
            if retry_count >= self.max_retries:
                conn.execute(
                    "UPDATE pending_operations SET status = ? WHERE id = ?",
                    (OP_FAILED, operation_id),
                )

        if retry_count >= self.max_retries:
            logger.warning(
                f"Operation {operation_id} failed {retry_count} times, needs attention: {error}"
            )
        return retry_count

    def mark_failed(self, operation_id: str, error: str) -> bool:
        """Move an entry out of the retry path immediately."""
        with self._host._connect() as conn:
            cursor = conn.execute(
                """UPDATE pending_operations
                   SET status = ?, last_error = ?, last_attempt_at = ?
                   WHERE id = ?""",
                (OP_FAILED, error[:500], self._host._now(), operation_id),
            )
            return cursor.rowcount > 0

    def failed(self) -> List[Dict[str, Any]]:
        """Entries that need explicit user or operator attention.

        Returned as dicts because a failed entry may not decode into an
        operation at all.
        """
        return [
            {
                "id": row["id"],
                "kind": row["kind"],
                "event_id": row["event_id"],
                "payload": self._host._from_json(row["payload"]),
                "created_at": row["created_at"],
                "retry_count": row["retry_count"],
                "last_error": row["last_error"],
                "last_attempt_at": row["last_attempt_at"],
            }
            for row in self._select(OP_FAILED)
        ]

    def requeue_failed(self, operation_ids: Optional[List[str]] = None) -> int:
        """Put failed entries back on the retry path with a fresh retry count.

        Args:
            operation_ids: Specific ids to requeue, or None for all.
        Returns:
            Number of entries requeued.
        """
        with self._host._connect() as conn:
            if operation_ids:
                placeholders = ",".join("?" for _ in operation_ids)
                cursor = conn.execute(
                    f"UPDATE pending_operations SET status = ?, retry_count = 0, "
                    f"last_error = NULL WHERE status = ? AND id IN ({placeholders})",
                    [OP_PENDING, OP_FAILED, *operation_ids],
                )
            else:
                cursor = conn.execute(
                    "UPDATE pending_operations SET status = ?, retry_count = 0, "
                    "last_error = NULL WHERE status = ?",
                    (OP_PENDING, OP_FAILED),
                )
            return cursor.rowcount

    # === Counts ===

    def count(self) -> int:
        """Number of pending operations."""
        with self._host._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM pending_operations WHERE status = ?", (OP_PENDING,)
            ).fetchone()[0]

    def has_pending(self, event_id: str) -> bool:
        """Whether any pending operation targets this event."""
        with self._host._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM pending_operations WHERE event_id = ? AND status = ? LIMIT 1",
                (event_id, OP_PENDING),
            ).fetchone()
        return row is not None

    def status(self) -> Dict[str, Any]:
        """Queue counts by state and by kind."""
        with self._host._connect() as conn:
            state_rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM pending_operations GROUP BY status"
            ).fetchall()
            kind_rows = conn.execute(
                """SELECT kind, COUNT(*) AS count
                   FROM pending_operations WHERE status = ?
                   GROUP BY kind""",
                (OP_PENDING,),
            ).fetchall()

        by_state = {row["status"]: row["count"] for row in state_rows}
        pending = by_state.get(OP_PENDING, 0)
        failed = by_state.get(OP_FAILED, 0)
        return {
            "pending": pending,
            "failed": failed,
            "total": pending + failed,
            "by_kind": {row["kind"]: row["count"] for row in kind_rows},
        }

    # === Internals ===

    def _select(self, status: str) -> List[sqlite3.Row]:
        with self._host._connect() as conn:
            return conn.execute(
                f"""SELECT {_SELECT_COLUMNS}
                    FROM pending_operations
                    WHERE status = ?
                    ORDER BY seq""",
                (status,),
            ).fetchall()

    def _row_to_operation(self, row: sqlite3.Row) -> SyncOperation:
        payload = self._host._from_json(row["payload"])
        if payload is None:
            raise ValueError("payload is not valid JSON")
        return build_operation(
            row["kind"],
            payload,
            row["device_id"],
            operation_id=row["id"],
            created_at=parse_datetime(row["created_at"]),
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            status=row["status"],
        )
