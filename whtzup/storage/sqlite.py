"""SQLite-backed local store for the whtzup sync client.

Local-first storage with:
- the offline operation queue (OperationQueue)
- a read cache of server events for offline browsing (EventCache)
- sync metadata: the device id and the last confirmed sync time
"""

import contextlib
import json
import logging
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from whtzup.types import MAX_RETRY_COUNT, format_datetime, parse_datetime, utc_now

from .cache import EventCache
from .queue import OperationQueue
from .schema import init_db

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device_id"
LAST_SYNC_KEY = "last_sync_at"


class LocalStore:
    """Owns the SQLite database and hands out the queue and cache views.

    Connections are opened per operation; every mutation commits before the
    call returns, so pending work survives a crash or restart.
    """

    def __init__(self, db_path: Path, max_retries: int = MAX_RETRY_COUNT):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            init_db(conn)

        self.queue = OperationQueue(self, max_retries=max_retries)
        self.cache = EventCache(self)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that commits on success, rolls back on error, always closes."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Connections are per-operation; nothing persistent to release."""
        pass

    def _now(self) -> str:
        return utc_now().isoformat()

    def _to_json(self, data: Any) -> Optional[str]:
        if data is None:
            return None
        return json.dumps(data, default=str)

    def _from_json(self, s: Optional[str]) -> Any:
        if not s:
            return None
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            return None

    # === Sync metadata ===

    def get_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, self._now()),
            )

    def get_device_id(self) -> str:
        """Return the installation's device id, generating and persisting it once.

        Uses INSERT OR IGNORE so two racing first calls still agree on one id.
        """
        existing = self.get_meta(DEVICE_ID_KEY)
        if existing:
            return existing

        candidate = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (DEVICE_ID_KEY, candidate, self._now()),
            )
            row = conn.execute(
                "SELECT value FROM sync_meta WHERE key = ?", (DEVICE_ID_KEY,)
            ).fetchone()
        device_id = row["value"]
        if device_id == candidate:
            logger.info(f"Generated new device id {device_id}")
        return device_id

    def get_last_sync_time(self) -> Optional[datetime]:
        value = self.get_meta(LAST_SYNC_KEY)
        return parse_datetime(value) if value else None

    def set_last_sync_time(self, when: Optional[datetime] = None) -> None:
        self.set_meta(LAST_SYNC_KEY, format_datetime(when or utc_now()))
