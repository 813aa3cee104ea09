"""SQLite schema for the whtzup local store.

Holds the offline operation queue, the read cache of events and the
sync metadata (device id, last sync time).
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2  # v2: retry bookkeeping on pending_operations

ALLOWED_TABLES = frozenset(
    {
        "schema_version",
        "pending_operations",
        "cached_events",
        "sync_meta",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection."""
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Offline operation queue; seq order is enqueue order
CREATE TABLE IF NOT EXISTS pending_operations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    device_id TEXT NOT NULL,
    kind TEXT NOT NULL,  -- CREATE, UPDATE, DELETE
    event_id TEXT NOT NULL,
    payload TEXT NOT NULL,  -- JSON event payload
    created_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',  -- pending, failed
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    last_attempt_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_pending_operations_status ON pending_operations(status);
CREATE INDEX IF NOT EXISTS idx_pending_operations_event ON pending_operations(event_id);

-- Last known server state of each event, for offline reads
CREATE TABLE IF NOT EXISTS cached_events (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL,  -- JSON, API shape
    starts_at TEXT,
    cached_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _column_names(conn: sqlite3.Connection, table: str) -> set:
    validate_table_name(table)
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Bring an older database up to SCHEMA_VERSION."""
    existing = {
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    }
    if "pending_operations" not in existing:
        return

    columns = _column_names(conn, "pending_operations")
    if "last_attempt_at" not in columns:
        logger.info("Migrating pending_operations: adding retry bookkeeping columns")
        if "retry_count" not in columns:
            conn.execute(
                "ALTER TABLE pending_operations ADD COLUMN retry_count INTEGER NOT NULL DEFAULT 0"
            )
        if "last_error" not in columns:
            conn.execute("ALTER TABLE pending_operations ADD COLUMN last_error TEXT")
        conn.execute("ALTER TABLE pending_operations ADD COLUMN last_attempt_at TEXT")


def init_db(conn: sqlite3.Connection) -> None:
    """Create or upgrade the schema."""
    migrate_schema(conn)
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    else:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
