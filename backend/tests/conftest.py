"""Pytest configuration and fixtures."""

import copy
import itertools
import os
import sys
import uuid
from datetime import datetime, timezone

import pytest

# For unit tests, set mock values ONLY if not running integration tests
if not os.environ.get("RUN_INTEGRATION"):
    os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
    os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
    # Legacy key for backwards compatibility
    os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-key")
else:
    # For integration tests, load from .env
    from pathlib import Path

    from dotenv import load_dotenv

    env_path = Path(__file__).parent.parent / ".env"

    # Safety check: require explicit confirmation for integration tests
    if not os.environ.get("CONFIRM_INTEGRATION_CREDENTIALS"):
        print(
            "\n" + "=" * 70,
            file=sys.stderr,
        )
        print(
            "⚠️  WARNING: Integration tests will use REAL credentials from .env",
            file=sys.stderr,
        )
        print(
            "   Set CONFIRM_INTEGRATION_CREDENTIALS=yes to proceed.",
            file=sys.stderr,
        )
        print("=" * 70 + "\n", file=sys.stderr)
        pytest.exit(
            "Integration tests require CONFIRM_INTEGRATION_CREDENTIALS=yes",
            returncode=1,
        )

    load_dotenv(env_path, override=True)

from app.broadcast import manager  # noqa: E402
from app.database import get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from postgrest.exceptions import APIError  # noqa: E402


# =============================================================================
# In-memory Supabase
# =============================================================================

class MockExecuteResult:
    """Mock Supabase execute() result."""

    def __init__(self, data: list = None, count: int = None):
        self.data = data or []
        self.count = count


def _comparable(value):
    """Timestamps compare as datetimes, everything else as-is."""
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def _split_or(expression: str) -> list[str]:
    parts, current, quoted = [], [], False
    for char in expression:
        if char == '"':
            quoted = not quoted
            continue
        if char == "," and not quoted:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return parts


def _or_condition(part: str):
    column, op, value = part.split(".", 2)
    if op == "is" and value == "null":
        return lambda row: row.get(column) is None
    if op == "eq":
        return lambda row: str(row.get(column)) == value
    if op == "lt":
        return lambda row: row.get(column) is not None and _comparable(row[column]) < _comparable(value)
    raise ValueError(f"Unsupported or_ operator: {op}")


class MockQueryBuilder:
    """One PostgREST-style query against a FakeSupabase table."""

    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._mode = "select"
        self._payload = None
        self._filters = []
        self._order = []
        self._range = None
        self._limit_value = None
        self._count_mode = None

    def select(self, fields: str = "*", count: str = None) -> "MockQueryBuilder":
        self._mode = "select"
        self._count_mode = count
        return self

    def insert(self, rows) -> "MockQueryBuilder":
        self._mode = "insert"
        self._payload = rows
        return self

    def update(self, changes: dict) -> "MockQueryBuilder":
        self._mode = "update"
        self._payload = changes
        return self

    def eq(self, field: str, value) -> "MockQueryBuilder":
        self._filters.append(lambda row: row.get(field) == value)
        return self

    def is_(self, field: str, value) -> "MockQueryBuilder":
        assert value == "null"
        self._filters.append(lambda row: row.get(field) is None)
        return self

    def ilike(self, field: str, pattern: str) -> "MockQueryBuilder":
        needle = pattern.strip("%").lower()
        self._filters.append(lambda row: needle in str(row.get(field) or "").lower())
        return self

    def gte(self, field: str, value) -> "MockQueryBuilder":
        self._filters.append(lambda row: row.get(field) is not None and row[field] >= value)
        return self

    def lte(self, field: str, value) -> "MockQueryBuilder":
        self._filters.append(lambda row: row.get(field) is not None and row[field] <= value)
        return self

    def or_(self, expression: str) -> "MockQueryBuilder":
        conditions = [_or_condition(part) for part in _split_or(expression)]
        self._filters.append(lambda row: any(cond(row) for cond in conditions))
        return self

    def order(self, field: str, desc: bool = False) -> "MockQueryBuilder":
        self._order.append((field, desc))
        return self

    def range(self, start: int, end: int) -> "MockQueryBuilder":
        self._range = (start, end)
        return self

    def limit(self, n: int) -> "MockQueryBuilder":
        self._limit_value = n
        return self

    def _matching(self) -> list[dict]:
        rows = self._db.tables.setdefault(self._table, [])
        return [row for row in rows if all(f(row) for f in self._filters)]

    def execute(self) -> MockExecuteResult:
        self._db.calls.append((self._table, self._mode))
        if self._table in self._db.fail_tables:
            raise APIError(self._db.fail_tables[self._table])

        if self._mode == "insert":
            return MockExecuteResult(data=self._db.insert(self._table, self._payload))

        if self._mode == "update":
            updated = []
            for row in self._matching():
                row.update(copy.deepcopy(self._payload))
                updated.append(copy.deepcopy(row))
            return MockExecuteResult(data=updated)

        rows = [copy.deepcopy(row) for row in self._matching()]
        for field, desc in reversed(self._order):
            rows.sort(key=lambda row: (row.get(field) is None, _comparable(row.get(field))), reverse=desc)
        if self._range is not None:
            rows = rows[self._range[0]:self._range[1] + 1]
        if self._limit_value is not None:
            rows = rows[: self._limit_value]
        count = len(rows) if self._count_mode else None
        return MockExecuteResult(data=rows, count=count)


class FakeSupabase:
    """Dict-backed stand-in for the Supabase client.

    Supports the query-builder subset the backend uses. offline_queue and
    sync_log get bigserial-style ids; events enforce a unique id.
    """

    SERIAL_TABLES = ("offline_queue", "sync_log")

    def __init__(self):
        self.tables: dict[str, list[dict]] = {"events": [], "offline_queue": [], "sync_log": []}
        self.calls: list[tuple[str, str]] = []
        # table -> APIError payload raised by every execute() against it
        self.fail_tables: dict[str, dict] = {}
        self._serials = {name: itertools.count(1) for name in self.SERIAL_TABLES}

    def table(self, name: str) -> MockQueryBuilder:
        return MockQueryBuilder(self, name)

    def insert(self, table: str, rows) -> list[dict]:
        rows = rows if isinstance(rows, list) else [rows]
        stored = self.tables.setdefault(table, [])
        inserted = []
        for row in rows:
            row = copy.deepcopy(row)
            if table in self._serials and row.get("id") is None:
                row["id"] = next(self._serials[table])
            if table == "events" and any(existing["id"] == row["id"] for existing in stored):
                raise APIError(
                    {"code": "23505", "message": "duplicate key value violates unique constraint"}
                )
            stored.append(row)
            inserted.append(copy.deepcopy(row))
        return inserted

    def rows(self, table: str) -> list[dict]:
        return self.tables.get(table, [])

    def event(self, event_id: str) -> dict | None:
        return next((row for row in self.rows("events") if row["id"] == event_id), None)


# =============================================================================
# Fixtures
# =============================================================================

def make_event_row(**overrides) -> dict:
    """A stored events row at version 1."""
    now = datetime.now(timezone.utc).isoformat()
    row = {
        "id": str(uuid.uuid4()),
        "name": "Jazz Night",
        "description": "Live quartet",
        "category": "music",
        "venue": "Blue Room",
        "address": "1 Main St",
        "latitude": 40.7128,
        "longitude": -74.006,
        "starts_at": "2026-11-01T20:00:00+00:00",
        "created_by": None,
        "created_at": now,
        "updated_at": now,
        "deleted_at": None,
        "version": 1,
    }
    row.update(overrides)
    return row


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def api_app(fake_db):
    """The FastAPI app wired to the in-memory database, rate limits off."""
    app.dependency_overrides[get_db] = lambda: fake_db
    limiter.enabled = False
    yield app
    app.dependency_overrides.clear()
    limiter.enabled = True
    manager.active_connections.clear()
    manager.connection_devices.clear()


@pytest.fixture
def client(api_app):
    """Create a test client."""
    return TestClient(api_app)


@pytest.fixture
def device_id():
    return str(uuid.uuid4())


@pytest.fixture
def device_headers(device_id):
    return {"X-Device-ID": device_id}


@pytest.fixture
def make_event():
    return make_event_row
