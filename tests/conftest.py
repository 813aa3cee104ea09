"""
Pytest fixtures and test configuration for whtzup client tests.
"""

import json
import uuid
from datetime import datetime, timezone

import httpx
import pytest

from whtzup.storage import LocalStore
from whtzup.types import CreateOperation, DeleteOperation, Event, UpdateOperation, new_operation_id

DEVICE_ID = "6f1c2b7e-4d3a-4b8e-9c1f-2a5d7e9b0c11"


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "whtzup.db"


@pytest.fixture
def store(temp_db):
    """Create a LocalStore instance for testing."""
    store = LocalStore(temp_db)
    yield store
    store.close()


@pytest.fixture
def sample_event():
    return Event(
        id=str(uuid.uuid4()),
        name="Jazz Night",
        venue="Blue Room",
        description="Live quartet",
        category="music",
        address="1 Main St",
        latitude=40.7128,
        longitude=-74.006,
        starts_at=datetime(2026, 11, 1, 20, tzinfo=timezone.utc),
        version=1,
    )


@pytest.fixture
def make_operation():
    """Factory for queued operations of each kind."""

    def _make(kind: str, event: Event = None, event_id: str = None, **kwargs):
        common = dict(
            id=kwargs.pop("id", new_operation_id()),
            device_id=DEVICE_ID,
            created_at=kwargs.pop("created_at", datetime.now(timezone.utc)),
            **kwargs,
        )
        if kind == "CREATE":
            return CreateOperation(event=event, **common)
        if kind == "UPDATE":
            return UpdateOperation(event=event, **common)
        return DeleteOperation(target_id=event_id or event.id, **common)

    return _make


class FakeApi:
    """Scripted backend for httpx.MockTransport.

    Routes map (method, path) to a callable returning an httpx.Response, and
    every request is recorded for assertions.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method: str, path: str, handler):
        self.routes[(method, path)] = handler

    def json(self, method: str, path: str, body, status_code: int = 200):
        self.on(method, path, lambda request: httpx.Response(status_code, json=body))

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"success": False, "error": "Not found"})
        return handler(request)

    def bodies(self, method: str, path: str):
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == method and r.url.path == path
        ]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def fake_api():
    return FakeApi()
