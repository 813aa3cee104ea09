"""Tests for the server-side queue processor.

Focus:
1. FIFO application of a device's entries
2. Per-entry failure isolation (one bad entry never stops the batch)
3. Atomic claiming (a second processor never applies the same entry)
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from postgrest.exceptions import APIError

from app.broadcast import EVENT_CREATED, EVENT_DELETED, EVENT_UPDATED
from app.config import get_settings
from app.database import claim_queue_entries, insert_queue_entry
from app.errors import UnknownOperationError
from app.processor import apply_queue_entry, process_device_queue


def _create_payload(**overrides) -> dict:
    payload = {
        "id": str(uuid.uuid4()),
        "name": "Street Food Fair",
        "venue": "Harbour Square",
        "category": "food",
        "latitude": 51.5,
        "longitude": -0.12,
        "startsAt": "2026-11-02T12:00:00Z",
    }
    payload.update(overrides)
    return payload


class RecordingBroadcaster:
    def __init__(self):
        self.sent = []

    async def broadcast(self, event, event_id, event_data=None, exclude_device=None, timestamp=None):
        self.sent.append((event, event_id, event_data, exclude_device))
        return 1


@pytest.fixture
def settings():
    return get_settings()


class TestProcessDeviceQueue:
    @pytest.mark.asyncio
    async def test_nine_good_entries_and_one_malformed(self, fake_db, device_id, settings):
        """A malformed entry is recorded as a failure; the other nine all apply."""
        for i in range(4):
            await insert_queue_entry(fake_db, "CREATE", _create_payload(name=f"Event {i}"), device_id)
        await insert_queue_entry(fake_db, "CREATE", {"name": "no venue or coordinates"}, device_id)
        for i in range(4, 9):
            await insert_queue_entry(fake_db, "CREATE", _create_payload(name=f"Event {i}"), device_id)

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert result.processed == 9
        assert result.failed == 1
        assert len(result.results) == 10
        assert len(fake_db.rows("events")) == 9

        failure = result.errors[0]
        assert failure["success"] is False
        assert failure["error"].startswith("Invalid event data")

        entries = fake_db.rows("offline_queue")
        assert all(entry["processed"] for entry in entries)
        assert [e["error_message"] is not None for e in entries].count(True) == 1

    @pytest.mark.asyncio
    async def test_entries_apply_in_arrival_order(self, fake_db, device_id, settings):
        event = _create_payload()
        await insert_queue_entry(fake_db, "CREATE", event, device_id)
        await insert_queue_entry(fake_db, "UPDATE", {**event, "venue": "Pier 9"}, device_id)
        await insert_queue_entry(fake_db, "DELETE", {"id": event["id"]}, device_id)

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert [r["operation"] for r in result.results] == ["CREATE", "UPDATE", "DELETE"]
        assert result.failed == 0
        row = fake_db.event(event["id"])
        assert row["venue"] == "Pier 9"
        assert row["version"] == 2
        assert row["deleted_at"] is not None

    @pytest.mark.asyncio
    async def test_create_then_update_yields_one_record(self, fake_db, device_id, settings):
        event = _create_payload()
        await insert_queue_entry(fake_db, "CREATE", event, device_id)
        await insert_queue_entry(fake_db, "UPDATE", {**event, "name": "Renamed Fair"}, device_id)

        await process_device_queue(fake_db, device_id, settings=settings)

        rows = fake_db.rows("events")
        assert len(rows) == 1
        assert rows[0]["name"] == "Renamed Fair"

    @pytest.mark.asyncio
    async def test_failures_are_recorded_not_raised(self, fake_db, device_id, settings, make_event):
        deleted = make_event(deleted_at="2026-01-01T00:00:00+00:00")
        fake_db.tables["events"].append(deleted)

        await insert_queue_entry(fake_db, "PATCH", {"id": "x"}, device_id)
        await insert_queue_entry(fake_db, "UPDATE", {"id": str(uuid.uuid4()), "name": "x"}, device_id)
        await insert_queue_entry(fake_db, "UPDATE", {"id": deleted["id"], "name": "x"}, device_id)
        await insert_queue_entry(fake_db, "DELETE", {}, device_id)

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert result.processed == 0
        assert result.failed == 4
        messages = [e["error"] for e in result.errors]
        assert messages[0] == "Unknown operation: PATCH"
        assert "not found" in messages[1]
        assert "is deleted" in messages[2]
        assert "missing 'id'" in messages[3]
        assert fake_db.event(deleted["id"])["name"] == "Jazz Night"

    @pytest.mark.asyncio
    async def test_database_error_is_per_entry(self, fake_db, device_id, settings):
        fake_db.fail_tables["events"] = {"code": "23514", "message": "violates check constraint"}
        await insert_queue_entry(fake_db, "CREATE", _create_payload(), device_id)
        await insert_queue_entry(fake_db, "CREATE", _create_payload(), device_id)

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert result.processed == 0
        assert result.failed == 2
        assert all(e["error"] == "Database error: violates check constraint" for e in result.errors)
        assert all(entry["processed"] for entry in fake_db.rows("offline_queue"))

    @pytest.mark.asyncio
    async def test_replayed_create_of_live_event_succeeds(self, fake_db, device_id, settings, make_event):
        """A create that already landed (e.g. via the direct write) is a success, not a duplicate-key failure."""
        existing = make_event(name="Original name")
        fake_db.tables["events"].append(existing)
        await insert_queue_entry(fake_db, "CREATE", _create_payload(id=existing["id"]), device_id, "op_1")
        await insert_queue_entry(fake_db, "CREATE", _create_payload(), device_id, "op_2")
        broadcaster = RecordingBroadcaster()

        result = await process_device_queue(fake_db, device_id, settings=settings, broadcaster=broadcaster)

        assert result.processed == 2
        assert result.failed == 0
        replayed = result.results[0]
        assert replayed["success"] is True
        assert replayed["isDuplicate"] is True
        assert replayed["clientOperationId"] == "op_1"
        assert replayed["data"]["name"] == "Original name"
        assert len(fake_db.rows("events")) == 2
        assert fake_db.event(existing["id"])["version"] == 1
        assert len(fake_db.rows("sync_log")) == 1
        assert len(broadcaster.sent) == 1

    @pytest.mark.asyncio
    async def test_replayed_create_of_deleted_event_fails(self, fake_db, device_id, settings, make_event):
        deleted = make_event(deleted_at="2026-01-01T00:00:00+00:00")
        fake_db.tables["events"].append(deleted)
        await insert_queue_entry(fake_db, "CREATE", _create_payload(id=deleted["id"]), device_id)

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert result.failed == 1
        assert "is deleted" in result.errors[0]["error"]
        assert fake_db.event(deleted["id"])["deleted_at"] is not None

    @pytest.mark.asyncio
    async def test_sync_log_failure_does_not_stop_the_batch(self, fake_db, device_id, settings):
        fake_db.fail_tables["sync_log"] = {"code": "42501", "message": "permission denied for table sync_log"}
        for i in range(3):
            await insert_queue_entry(fake_db, "CREATE", _create_payload(name=f"Event {i}"), device_id)

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert result.processed == 3
        assert result.failed == 0
        assert all(r["success"] for r in result.results)
        assert len(fake_db.rows("events")) == 3
        assert all(entry["processed"] for entry in fake_db.rows("offline_queue"))

    @pytest.mark.asyncio
    async def test_completion_failure_does_not_stop_the_batch(self, fake_db, device_id, settings, monkeypatch):
        async def failing_complete(db, entry_id, error=None):
            raise APIError({"code": "08006", "message": "connection failure"})

        monkeypatch.setattr("app.processor.complete_queue_entry", failing_complete)
        for i in range(3):
            await insert_queue_entry(fake_db, "CREATE", _create_payload(name=f"Event {i}"), device_id)

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert result.processed == 3
        assert len(result.results) == 3
        assert len(fake_db.rows("events")) == 3

    @pytest.mark.asyncio
    async def test_only_the_devices_entries_are_processed(self, fake_db, device_id, settings):
        other = str(uuid.uuid4())
        await insert_queue_entry(fake_db, "CREATE", _create_payload(), device_id)
        await insert_queue_entry(fake_db, "CREATE", _create_payload(), other)

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert result.processed == 1
        pending = [e for e in fake_db.rows("offline_queue") if not e["processed"]]
        assert [e["device_id"] for e in pending] == [other]

    @pytest.mark.asyncio
    async def test_success_is_logged_and_broadcast(self, fake_db, device_id, settings):
        event = _create_payload()
        await insert_queue_entry(fake_db, "CREATE", event, device_id)
        await insert_queue_entry(fake_db, "UPDATE", {**event, "name": "New name"}, device_id)
        await insert_queue_entry(fake_db, "DELETE", {"id": event["id"]}, device_id)
        broadcaster = RecordingBroadcaster()

        await process_device_queue(fake_db, device_id, settings=settings, broadcaster=broadcaster)

        assert [s[0] for s in broadcaster.sent] == [EVENT_CREATED, EVENT_UPDATED, EVENT_DELETED]
        assert all(s[3] == device_id for s in broadcaster.sent)
        assert broadcaster.sent[2][2] is None
        assert [row["operation"] for row in fake_db.rows("sync_log")] == ["CREATE", "UPDATE", "DELETE"]

    @pytest.mark.asyncio
    async def test_results_carry_client_operation_ids(self, fake_db, device_id, settings):
        await insert_queue_entry(fake_db, "CREATE", _create_payload(), device_id, "op_1")

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert result.results[0]["clientOperationId"] == "op_1"
        assert result.results[0]["data"]["version"] == 1


class TestClaiming:
    @pytest.mark.asyncio
    async def test_second_processor_claims_nothing(self, fake_db, device_id, settings):
        await insert_queue_entry(fake_db, "CREATE", _create_payload(), device_id)
        stale_before = datetime.now(timezone.utc) - timedelta(minutes=5)

        first = await claim_queue_entries(fake_db, device_id, "token-a", stale_before)
        second = await claim_queue_entries(fake_db, device_id, "token-b", stale_before)

        assert len(first) == 1
        assert second == []
        assert fake_db.rows("offline_queue")[0]["claim_token"] == "token-a"

    @pytest.mark.asyncio
    async def test_claimed_entries_are_not_double_applied(self, fake_db, device_id, settings):
        await insert_queue_entry(fake_db, "CREATE", _create_payload(), device_id)
        stale_before = datetime.now(timezone.utc) - timedelta(minutes=5)
        await claim_queue_entries(fake_db, device_id, "in-flight", stale_before)

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert result.processed == 0
        assert fake_db.rows("events") == []

    @pytest.mark.asyncio
    async def test_stale_claims_are_recovered(self, fake_db, device_id, settings):
        await insert_queue_entry(fake_db, "CREATE", _create_payload(), device_id)
        entry = fake_db.rows("offline_queue")[0]
        entry["claim_token"] = "abandoned"
        entry["claimed_at"] = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()

        result = await process_device_queue(fake_db, device_id, settings=settings)

        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_processed_entries_are_not_reapplied(self, fake_db, device_id, settings):
        await insert_queue_entry(fake_db, "CREATE", _create_payload(), device_id)

        await process_device_queue(fake_db, device_id, settings=settings)
        again = await process_device_queue(fake_db, device_id, settings=settings)

        assert again.processed == 0
        assert len(fake_db.rows("events")) == 1


class TestApplyQueueEntry:
    @pytest.mark.asyncio
    async def test_unknown_operation_raises(self, fake_db):
        with pytest.raises(UnknownOperationError):
            await apply_queue_entry(fake_db, {"operation": "UPSERT", "event_data": {}})

    @pytest.mark.asyncio
    async def test_create_keeps_client_id_at_version_one(self, fake_db):
        payload = _create_payload()

        event_id, old, new = await apply_queue_entry(
            fake_db, {"operation": "CREATE", "event_data": payload}
        )

        assert event_id == payload["id"]
        assert old is None
        assert new["version"] == 1
        assert new["deleted_at"] is None
