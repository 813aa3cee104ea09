"""Local read cache of events, for browsing while offline."""

import logging
from typing import Iterable, List, Optional

from whtzup.types import Event, format_datetime

logger = logging.getLogger(__name__)


class EventCache:
    """Last known state of each live event, keyed by event id.

    Holds the optimistic local state as well as whatever the server last
    returned; soft-deleted events are removed rather than stored.
    """

    def __init__(self, host):
        self._host = host

    def upsert(self, event: Event) -> None:
        if event.is_deleted:
            self.remove(event.id)
            return
        with self._host._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO cached_events (id, data, starts_at, cached_at)
                   VALUES (?, ?, ?, ?)""",
                (
                    event.id,
                    self._host._to_json(event.to_api()),
                    format_datetime(event.starts_at),
                    self._host._now(),
                ),
            )

    def remove(self, event_id: str) -> bool:
        with self._host._connect() as conn:
            cursor = conn.execute("DELETE FROM cached_events WHERE id = ?", (event_id,))
            return cursor.rowcount > 0

    def get(self, event_id: str) -> Optional[Event]:
        with self._host._connect() as conn:
            row = conn.execute(
                "SELECT data FROM cached_events WHERE id = ?", (event_id,)
            ).fetchone()
        if row is None:
            return None
        return self._decode(event_id, row["data"])

    def list(
        self,
        category: Optional[str] = None,
        venue: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """Cached events, most recent start first, with the same filters as the API."""
        with self._host._connect() as conn:
            rows = conn.execute(
                "SELECT id, data FROM cached_events ORDER BY starts_at DESC"
            ).fetchall()

        events = []
        for row in rows:
            event = self._decode(row["id"], row["data"])
            if event is None:
                continue
            if category and event.category != category:
                continue
            if venue and venue.lower() not in (event.venue or "").lower():
                continue
            events.append(event)
        return events[:limit] if limit else events

    def replace_all(self, events: Iterable[Event]) -> int:
        """Replace the cache contents with a fresh server listing."""
        now = self._host._now()
        count = 0
        with self._host._connect() as conn:
            conn.execute("DELETE FROM cached_events")
            for event in events:
                if event.is_deleted:
                    continue
                conn.execute(
                    """INSERT OR REPLACE INTO cached_events (id, data, starts_at, cached_at)
                       VALUES (?, ?, ?, ?)""",
                    (
                        event.id,
                        self._host._to_json(event.to_api()),
                        format_datetime(event.starts_at),
                        now,
                    ),
                )
                count += 1
        return count

    def count(self) -> int:
        with self._host._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM cached_events").fetchone()[0]

    def _decode(self, event_id: str, data: str) -> Optional[Event]:
        payload = self._host._from_json(data)
        if payload is None:
            logger.warning(f"Dropping unreadable cache entry for event {event_id}")
            return None
        try:
            return Event.from_api(payload)
        except ValueError as e:
            logger.warning(f"Dropping invalid cache entry for event {event_id}: {e}")
            return None
