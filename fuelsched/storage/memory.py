"""In-memory event journal (default driver)."""

from __future__ import annotations

from typing import Any

from fuelsched.storage.interfaces import EventStore, SliceEvent
from fuelsched.utils import utcnow


class MemoryEventStore(EventStore):
    def __init__(self) -> None:
        self._events: list[SliceEvent] = []

    def record_event(
        self,
        *,
        event_type: str,
        partition_id: int | None = None,
        cycle: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> SliceEvent:
        event = SliceEvent(
            event_id=len(self._events) + 1,
            partition_id=partition_id,
            cycle=cycle,
            event_type=event_type,
            created_at=utcnow(),
            details=dict(details or {}),
        )
        self._events.append(event)
        return event

    def list_events(self, *, partition_id: int | None = None, event_type: str | None = None, limit: int | None = None) -> list[SliceEvent]:
        events = [
            e
            for e in self._events
            if (partition_id is None or e.partition_id == partition_id) and (event_type is None or e.event_type == event_type)
        ]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def count_events(self, *, event_type: str, partition_id: int | None = None) -> int:
        return len(self.list_events(partition_id=partition_id, event_type=event_type))
