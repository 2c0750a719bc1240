"""Storage interface for the slice event journal.

The scheduler is stateless across restarts. What it keeps is an append-only
journal of what happened to each partition: loads, fuel injections, slice
outcomes, retirements and teardown.

Concrete drivers live in `storage/` (in-memory default, SQLite optional).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fuelsched.utils import format_rfc3339


@dataclass(frozen=True)
class SliceEvent:
    event_id: int
    partition_id: int | None
    cycle: int | None
    event_type: str
    created_at: datetime
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "partition_id": self.partition_id,
            "cycle": self.cycle,
            "event_type": self.event_type,
            "created_at": format_rfc3339(self.created_at),
            "details": self.details,
        }


class EventStore(ABC):
    @abstractmethod
    def record_event(
        self,
        *,
        event_type: str,
        partition_id: int | None = None,
        cycle: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> SliceEvent:
        """Append an event (append-only)."""

    @abstractmethod
    def list_events(self, *, partition_id: int | None = None, event_type: str | None = None, limit: int | None = None) -> list[SliceEvent]:
        """List events in insertion order, optionally filtered. `limit` keeps the most recent."""

    @abstractmethod
    def count_events(self, *, event_type: str, partition_id: int | None = None) -> int:
        """Count events of a type, optionally for one partition."""
