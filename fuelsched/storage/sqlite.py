"""SQLite storage driver for the slice event journal.

SQLite is used only as a local, file-backed journal. The `slice_events` table
is append-only.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from fuelsched.errors import ConfigError
from fuelsched.storage.interfaces import EventStore, SliceEvent
from fuelsched.utils import format_rfc3339, json_dumps, utcnow

_SCHEMA_VERSION = 1


def _parse_ts(raw: str) -> datetime:
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


class SQLiteDatabase:
    def __init__(self, path: Path):
        self.path = path.resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._migrate()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _migrate(self) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                  version INTEGER NOT NULL
                );
                """
            )
            row = conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version(version) VALUES (?);", (_SCHEMA_VERSION,))
                version = _SCHEMA_VERSION
            else:
                version = int(row["version"])

            if version != _SCHEMA_VERSION:
                raise ConfigError(f"Unsupported SQLite schema_version: {version}")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS slice_events (
                  event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  partition_id INTEGER,
                  cycle INTEGER,
                  event_type TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  details_json TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_slice_events_partition ON slice_events(partition_id, event_type);")


def _row_to_event(row: sqlite3.Row) -> SliceEvent:
    return SliceEvent(
        event_id=int(row["event_id"]),
        partition_id=row["partition_id"],
        cycle=row["cycle"],
        event_type=str(row["event_type"]),
        created_at=_parse_ts(str(row["created_at"])),
        details=json.loads(row["details_json"]),
    )


class SQLiteEventStore(EventStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    @classmethod
    def open(cls, path: Path) -> "SQLiteEventStore":
        return cls(SQLiteDatabase(path))

    def record_event(
        self,
        *,
        event_type: str,
        partition_id: int | None = None,
        cycle: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> SliceEvent:
        now = utcnow()
        payload = dict(details or {})
        with self._db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO slice_events(partition_id, cycle, event_type, created_at, details_json)
                VALUES (?, ?, ?, ?, ?);
                """,
                (partition_id, cycle, event_type, format_rfc3339(now), json_dumps(payload)),
            )
            event_id = int(cur.lastrowid)
        return SliceEvent(
            event_id=event_id,
            partition_id=partition_id,
            cycle=cycle,
            event_type=event_type,
            created_at=now,
            details=payload,
        )

    def list_events(self, *, partition_id: int | None = None, event_type: str | None = None, limit: int | None = None) -> list[SliceEvent]:
        where: list[str] = []
        params: list[Any] = []
        if partition_id is not None:
            where.append("partition_id = ?")
            params.append(partition_id)
        if event_type is not None:
            where.append("event_type = ?")
            params.append(event_type)

        sql = "SELECT * FROM slice_events"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY event_id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(limit, 0))

        with self._db.connect() as conn:
            rows = conn.execute(sql + ";", params).fetchall()
        return [_row_to_event(r) for r in reversed(rows)]

    def count_events(self, *, event_type: str, partition_id: int | None = None) -> int:
        sql = "SELECT COUNT(*) AS n FROM slice_events WHERE event_type = ?"
        params: list[Any] = [event_type]
        if partition_id is not None:
            sql += " AND partition_id = ?"
            params.append(partition_id)
        with self._db.connect() as conn:
            row = conn.execute(sql + ";", params).fetchone()
        return int(row["n"])
