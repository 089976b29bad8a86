"""Row types returned by the hybrid store."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone


def parse_timestamp(value: str) -> datetime:
    """Parse a ``YYYY-MM-DD HH:MM:SS.SSS`` SQLite timestamp as UTC."""
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class Entity:
    """A durable, caller-identified record."""

    id: int
    name: str
    update_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Entity:
        return cls(id=row["id"], name=row["name"], update_count=row["update_count"])


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    """One ephemeral activity record.

    ``entity_id`` is advisory: it may name an entity that was never upserted.
    """

    id: int
    entity_id: int
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class ReportRow:
    """Aggregated activity for one entity id.

    ``entity_name`` is ``None`` when no entity with ``entity_id`` exists.
    """

    entity_name: str | None
    entity_id: int
    latest_timestamp: datetime
    event_count: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ReportRow:
        return cls(
            entity_name=row["entity_name"],
            entity_id=row["entity_id"],
            latest_timestamp=parse_timestamp(row["latest_timestamp"]),
            event_count=row["event_count"],
        )


@dataclass(frozen=True, slots=True)
class PoolStats:
    """Snapshot of the connection pool's bookkeeping."""

    open: int
    idle: int
    in_use: int
    max_open: int
    max_idle: int
