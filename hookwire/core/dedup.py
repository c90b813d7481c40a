"""Event deduplication stores.

Both stores guarantee that for a given (provider, event_id) exactly one
``register_if_new`` call observes ``is_new=True``. Records are never deleted
here; retention is left to whoever owns the storage.
"""

from __future__ import annotations

import asyncio
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import aiosqlite

from hookwire.errors import StoreError
from hookwire.models import (
    ActionAttempt,
    AttemptOutcome,
    EventRecord,
    EventStatus,
    HandlerState,
)
from hookwire.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class DedupResult:
    is_new: bool
    record: EventRecord


class EventStore(ABC):
    @abstractmethod
    async def register_if_new(
        self,
        provider: str,
        event_id: str | None,
        event_type: str,
        payload: dict[str, Any],
    ) -> DedupResult:
        """Atomically create the record for a new key, or return the existing one.

        A missing ``event_id`` is never deduplicated: a synthetic id is
        assigned and the record is flagged ``deduplicated=False``.
        """

    @abstractmethod
    async def save(self, record: EventRecord) -> None:
        """Persist status, handler states and attempts of a record."""

    @abstractmethod
    async def get(self, provider: str, event_id: str) -> EventRecord | None: ...

    async def start(self) -> None:
        """Open resources. Override if needed."""

    async def stop(self) -> None:
        """Release resources. Override if needed."""


def _new_record(
    provider: str, event_id: str | None, event_type: str, payload: dict[str, Any]
) -> EventRecord:
    return EventRecord(
        provider=provider,
        event_id=event_id or f"anon-{uuid4().hex}",
        event_type=event_type,
        payload=payload,
        deduplicated=event_id is not None,
    )


class MemoryEventStore(EventStore):
    """Process-local store. Suitable for a single worker and for tests."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], EventRecord] = {}
        self._lock = threading.Lock()

    async def register_if_new(
        self,
        provider: str,
        event_id: str | None,
        event_type: str,
        payload: dict[str, Any],
    ) -> DedupResult:
        record = _new_record(provider, event_id, event_type, payload)
        with self._lock:
            existing = self._records.get(record.key)
            if existing is not None:
                return DedupResult(is_new=False, record=existing)
            self._records[record.key] = record
        return DedupResult(is_new=True, record=record)

    async def save(self, record: EventRecord) -> None:
        with self._lock:
            self._records[record.key] = record

    async def get(self, provider: str, event_id: str) -> EventRecord | None:
        with self._lock:
            return self._records.get((provider, event_id))

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    provider TEXT NOT NULL,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    received_at TEXT NOT NULL,
    deduplicated INTEGER NOT NULL DEFAULT 1,
    handler_states TEXT NOT NULL DEFAULT '{}',
    attempts TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (provider, event_id)
);
"""

_COLUMNS = (
    "provider, event_id, event_type, payload, status, received_at, "
    "deduplicated, handler_states, attempts"
)


def _dump_attempts(attempts: list[ActionAttempt]) -> str:
    return json.dumps([
        {
            "handler": a.handler,
            "attempt_number": a.attempt_number,
            "started_at": a.started_at.isoformat(),
            "outcome": a.outcome.value,
            "error": a.error,
        }
        for a in attempts
    ])


def _row_to_record(row: Any) -> EventRecord:
    return EventRecord(
        provider=row[0],
        event_id=row[1],
        event_type=row[2],
        payload=json.loads(row[3]),
        status=EventStatus(row[4]),
        received_at=datetime.fromisoformat(row[5]),
        deduplicated=bool(row[6]),
        handler_states={k: HandlerState(v) for k, v in json.loads(row[7]).items()},
        attempts=[
            ActionAttempt(
                handler=a["handler"],
                attempt_number=a["attempt_number"],
                started_at=datetime.fromisoformat(a["started_at"]),
                outcome=AttemptOutcome(a["outcome"]),
                error=a["error"],
            )
            for a in json.loads(row[8])
        ],
    )


class SqliteEventStore(EventStore):
    """Durable store; the primary key enforces one record per (provider, event_id)."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        log.info("event_store_opened", path=str(self._db_path))

    async def stop(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Event store is not open; call start() first")
        return self._db

    async def register_if_new(
        self,
        provider: str,
        event_id: str | None,
        event_type: str,
        payload: dict[str, Any],
    ) -> DedupResult:
        db = self._conn
        record = _new_record(provider, event_id, event_type, payload)
        async with self._lock:
            cursor = await db.execute(
                f"INSERT OR IGNORE INTO events ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.provider,
                    record.event_id,
                    record.event_type,
                    json.dumps(record.payload),
                    record.status.value,
                    record.received_at.isoformat(),
                    int(record.deduplicated),
                    "{}",
                    "[]",
                ),
            )
            await db.commit()
            if cursor.rowcount == 1:
                return DedupResult(is_new=True, record=record)

        existing = await self.get(record.provider, record.event_id)
        if existing is None:
            raise StoreError(f"Event {record.provider}/{record.event_id} exists but could not be read")
        return DedupResult(is_new=False, record=existing)

    async def save(self, record: EventRecord) -> None:
        db = self._conn
        async with self._lock:
            await db.execute(
                "UPDATE events SET status = ?, handler_states = ?, attempts = ? "
                "WHERE provider = ? AND event_id = ?",
                (
                    record.status.value,
                    json.dumps({k: v.value for k, v in record.handler_states.items()}),
                    _dump_attempts(record.attempts),
                    record.provider,
                    record.event_id,
                ),
            )
            await db.commit()

    async def get(self, provider: str, event_id: str) -> EventRecord | None:
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM events WHERE provider = ? AND event_id = ?",
            (provider, event_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_record(row)
