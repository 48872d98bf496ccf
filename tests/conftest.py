"""Shared fixtures for the storesync test-suite.

This module provides:
- FakeClock: a controllable clock injected into every sync component
- FakeCloud: an in-memory transport recording what the engine sends
- store / clock / cloud / engine fixtures
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from storesync.client.api import ConnectionCheck, RemoteChange, UpsertResult
from storesync.client.state import LocalStore
from storesync.client.sync.engine import SyncEngine
from storesync.core.timeutil import is_uuid

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeCloud:
    """In-memory backend implementing the transport used by SyncEngine.

    Every call yields to the event loop once, like a real request would.

    Attributes:
        rows: Remote rows per table, keyed by remote id.
        calls: (operation, table, id) for every write, in order.
        upserts: (table, id, payload) for every upsert, in order.
        ids: Remote ids to assign to given (table, local id) pairs.
        failures: Exceptions raised by upserts and deletes of a table.
        changes: What get_changes returns.
        changes_error: Raised by get_changes instead, if set.
        since: The checkpoints get_changes was called with.
    """

    def __init__(self) -> None:
        self.rows: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.calls: list[tuple[str, str, str]] = []
        self.upserts: list[tuple[str, str, dict[str, Any]]] = []
        self.ids: dict[tuple[str, str], str] = {}
        self.failures: dict[str, Exception] = {}
        self.changes: list[RemoteChange] = []
        self.changes_error: Exception | None = None
        self.since: list[datetime | None] = []
        self.connection = ConnectionCheck(True, "Connected", 200)
        self.closed = False

    async def upsert(self, table: str, record_id: str, data: dict[str, Any]) -> UpsertResult:
        await asyncio.sleep(0)
        self.calls.append(("upsert", table, record_id))
        self.upserts.append((table, record_id, dict(data)))
        if table in self.failures:
            raise self.failures[table]

        table_rows = self.rows[table]
        if is_uuid(record_id) and record_id in table_rows:
            table_rows[record_id].update(data)
            return UpsertResult(record_id, created=False)

        remote_id = self.ids.get((table, record_id))
        if remote_id is None:
            remote_id = record_id if is_uuid(record_id) else str(uuid.uuid4())
        table_rows[remote_id] = {**data, "id": remote_id}
        return UpsertResult(remote_id, created=True)

    async def soft_delete(self, table: str, record_id: str) -> None:
        await asyncio.sleep(0)
        self.calls.append(("soft_delete", table, record_id))
        if table in self.failures:
            raise self.failures[table]
        if record_id in self.rows[table]:
            self.rows[table][record_id]["deleted_at"] = "2026-03-02T09:00:00+00:00"

    async def get_changes(self, since: datetime | None = None) -> list[RemoteChange]:
        await asyncio.sleep(0)
        self.since.append(since)
        if self.changes_error is not None:
            raise self.changes_error
        return list(self.changes)

    async def test_connection(self) -> ConnectionCheck:
        return self.connection

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def store(tmp_path: Path) -> Iterator[LocalStore]:
    """Create a store with the retail schema."""
    s = LocalStore(tmp_path / "store.db", create_schema=True)
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def engine(store: LocalStore, cloud: FakeCloud, clock: FakeClock) -> SyncEngine:
    """Create an enabled, configured engine over the fake backend."""
    e = SyncEngine(store, cloud, clock=clock, item_delay=0)
    e.metadata.update_config(
        sync_enabled=True,
        cloud_url="https://example.supabase.co",
        api_key="test-api-key-123456",
    )
    return e
