"""Tests for conflict detection and resolution."""

from __future__ import annotations

from datetime import timedelta

from storesync.client.api import RemoteChange
from storesync.client.sync.conflict import ConflictResolver
from storesync.client.sync.engine import SyncEngine
from storesync.core.timeutil import format_ts
from storesync.core.types import ChangeType, ConflictStrategy, SyncStatus

RECORD_ID = "22222222-2222-2222-2222-222222222222"


def change(change_type: ChangeType = ChangeType.UPDATE, **data: object) -> RemoteChange:
    return RemoteChange("customers", RECORD_ID, change_type, {"id": RECORD_ID, **data})


class TestEffectiveChangeType:
    """Tests for soft-delete reclassification."""

    def test_update_with_deleted_at_is_delete(self) -> None:
        remote = change(deleted_at="2026-03-01T00:00:00+00:00")

        assert ConflictResolver.effective_change_type(remote) is ChangeType.DELETE

    def test_plain_update_kept(self) -> None:
        assert ConflictResolver.effective_change_type(change(name="x")) is ChangeType.UPDATE


class TestHasConflict:
    """Tests for conflict detection."""

    def test_no_local_record(self, engine: SyncEngine, clock) -> None:  # type: ignore[no-untyped-def]
        assert not engine.resolver.has_conflict("customers", RECORD_ID, None, clock())

    def test_open_entry(self, engine: SyncEngine, clock) -> None:  # type: ignore[no-untyped-def]
        engine.track_change("customers", RECORD_ID, ChangeType.UPDATE)
        local = {"id": RECORD_ID, "updated_at": format_ts(clock() - timedelta(days=1))}

        assert engine.resolver.has_conflict("customers", RECORD_ID, local, clock())

    def test_edited_after_last_sync(self, engine: SyncEngine, clock) -> None:  # type: ignore[no-untyped-def]
        local = {"id": RECORD_ID, "updated_at": format_ts(clock() + timedelta(seconds=1))}

        assert engine.resolver.has_conflict("customers", RECORD_ID, local, clock())

    def test_edited_before_last_sync(self, engine: SyncEngine, clock) -> None:  # type: ignore[no-untyped-def]
        local = {"id": RECORD_ID, "updated_at": format_ts(clock())}

        assert not engine.resolver.has_conflict("customers", RECORD_ID, local, clock())

    def test_never_synced(self, engine: SyncEngine) -> None:
        local = {"id": RECORD_ID, "updated_at": "2020-01-01T00:00:00Z"}

        assert engine.resolver.has_conflict("customers", RECORD_ID, local, None)


class TestResolve:
    """Tests for resolution by strategy."""

    def _conflicting(self, engine: SyncEngine, strategy: ConflictStrategy):  # type: ignore[no-untyped-def]
        engine.track_change("customers", RECORD_ID, ChangeType.UPDATE)
        local = {"id": RECORD_ID, "name": "Local"}
        return engine.resolver.resolve(change(name="Remote"), RECORD_ID, local, None, strategy)

    def test_server_wins(self, engine: SyncEngine) -> None:
        decision = self._conflicting(engine, ConflictStrategy.SERVER_WINS)

        assert decision.apply
        assert decision.conflict

    def test_client_wins(self, engine: SyncEngine) -> None:
        decision = self._conflicting(engine, ConflictStrategy.CLIENT_WINS)

        assert not decision.apply
        assert decision.conflict
        assert engine.journal.list_entries(SyncStatus.CONFLICT) == []

    def test_manual(self, engine: SyncEngine) -> None:
        decision = self._conflicting(engine, ConflictStrategy.MANUAL)

        assert not decision.apply
        entries = engine.journal.list_entries(SyncStatus.CONFLICT)
        assert len(entries) == 1
        assert entries[0].payload["change_type"] == "update"
        assert entries[0].payload["local"] == {"id": RECORD_ID, "name": "Local"}

    def test_no_conflict_applies(self, engine: SyncEngine) -> None:
        decision = engine.resolver.resolve(
            change(name="Remote"), RECORD_ID, None, None, ConflictStrategy.CLIENT_WINS
        )

        assert decision.apply
        assert not decision.conflict
