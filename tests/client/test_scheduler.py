"""Tests for the periodic sync scheduler."""

from __future__ import annotations

from datetime import timedelta

import pytest

from storesync.client.sync.engine import SyncEngine
from storesync.client.sync.scheduler import JOB_ID, SyncScheduler
from storesync.client.sync.types import CycleReport


class TestInterval:
    """Tests for the run interval."""

    def test_defaults_to_stored_setting(self, engine: SyncEngine) -> None:
        assert SyncScheduler(engine).interval_minutes == 5

        engine.metadata.update_config(sync_interval_minutes=15)

        assert SyncScheduler(engine).interval_minutes == 15

    def test_override(self, engine: SyncEngine) -> None:
        assert SyncScheduler(engine, interval_minutes=1).interval_minutes == 1


class TestRunNow:
    """Tests for the manual trigger."""

    @pytest.mark.asyncio
    async def test_runs_cycle(self, engine: SyncEngine) -> None:
        report = await SyncScheduler(engine).run_now()

        assert isinstance(report, CycleReport)
        assert engine.metadata.get().last_sync_at is not None

    @pytest.mark.asyncio
    async def test_skipped_while_locked(self, engine: SyncEngine) -> None:
        assert engine.lock.acquire()
        try:
            assert await SyncScheduler(engine).run_now() is None
        finally:
            engine.lock.release()

    @pytest.mark.asyncio
    async def test_skipped_when_disabled(self, engine: SyncEngine) -> None:
        engine.metadata.set_enabled(False)

        assert await SyncScheduler(engine).run_now() is None

    @pytest.mark.asyncio
    async def test_failure_does_not_propagate(self, engine: SyncEngine, cloud) -> None:  # type: ignore[no-untyped-def]
        cloud.changes_error = RuntimeError("backend down")

        assert await SyncScheduler(engine).run_now() is None
        assert not engine.lock.is_locked


class TestLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_registers_job(self, engine: SyncEngine) -> None:
        scheduler = SyncScheduler(engine, interval_minutes=7)

        scheduler.start()
        try:
            assert scheduler.running
            job = scheduler._scheduler.get_job(JOB_ID)
            assert job is not None
            assert job.trigger.interval == timedelta(minutes=7)
        finally:
            scheduler.stop()

        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_start_twice(self, engine: SyncEngine) -> None:
        scheduler = SyncScheduler(engine)

        scheduler.start()
        first = scheduler._scheduler
        scheduler.start()

        assert scheduler._scheduler is first
        scheduler.stop()

    def test_stop_when_not_running(self, engine: SyncEngine) -> None:
        SyncScheduler(engine).stop()
