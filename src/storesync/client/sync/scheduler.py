"""Scheduler for automatic sync.

This module provides:
- SyncScheduler: runs a full sync cycle every sync_interval_minutes

Sync is poll-driven: there is no push notification from the backend, each
tick runs initial sync (first time only), push, then pull.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from storesync.client.sync.types import CycleReport, SyncDisabledError, SyncInProgressError

if TYPE_CHECKING:
    from storesync.client.sync.engine import SyncEngine

logger = logging.getLogger(__name__)

JOB_ID = "sync_cycle"


class SyncScheduler:
    """Interval scheduler driving SyncEngine.run_cycle."""

    def __init__(self, engine: SyncEngine, interval_minutes: int | None = None) -> None:
        """Initialize the scheduler.

        Args:
            engine: Engine whose cycle is run.
            interval_minutes: Minutes between two runs; defaults to the
                stored sync_interval_minutes.
        """
        self._engine = engine
        self._interval = interval_minutes
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def interval_minutes(self) -> int:
        if self._interval is not None:
            return self._interval
        return self._engine.metadata.get().sync_interval_minutes

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    async def _sync_job(self) -> CycleReport | None:
        """Job function for the scheduled sync cycle."""
        try:
            report = await self._engine.run_cycle()
        except SyncInProgressError:
            logger.info("Scheduled sync skipped: another sync is in progress")
            return None
        except SyncDisabledError:
            logger.debug("Scheduled sync skipped: sync is disabled")
            return None
        except Exception:
            logger.exception("Error during scheduled sync")
            return None
        logger.info(
            "Scheduled sync: %d pushed, %d pulled",
            report.push.synced,
            report.pull.applied,
        )
        return report

    def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self._scheduler.add_job(
            self._sync_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            name="Periodic sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Sync scheduler started (every %d minutes)", self.interval_minutes)

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync scheduler stopped")

    async def run_now(self) -> CycleReport | None:
        """Run a sync cycle immediately (manual trigger)."""
        return await self._sync_job()
