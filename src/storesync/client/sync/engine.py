"""Sync engine coordinating the local store and the cloud backend.

This module provides:
- SyncEngine: push, pull, initial reconciliation and reporting
- SyncTransport: the transport interface the engine drives

A run moves through IDLE -> LOCKED -> (INITIAL_SYNC) -> PUSHING -> PULLING
-> IDLE and always releases the lock on the way out, whatever happened.

Pushing one journal entry is two-phase:
    1. remote write (upsert or soft delete), not reversible once confirmed
    2. one local transaction: mark synced, save the id mapping, mirror a
       soft delete

A failure in phase 2 is never retried against the backend. It is logged
as an "orphaned remote write" and reported on SyncReport.orphaned.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from storesync.client.api import CloudClient, ConnectionCheck, RemoteChange, UpsertResult
from storesync.client.entities import EntityRegistry
from storesync.client.sync.conflict import ConflictResolver
from storesync.client.sync.deferred import DeferredChangeStore
from storesync.client.sync.health import SyncHealthReport, SyncStatusReport, assess_health
from storesync.client.sync.journal import ChangeJournal, EnqueueResult, JournalEntry
from storesync.client.sync.lock import DEFAULT_LEASE, SyncLock
from storesync.client.sync.mapping import ForeignKeyTranslator, IdMappingStore
from storesync.client.sync.metadata import SyncMetadataStore, SyncSettings
from storesync.client.sync.retry import classify_error, describe_error, strip_tag, tag_error
from storesync.client.sync.types import (
    CycleReport,
    ForeignKeyPendingError,
    InitialSyncReport,
    NotConfiguredError,
    PullReport,
    RecordNotFoundError,
    SyncDisabledError,
    SyncInProgressError,
    SyncReport,
)
from storesync.core.timeutil import format_ts, is_uuid, utcnow
from storesync.core.types import ApplyOutcome, ChangeType, ConflictStrategy, SyncPhase

if TYPE_CHECKING:
    from storesync.client.state import LocalStore
    from storesync.core.tables import TableRegistry

logger = logging.getLogger(__name__)

# Pause between two pushed entries, to stay under the backend rate limits
DEFAULT_ITEM_DELAY = 0.1
DEFAULT_BATCH_SIZE = 50
DEFAULT_MAX_AUTO_RETRIES = 5


class SyncTransport(Protocol):
    """Remote operations the engine needs (implemented by CloudClient)."""

    async def upsert(self, table: str, record_id: str, data: dict[str, Any]) -> UpsertResult: ...

    async def soft_delete(self, table: str, record_id: str) -> None: ...

    async def get_changes(self, since: datetime | None = None) -> list[RemoteChange]: ...

    async def test_connection(self) -> ConnectionCheck: ...

    async def close(self) -> None: ...


class SyncEngine:
    """Coordinates synchronization between the local store and the cloud."""

    def __init__(
        self,
        store: LocalStore,
        client: SyncTransport | None = None,
        *,
        entities: EntityRegistry | None = None,
        tables: TableRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
        item_delay: float = DEFAULT_ITEM_DELAY,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lock_lease: timedelta = DEFAULT_LEASE,
        max_auto_retries: int = DEFAULT_MAX_AUTO_RETRIES,
        allow_null_fallback: bool = False,
    ) -> None:
        """Initialize the sync engine.

        Args:
            store: Local store.
            client: Transport to the backend. When omitted, a CloudClient is
                built from the stored provider settings for each run.
            entities: Entity adapters; defaults to one per synced table.
            tables: Registry of synced tables; defaults to the store's.
            clock: Source of the current time.
            item_delay: Seconds to wait between two pushed entries.
            batch_size: Maximum entries pushed per run.
            lock_lease: Lease of the sync lock.
            max_auto_retries: Failed entries are auto-retried while they
                failed fewer times than this.
            allow_null_fallback: Null out nullable foreign keys whose parent
                is missing locally instead of failing the push.
        """
        self._store = store
        self._client = client
        self._owns_client = False
        self._clock = clock
        self.tables = tables if tables is not None else store.tables
        self.entities = entities if entities is not None else EntityRegistry.for_store(store)
        self.item_delay = item_delay
        self.batch_size = batch_size
        self.max_auto_retries = max_auto_retries

        self.metadata = SyncMetadataStore(store, clock)
        self.journal = ChangeJournal(store, self.metadata, self.tables, clock)
        self.lock = SyncLock(store, self.metadata, lock_lease, clock)
        self.mappings = IdMappingStore(store, clock)
        self.translator = ForeignKeyTranslator(
            self.mappings,
            self.journal,
            self.entities,
            self.tables,
            allow_null_fallback=allow_null_fallback,
        )
        self.resolver = ConflictResolver(self.journal)
        self.deferred = DeferredChangeStore(store, clock)
        self.phase = SyncPhase.IDLE

    @property
    def store(self) -> LocalStore:
        return self._store

    # === Entry point for the CRUD layer ===

    def track_change(
        self,
        table: str,
        record_id: str,
        change_type: ChangeType | str,
        payload: dict[str, Any] | None = None,
    ) -> EnqueueResult:
        """Journal a local change for the next push."""
        return self.journal.enqueue(table, record_id, change_type, payload)

    # === Run lifecycle ===

    def _ensure_client(self, settings: SyncSettings) -> SyncTransport:
        if self._client is not None:
            return self._client
        if not settings.is_configured:
            raise NotConfiguredError()
        self._client = CloudClient(settings.cloud_config(), tables=self.tables)
        self._owns_client = True
        return self._client

    async def _release_client(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.close()
            self._client = None
            self._owns_client = False

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[SyncTransport]:
        """Hold the sync lock and a transport for one run.

        Raises:
            SyncDisabledError: If sync is disabled.
            NotConfiguredError: If no transport was given and no provider
                is configured.
            SyncInProgressError: If another run holds the lock.
        """
        settings = self.metadata.get()
        if not settings.sync_enabled:
            raise SyncDisabledError()
        if self._client is None and not settings.is_configured:
            raise NotConfiguredError()
        if not self.lock.acquire():
            raise SyncInProgressError()
        lease_token = self.lock.token

        self.phase = SyncPhase.LOCKED
        try:
            yield self._ensure_client(settings)
        finally:
            self.phase = SyncPhase.IDLE
            self.lock.release(lease_token)
            await self._release_client()

    async def perform_initial_sync(self) -> InitialSyncReport | None:
        """Reconcile everything on first contact.

        Returns:
            The report, or None if a sync already completed before.
        """
        async with self._session() as client:
            if self.metadata.get().last_sync_at is not None:
                logger.info("Initial sync not needed")
                return None
            return await self._initial_sync(client)

    async def sync_all(self) -> SyncReport:
        """Push pending local changes.

        Runs the initial reconciliation first if no sync ever completed.

        Raises:
            SyncInProgressError: If another run holds the lock.
            SyncDisabledError: If sync is disabled.
            NotConfiguredError: If no provider is configured.
            APIError: If the initial reconciliation cannot list remote rows.
        """
        async with self._session() as client:
            report = SyncReport()
            await self._initial_sync_if_needed(client, report)
            await self._push(client, report)
            return report

    async def pull_changes(self, since: datetime | None = None) -> PullReport:
        """Fetch and apply remote changes.

        Args:
            since: Lower bound overriding the stored checkpoint, if later.

        Raises:
            SyncInProgressError: If another run holds the lock.
            SyncDisabledError: If sync is disabled.
            NotConfiguredError: If no provider is configured.
            APIError: If the changes cannot be fetched; the checkpoint does
                not move.
        """
        async with self._session() as client:
            stored = self.metadata.get().last_sync_at
            candidates = [value for value in (since, stored) if value is not None]
            return await self._pull(client, max(candidates) if candidates else None)

    async def run_cycle(self) -> CycleReport:
        """Initial sync if needed, push, then pull, under one lock."""
        async with self._session() as client:
            push = SyncReport()
            await self._initial_sync_if_needed(client, push)
            # Read before pushing: a push moves the checkpoint, and remote
            # changes made before it must still be pulled
            since = self.metadata.get().last_sync_at
            await self._push(client, push)
            pull = await self._pull(client, since)
            return CycleReport(push=push, pull=pull)

    # === Initial reconciliation ===

    async def _initial_sync_if_needed(self, client: SyncTransport, report: SyncReport) -> None:
        if self.metadata.get().last_sync_at is None:
            logger.info("First sync detected, running initial sync")
            report.initial = await self._initial_sync(client)

    async def _initial_sync(self, client: SyncTransport) -> InitialSyncReport:
        """Download remote-only records and queue local-only ones."""
        self.phase = SyncPhase.INITIAL_SYNC
        started = self._clock()
        strategy = self.metadata.get().conflict_resolution_strategy
        report = InitialSyncReport()

        changes = await client.get_changes(None)
        logger.info("Initial sync: %d remote records", len(changes))

        remote_ids: dict[str, set[str]] = defaultdict(set)
        for change in self._in_dependency_order(changes):
            local_id = self.mappings.reverse_lookup(change.table, change.record_id)
            remote_ids[change.table].add(local_id or change.record_id)
            outcome = self.apply_remote_change(change, strategy)
            if outcome is ApplyOutcome.APPLIED:
                report.downloaded += 1
            elif outcome is ApplyOutcome.CONFLICT:
                report.conflicts += 1
            elif outcome is ApplyOutcome.DEFERRED:
                report.deferred += 1
            elif outcome is ApplyOutcome.FAILED:
                report.errors.append(f"{change.table}/{change.record_id}")
            else:
                report.skipped += 1

        for spec in self.tables:
            if spec.name not in self.entities:
                continue
            adapter = self.entities.get(spec.name)
            for local_id in adapter.list_ids():
                if local_id in remote_ids[spec.name] or self.journal.is_queued(spec.name, local_id):
                    continue
                record = adapter.get_by_id(local_id)
                if record is None:
                    continue
                result = self.journal.enqueue(spec.name, local_id, ChangeType.CREATE, record)
                if result is EnqueueResult.QUEUED:
                    report.queued += 1

        self.metadata.set_last_sync_at(started)
        logger.info(
            "Initial sync complete: %d downloaded, %d queued, %d conflicts, %d errors",
            report.downloaded, report.queued, report.conflicts, len(report.errors),
        )
        return report

    # === Push ===

    def _queue_root_records(self) -> int:
        """Queue every live root record not yet queued or mapped.

        Children can only be pushed once their parents have a remote id, so
        root tables are always fully queued, even untouched rows.
        """
        queued = 0
        for spec in self.tables.root_tables:
            if spec.name not in self.entities:
                continue
            adapter = self.entities.get(spec.name)
            for local_id in adapter.list_ids():
                if self.journal.is_queued(spec.name, local_id):
                    continue
                if self.mappings.lookup(spec.name, local_id) is not None:
                    continue
                record = adapter.get_by_id(local_id)
                if record is None:
                    continue
                result = self.journal.enqueue(spec.name, local_id, ChangeType.CREATE, record)
                if result is EnqueueResult.QUEUED:
                    queued += 1
        if queued:
            logger.info("Queued %d root records for push", queued)
        return queued

    def order_entries(self, entries: Iterable[JournalEntry]) -> list[JournalEntry]:
        """Sort entries by table dependency level, keeping creation order."""
        return sorted(entries, key=lambda entry: self.tables.order_key(entry.table_name))

    async def _push(self, client: SyncTransport, report: SyncReport) -> None:
        self.phase = SyncPhase.PUSHING
        report.queued_roots = self._queue_root_records()
        report.recovered = self.journal.recover_stuck_items()
        report.retried = self.journal.auto_retry_failed_items(self.max_auto_retries)

        entries = self.order_entries(self.journal.dequeue_pending(self.batch_size))
        if not entries:
            logger.info("No pending changes to push")
            return

        logger.info("Pushing %d changes", len(entries))
        for index, entry in enumerate(entries):
            if index and self.item_delay:
                await asyncio.sleep(self.item_delay)
            await self._push_entry(client, entry, report)

        if report.synced:
            self.metadata.set_last_sync_at(self._clock())
        logger.info(
            "Push complete: %d synced, %d deferred, %d failed",
            report.synced, report.deferred, report.failed,
        )

    def _current_record(self, entry: JournalEntry) -> dict[str, Any]:
        """Latest local version of a record, else the journaled snapshot."""
        record = None
        if entry.table_name in self.entities:
            record = self.entities.get(entry.table_name).get_by_id(entry.record_id)
        if record is None:
            record = entry.payload
        if record is None:
            raise RecordNotFoundError(entry.table_name, entry.record_id)
        return record

    async def _push_entry(
        self, client: SyncTransport, entry: JournalEntry, report: SyncReport
    ) -> bool:
        """Push one journal entry. Returns True if it was confirmed."""
        table, record_id = entry.table_name, entry.record_id
        self.journal.mark_syncing(entry.id)
        remote_id = self.mappings.lookup(table, record_id) or record_id
        new_remote_id: str | None = None

        # Phase 1: remote write
        try:
            if entry.change_type is ChangeType.DELETE:
                if is_uuid(remote_id):
                    await client.soft_delete(table, remote_id)
                else:
                    logger.debug(
                        "%s/%s never reached the cloud, deleting locally only", table, record_id
                    )
            else:
                data = self.translator.translate_outbound(table, self._current_record(entry))
                result = await client.upsert(table, remote_id, data)
                new_remote_id = result.remote_id
        except Exception as e:
            message = describe_error(e)
            self.journal.mark_error(entry.id, message)
            if classify_error(e).transient:
                report.deferred += 1
            else:
                report.failed += 1
            report.errors.append(f"{table}/{record_id}: {strip_tag(message)}")
            logger.warning(
                "Push of %s %s/%s failed: %s", entry.change_type.value, table, record_id, message
            )
            return False

        # Phase 2: local bookkeeping
        try:
            with self._store.transaction():
                self.journal.mark_synced(entry.id)
                if new_remote_id:
                    self.mappings.save(table, record_id, new_remote_id)
                if entry.change_type is ChangeType.DELETE:
                    self._mirror_delete(table, record_id)
        except Exception as e:
            logger.error(
                "orphaned remote write: %s %s/%s confirmed remotely, local bookkeeping failed: %s",
                entry.change_type.value, table, record_id, e,
            )
            report.orphaned.append(f"{table}/{record_id}")
            try:
                self.journal.mark_error(
                    entry.id, tag_error(f"Orphaned remote write: {e}", transient=False)
                )
            except sqlite3.Error:
                logger.exception("Could not flag orphaned entry %d", entry.id)
            return False

        report.synced += 1
        logger.debug("Pushed %s %s/%s", entry.change_type.value, table, record_id)
        return True

    def _mirror_delete(self, table: str, record_id: str) -> None:
        if table not in self.entities:
            return
        adapter = self.entities.get(table)
        record = adapter.get_by_id(record_id)
        if record is not None and not record.get("deleted_at"):
            adapter.mark_deleted(record_id, format_ts(self._clock()))

    # === Pull ===

    def _in_dependency_order(self, changes: Iterable[RemoteChange]) -> list[RemoteChange]:
        return sorted(changes, key=lambda change: self.tables.order_key(change.table))

    async def _pull(self, client: SyncTransport, since: datetime | None) -> PullReport:
        self.phase = SyncPhase.PULLING
        started = self._clock()
        strategy = self.metadata.get().conflict_resolution_strategy
        report = PullReport()
        backlog = {(change.table, change.record_id) for change in self.deferred.list()}

        changes = await client.get_changes(since)
        report.total = len(changes)

        for change in self._in_dependency_order(changes):
            self._tally(report, change, self.apply_remote_change(change, strategy))

        # Changes deferred by an earlier pull, unless superseded above
        retry = [
            change
            for change in self.deferred.list()
            if (change.table, change.record_id) in backlog
        ]
        for change in self._in_dependency_order(retry):
            outcome = self.apply_remote_change(change, strategy)
            if outcome is not ApplyOutcome.DEFERRED:
                report.retried_deferred += 1
                self._tally(report, change, outcome)

        stored = self.metadata.get().last_sync_at
        self.metadata.set_last_sync_at(max(started, stored) if stored else started)
        logger.info(
            "Pull complete: %d changes, %d applied, %d conflicts, %d deferred, %d failed",
            report.total, report.applied, report.conflicts, report.deferred, report.failed,
        )
        return report

    @staticmethod
    def _tally(report: PullReport, change: RemoteChange, outcome: ApplyOutcome) -> None:
        if outcome is ApplyOutcome.APPLIED:
            report.applied += 1
        elif outcome is ApplyOutcome.CONFLICT:
            report.conflicts += 1
        elif outcome is ApplyOutcome.DEFERRED:
            report.deferred += 1
        elif outcome is ApplyOutcome.FAILED:
            report.failed += 1
            report.errors.append(f"{change.table}/{change.record_id}")
        else:
            report.skipped += 1

    def apply_remote_change(
        self,
        change: RemoteChange,
        strategy: ConflictStrategy | None = None,
    ) -> ApplyOutcome:
        """Apply one remote change to the local store.

        Local writes go through the entity adapters, never the journal, so
        applied changes are not echoed back to the cloud.

        Args:
            change: The remote change.
            strategy: Conflict strategy; defaults to the configured one.

        Returns:
            What happened to the change. A change whose foreign keys cannot
            be resolved yet is kept for the next pull (DEFERRED).
        """
        table = change.table
        if not self.tables.is_syncable(table) or table not in self.entities:
            logger.debug("Ignoring remote change for unsynced table %s", table)
            return ApplyOutcome.SKIPPED

        settings = self.metadata.get()
        if strategy is None:
            strategy = settings.conflict_resolution_strategy
        adapter = self.entities.get(table)
        kind = self.resolver.effective_change_type(change)

        data: dict[str, Any] = {}
        if kind is not ChangeType.DELETE:
            try:
                data = self.translator.translate_inbound(table, change.data)
            except ForeignKeyPendingError as e:
                self.deferred.save(change, str(e))
                logger.info("Deferred remote change %s/%s: %s", table, change.record_id, e)
                return ApplyOutcome.DEFERRED

        local_id = self.mappings.reverse_lookup(table, change.record_id) or change.record_id
        local = adapter.get_by_id(local_id)

        if kind is ChangeType.DELETE and (local is None or local.get("deleted_at")):
            self.deferred.remove(table, change.record_id)
            return ApplyOutcome.SKIPPED

        decision = self.resolver.resolve(change, local_id, local, settings.last_sync_at, strategy)
        if not decision.apply:
            self.deferred.remove(table, change.record_id)
            return ApplyOutcome.CONFLICT if decision.conflict else ApplyOutcome.SKIPPED

        try:
            with self._store.transaction():
                if kind is ChangeType.DELETE:
                    deleted_at = change.data.get("deleted_at") or format_ts(self._clock())
                    adapter.mark_deleted(local_id, str(deleted_at))
                else:
                    data.pop("id", None)
                    if local is None:
                        adapter.create({**data, "id": local_id})
                    else:
                        adapter.update(local_id, data)
                    if self.mappings.lookup(table, local_id) is None:
                        self.mappings.save(table, local_id, change.record_id)
                if decision.conflict:
                    self.journal.discard_pending(table, local_id)
                self.deferred.remove(table, change.record_id)
        except (sqlite3.Error, ValueError) as e:
            logger.error(
                "Failed to apply remote %s %s/%s: %s", kind.value, table, change.record_id, e
            )
            # Only missing parents keep a change in the backlog
            try:
                self.deferred.remove(table, change.record_id)
            except sqlite3.Error as remove_error:
                logger.error(
                    "Could not drop deferred change %s/%s: %s",
                    table, change.record_id, remove_error,
                )
            return ApplyOutcome.FAILED

        logger.debug("Applied remote %s %s/%s", kind.value, table, change.record_id)
        return ApplyOutcome.APPLIED

    # === Reporting ===

    def status(self) -> SyncStatusReport:
        settings = self.metadata.get()
        return SyncStatusReport(
            enabled=settings.sync_enabled,
            configured=settings.is_configured,
            last_sync_at=settings.last_sync_at,
            counts=self.journal.counts(),
            mappings=self.mappings.count(),
            deferred_remote=self.deferred.count(),
            phase=self.phase,
            locked=self.lock.is_locked_anywhere(),
        )

    def health(self) -> SyncHealthReport:
        return assess_health(self.status(), self._clock())

    async def test_connection(self) -> ConnectionCheck:
        """Check the backend with the current settings.

        Raises:
            NotConfiguredError: If no transport was given and no provider
                is configured.
        """
        if self._client is not None and not self._owns_client:
            return await self._client.test_connection()
        settings = self.metadata.get()
        if not settings.is_configured:
            raise NotConfiguredError()
        async with CloudClient(settings.cloud_config(), tables=self.tables) as client:
            return await client.test_connection()
