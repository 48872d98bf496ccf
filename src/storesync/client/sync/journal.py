"""Local change journal: the durable queue of changes awaiting push.

This module provides:
- ChangeJournal: enqueue, dequeue, status transitions, crash recovery and
  automatic retry of failed entries
- JournalEntry: one row of the sync_queue table
- JournalCounts: aggregate counts for status and health reporting

Lifecycle of an entry:
    pending -> syncing -> synced
                       -> error -> (auto retry) -> pending
    syncing for longer than the staleness window -> pending (crash recovery)

At most one entry exists per (table, record id, change type). Enqueuing an
existing triple refreshes its payload and resets it to pending, unless the
entry is being pushed right now.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from storesync.client.sync.retry import is_permanent_error, tag_error
from storesync.client.sync.types import JournalError
from storesync.core.tables import DEFAULT_TABLES, TableRegistry
from storesync.core.timeutil import format_ts, parse_ts, utcnow
from storesync.core.types import ChangeType, SyncStatus

if TYPE_CHECKING:
    from storesync.client.state import LocalStore
    from storesync.client.sync.metadata import SyncMetadataStore

logger = logging.getLogger(__name__)

# Entries syncing for longer than this are considered orphaned by a crash
STUCK_AFTER = timedelta(minutes=5)

# Failed entries older than this are left for manual reset
AUTO_RETRY_WINDOW = timedelta(hours=24)

# Entries at or above this retry count are reported as high-retry
HIGH_RETRY_THRESHOLD = 3

RECOVERED_MESSAGE = "Recovered from stuck state"

_STATUS_VALUES = frozenset(status.value for status in SyncStatus)


class EnqueueResult(str, Enum):
    """Outcome of ChangeJournal.enqueue."""

    QUEUED = "queued"  # New entry
    REQUEUED = "requeued"  # Existing entry refreshed and reset to pending
    SKIPPED = "skipped"  # Entry in flight, or sync disabled


@dataclass
class JournalEntry:
    """A change journal entry (one row of sync_queue)."""

    id: int
    table_name: str
    record_id: str
    change_type: ChangeType
    payload: dict[str, Any] | None
    sync_status: SyncStatus
    error_message: str | None
    retry_count: int
    created_at: datetime | None
    synced_at: datetime | None = None
    locked_at: datetime | None = None
    last_attempt_at: datetime | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row, strict: bool = True) -> JournalEntry:
        """Create JournalEntry from database row.

        Args:
            row: sync_queue row.
            strict: Raise on an undecodable payload instead of dropping it.

        Raises:
            ValueError: If strict and the payload or change type is invalid.
        """
        payload = None
        if row["data"]:
            try:
                payload = json.loads(row["data"])
            except json.JSONDecodeError:
                if strict:
                    raise
        return cls(
            id=row["id"],
            table_name=row["table_name"],
            record_id=row["record_id"],
            change_type=ChangeType(row["change_type"]),
            payload=payload,
            sync_status=SyncStatus(row["sync_status"]),
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            created_at=parse_ts(row["created_at"]),
            synced_at=parse_ts(row["synced_at"]),
            locked_at=parse_ts(row["locked_at"]),
            last_attempt_at=parse_ts(row["last_attempt_at"]),
        )


@dataclass
class JournalCounts:
    """Aggregate journal counts."""

    pending: int = 0
    syncing: int = 0
    synced: int = 0
    error: int = 0
    conflict: int = 0
    stuck: int = 0
    high_retry: int = 0
    recent_errors: int = 0

    @property
    def total(self) -> int:
        """Entries taking part in push (manual conflicts excluded)."""
        return self.pending + self.syncing + self.synced + self.error


class ChangeJournal:
    """Durable queue of local changes, stored in sync_queue."""

    def __init__(
        self,
        store: LocalStore,
        metadata: SyncMetadataStore,
        tables: TableRegistry = DEFAULT_TABLES,
        clock: Callable[[], datetime] = utcnow,
        stuck_after: timedelta = STUCK_AFTER,
    ) -> None:
        """Initialize the journal.

        Args:
            store: Local store holding sync_queue.
            metadata: Metadata store, consulted for the enabled flag.
            tables: Registry of synced tables.
            clock: Source of the current time.
            stuck_after: Staleness window of syncing entries.
        """
        self._store = store
        self._metadata = metadata
        self._tables = tables
        self._clock = clock
        self._stuck_after = stuck_after

    def _now(self) -> str:
        return format_ts(self._clock())

    # === Enqueue ===

    def _validate(self, table: str, record_id: Any, change_type: ChangeType | str) -> ChangeType:
        if self._tables.is_excluded(table):
            raise JournalError(f"Table {table} is excluded from sync")
        if not self._tables.is_syncable(table):
            raise JournalError(f"Table {table} is not a synced table")
        if record_id is None or str(record_id) == "":
            raise JournalError(f"Missing record id for {table}")
        try:
            kind = ChangeType(change_type)
        except ValueError:
            raise JournalError(f"Unknown change type: {change_type!r}") from None
        if kind is ChangeType.CONFLICT:
            raise JournalError("Conflict records are written by enqueue_conflict")
        return kind

    def enqueue(
        self,
        table: str,
        record_id: str,
        change_type: ChangeType | str,
        payload: dict[str, Any] | None = None,
    ) -> EnqueueResult:
        """Record a local change for push.

        Args:
            table: Synced table name.
            record_id: Local record id.
            change_type: create, update or delete.
            payload: Snapshot of the record (optional).

        Returns:
            What happened to the journal.

        Raises:
            JournalError: If the table, id or change type is invalid.
        """
        kind = self._validate(table, record_id, change_type)
        record_id = str(record_id)

        if not self._metadata.enabled:
            logger.debug("Sync disabled, not journaling %s %s/%s", kind.value, table, record_id)
            return EnqueueResult.SKIPPED

        data = json.dumps(payload, default=str) if payload is not None else None
        now = self._now()

        with self._store.transaction():
            row = self._store.fetchone(
                "SELECT id, sync_status FROM sync_queue "
                "WHERE table_name = ? AND record_id = ? AND change_type = ?",
                (table, record_id, kind.value),
            )
            if row is not None:
                if row["sync_status"] == SyncStatus.SYNCING.value:
                    logger.debug("%s/%s is being pushed, not requeued", table, record_id)
                    return EnqueueResult.SKIPPED
                self._store.execute(
                    """
                    UPDATE sync_queue
                    SET data = ?, sync_status = ?, retry_count = 0, error_message = NULL,
                        created_at = ?, synced_at = NULL, locked_at = NULL,
                        last_attempt_at = NULL
                    WHERE id = ?
                    """,
                    (data, SyncStatus.PENDING.value, now, row["id"]),
                )
                logger.debug("Requeued %s %s/%s", kind.value, table, record_id)
                return EnqueueResult.REQUEUED

            self._store.execute(
                """
                INSERT INTO sync_queue (
                    table_name, record_id, change_type, data, sync_status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (table, record_id, kind.value, data, SyncStatus.PENDING.value, now),
            )
        logger.debug("Queued %s %s/%s", kind.value, table, record_id)
        return EnqueueResult.QUEUED

    def enqueue_conflict(
        self,
        table: str,
        record_id: str,
        local: dict[str, Any] | None,
        remote: dict[str, Any],
        change_type: ChangeType,
    ) -> None:
        """Store both versions of a conflicting record for manual resolution.

        The entry gets status conflict and is never pushed.
        """
        data = json.dumps(
            {
                "local": local,
                "remote": remote,
                "conflict_type": "update_conflict",
                "change_type": change_type.value,
            },
            default=str,
        )
        self._store.execute(
            """
            INSERT INTO sync_queue (
                table_name, record_id, change_type, data, sync_status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (table_name, record_id, change_type) DO UPDATE SET
                data = excluded.data,
                sync_status = excluded.sync_status,
                created_at = excluded.created_at
            """,
            (
                table,
                record_id,
                ChangeType.CONFLICT.value,
                data,
                SyncStatus.CONFLICT.value,
                self._now(),
            ),
        )
        logger.info("Conflict on %s/%s stored for manual resolution", table, record_id)

    # === Dequeue and transitions ===

    def recover_stuck_items(self) -> int:
        """Reset entries stuck in syncing back to pending.

        Returns:
            Number of entries recovered.
        """
        cutoff = format_ts(self._clock() - self._stuck_after)
        cursor = self._store.execute(
            """
            UPDATE sync_queue
            SET sync_status = ?, locked_at = NULL, retry_count = retry_count + 1,
                error_message = ?
            WHERE sync_status = ? AND (locked_at IS NULL OR locked_at < ?)
            """,
            (SyncStatus.PENDING.value, RECOVERED_MESSAGE, SyncStatus.SYNCING.value, cutoff),
        )
        if cursor.rowcount:
            logger.warning("Recovered %d stuck sync entries", cursor.rowcount)
        return cursor.rowcount

    def dequeue_pending(self, limit: int = 50) -> list[JournalEntry]:
        """Get pending entries, oldest first.

        Stuck entries are recovered first. Entries whose payload cannot be
        decoded are failed permanently and left out.
        """
        self.recover_stuck_items()
        rows = self._store.fetchall(
            "SELECT * FROM sync_queue WHERE sync_status = ? ORDER BY created_at, id LIMIT ?",
            (SyncStatus.PENDING.value, limit),
        )
        entries: list[JournalEntry] = []
        for row in rows:
            try:
                entries.append(JournalEntry.from_row(row))
            except ValueError as e:
                logger.error("Corrupted journal entry %d: %s", row["id"], e)
                self.mark_error(row["id"], tag_error(f"Corrupted payload: {e}", transient=False))
        return entries

    def get(self, entry_id: int) -> JournalEntry | None:
        row = self._store.fetchone("SELECT * FROM sync_queue WHERE id = ?", (entry_id,))
        return JournalEntry.from_row(row, strict=False) if row is not None else None

    def mark_syncing(self, entry_id: int) -> None:
        self._store.execute(
            "UPDATE sync_queue SET sync_status = ?, locked_at = ? WHERE id = ?",
            (SyncStatus.SYNCING.value, self._now(), entry_id),
        )

    def mark_synced(self, entry_id: int) -> None:
        self._store.execute(
            """
            UPDATE sync_queue
            SET sync_status = ?, synced_at = ?, locked_at = NULL, error_message = NULL
            WHERE id = ?
            """,
            (SyncStatus.SYNCED.value, self._now(), entry_id),
        )

    def mark_error(self, entry_id: int, message: str) -> None:
        """Fail an entry. The message should carry its category tag."""
        self._store.execute(
            """
            UPDATE sync_queue
            SET sync_status = ?, error_message = ?, retry_count = retry_count + 1,
                locked_at = NULL, last_attempt_at = ?
            WHERE id = ?
            """,
            (SyncStatus.ERROR.value, message, self._now(), entry_id),
        )

    # === Retry ===

    def auto_retry_failed_items(self, max_retries: int = 5) -> int:
        """Reset retryable failures whose backoff window has elapsed.

        An entry qualifies when it failed less than max_retries times, was
        created within the last 24 hours, is not tagged permanent, and at
        least 2^retry_count seconds passed since its last attempt.

        Returns:
            Number of entries reset to pending.
        """
        now = self._clock()
        rows = self._store.fetchall(
            """
            SELECT id, retry_count, error_message, created_at, last_attempt_at
            FROM sync_queue
            WHERE sync_status = ? AND retry_count < ? AND created_at > ?
            """,
            (SyncStatus.ERROR.value, max_retries, format_ts(now - AUTO_RETRY_WINDOW)),
        )

        ready: list[int] = []
        for row in rows:
            if is_permanent_error(row["error_message"]):
                continue
            last_attempt = parse_ts(row["last_attempt_at"]) or parse_ts(row["created_at"])
            if last_attempt is not None:
                elapsed = (now - last_attempt).total_seconds()
                if elapsed < 2 ** row["retry_count"]:
                    continue
            ready.append(row["id"])

        if ready:
            placeholders = ", ".join("?" for _ in ready)
            self._store.execute(
                f"""
                UPDATE sync_queue
                SET sync_status = ?, retry_count = retry_count + 1, error_message = NULL
                WHERE id IN ({placeholders})
                """,
                (SyncStatus.PENDING.value, *ready),
            )
            logger.info("Auto-retrying %d failed sync entries", len(ready))
        return len(ready)

    def reset_failed_items(
        self, max_retries: int = 100, ids: Sequence[int] | None = None
    ) -> int:
        """Manually reset failed entries, permanent ones included.

        Args:
            max_retries: Only reset entries that failed fewer times.
            ids: Restrict the reset to these entries.

        Returns:
            Number of entries reset.
        """
        sql = (
            "UPDATE sync_queue SET sync_status = ?, retry_count = 0, error_message = NULL, "
            "locked_at = NULL, last_attempt_at = NULL "
            "WHERE sync_status = ? AND retry_count < ?"
        )
        params: list[Any] = [SyncStatus.PENDING.value, SyncStatus.ERROR.value, max_retries]
        if ids is not None:
            if not ids:
                return 0
            sql += f" AND id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        cursor = self._store.execute(sql, params)
        logger.info("Reset %d failed sync entries", cursor.rowcount)
        return cursor.rowcount

    # === Queries and housekeeping ===

    def list_entries(
        self,
        status: SyncStatus | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[JournalEntry]:
        """List entries, newest first."""
        sql = "SELECT * FROM sync_queue"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE sync_status = ?"
            params.append(SyncStatus(status).value)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        rows = self._store.fetchall(sql, params)
        return [JournalEntry.from_row(row, strict=False) for row in rows]

    def clear(self, status: SyncStatus | str | None = None) -> int:
        """Delete entries, optionally only those with a given status."""
        if status is None:
            cursor = self._store.execute("DELETE FROM sync_queue")
        else:
            cursor = self._store.execute(
                "DELETE FROM sync_queue WHERE sync_status = ?", (SyncStatus(status).value,)
            )
        logger.info("Cleared %d sync entries", cursor.rowcount)
        return cursor.rowcount

    def discard_pending(self, table: str, record_id: str) -> int:
        """Drop the unpushed entries of a record superseded by a remote change.

        Pending and failed entries go; synced history, in-flight entries and
        manual conflicts stay.
        """
        cursor = self._store.execute(
            "DELETE FROM sync_queue WHERE table_name = ? AND record_id = ? "
            "AND sync_status IN (?, ?) AND change_type != ?",
            (
                table,
                record_id,
                SyncStatus.PENDING.value,
                SyncStatus.ERROR.value,
                ChangeType.CONFLICT.value,
            ),
        )
        if cursor.rowcount:
            logger.info("Discarded %d local change(s) to %s/%s", cursor.rowcount, table, record_id)
        return cursor.rowcount

    def has_open_entry(self, table: str, record_id: str) -> bool:
        """Check for a pending or syncing entry of a record."""
        row = self._store.fetchone(
            "SELECT 1 FROM sync_queue WHERE table_name = ? AND record_id = ? "
            "AND sync_status IN (?, ?) LIMIT 1",
            (table, record_id, SyncStatus.PENDING.value, SyncStatus.SYNCING.value),
        )
        return row is not None

    def is_queued(self, table: str, record_id: str) -> bool:
        """Check for any push entry of a record, whatever its status."""
        row = self._store.fetchone(
            "SELECT 1 FROM sync_queue WHERE table_name = ? AND record_id = ? "
            "AND change_type != ? LIMIT 1",
            (table, record_id, ChangeType.CONFLICT.value),
        )
        return row is not None

    def counts(self) -> JournalCounts:
        """Count entries per status, plus stuck, high-retry and recent errors."""
        now = self._clock()
        counts = JournalCounts()
        for row in self._store.fetchall(
            "SELECT sync_status, COUNT(*) AS n FROM sync_queue GROUP BY sync_status"
        ):
            if row["sync_status"] in _STATUS_VALUES:
                setattr(counts, row["sync_status"], row["n"])

        stuck = self._store.fetchone(
            "SELECT COUNT(*) AS n FROM sync_queue WHERE sync_status = ? "
            "AND (locked_at IS NULL OR locked_at < ?)",
            (SyncStatus.SYNCING.value, format_ts(now - self._stuck_after)),
        )
        high_retry = self._store.fetchone(
            "SELECT COUNT(*) AS n FROM sync_queue WHERE sync_status = ? AND retry_count >= ?",
            (SyncStatus.ERROR.value, HIGH_RETRY_THRESHOLD),
        )
        recent = self._store.fetchone(
            "SELECT COUNT(*) AS n FROM sync_queue WHERE sync_status = ? AND last_attempt_at > ?",
            (SyncStatus.ERROR.value, format_ts(now - timedelta(hours=1))),
        )
        counts.stuck = stuck["n"] if stuck else 0
        counts.high_retry = high_retry["n"] if high_retry else 0
        counts.recent_errors = recent["n"] if recent else 0
        return counts
