"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and its subclasses: Exception classes raised by the engine
- RecordNotFoundError: a journal entry whose record vanished locally
- ForeignKeyPendingError, ForeignKeyMissingError: translation failures
- InitialSyncReport, SyncReport, PullReport, CycleReport: run results
"""

from __future__ import annotations

from dataclasses import dataclass, field


class SyncError(Exception):
    """Base exception for sync errors."""


class SyncInProgressError(SyncError):
    """Another sync run holds the lock."""

    def __init__(self, message: str = "Sync already in progress") -> None:
        super().__init__(message)


class SyncDisabledError(SyncError):
    """Sync is disabled in the metadata."""

    def __init__(self, message: str = "Sync is disabled") -> None:
        super().__init__(message)


class NotConfiguredError(SyncError):
    """No cloud URL or credential is stored."""

    def __init__(self, message: str = "Cloud provider is not configured") -> None:
        super().__init__(message)


class JournalError(SyncError):
    """A change cannot be journaled (bad table, id or change type)."""


class RecordNotFoundError(SyncError):
    """A journal entry refers to a record that no longer exists locally."""

    transient = False
    retry_delay: float | None = None

    def __init__(self, table: str, record_id: str) -> None:
        self.table = table
        self.record_id = record_id
        super().__init__(f"Record {table}/{record_id} not found locally")


class ForeignKeyPendingError(SyncError):
    """A foreign key points at a parent that has no remote id yet.

    The parent exists locally and will be pushed; the record can be retried
    once it is.

    Attributes:
        table: Table of the record being translated.
        fields: Foreign-key fields left unresolved.
    """

    transient = True
    retry_delay: float | None = None

    def __init__(self, table: str, fields: list[str], detail: str = "") -> None:
        self.table = table
        self.fields = fields
        message = f"Waiting for parent sync: {table}.{', '.join(fields)}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ForeignKeyMissingError(SyncError):
    """A foreign key points at a parent that does not exist locally.

    The reference can never resolve; the record needs data correction.
    """

    transient = False
    retry_delay: float | None = None

    def __init__(self, table: str, fields: list[str]) -> None:
        self.table = table
        self.fields = fields
        super().__init__(f"Parent record missing locally: {table}.{', '.join(fields)}")


@dataclass
class InitialSyncReport:
    """Result of the first full reconciliation."""

    downloaded: int = 0
    queued: int = 0
    conflicts: int = 0
    skipped: int = 0
    deferred: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncReport:
    """Result of a push run.

    Attributes:
        synced: Entries confirmed by the cloud.
        failed: Entries marked with a permanent error.
        deferred: Entries marked with a retryable error.
        queued_roots: Root-table records enqueued by the bootstrap.
        recovered: Stuck entries revived before dequeuing.
        retried: Failed entries reset by auto-retry.
        initial: Report of the initial sync, if one ran.
        errors: Error messages, one per failed or deferred entry.
        orphaned: Entries written remotely whose local bookkeeping failed.
    """

    synced: int = 0
    failed: int = 0
    deferred: int = 0
    queued_roots: int = 0
    recovered: int = 0
    retried: int = 0
    initial: InitialSyncReport | None = None
    errors: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.orphaned


@dataclass
class PullReport:
    """Result of a pull run."""

    total: int = 0
    applied: int = 0
    skipped: int = 0
    conflicts: int = 0
    deferred: int = 0
    failed: int = 0
    retried_deferred: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class CycleReport:
    """Result of a full run: initial sync, push, then pull."""

    push: SyncReport
    pull: PullReport
