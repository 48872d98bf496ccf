"""Shared types for storesync.

This module defines the enums used by the journal, the transport adapter
and the sync orchestrator.
"""

from __future__ import annotations

from enum import Enum


class SyncStatus(str, Enum):
    """Lifecycle status of a change journal entry.

    Entries move pending -> syncing -> synced | error. CONFLICT marks a
    manual-resolution record, which is never dequeued for push.
    """

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    CONFLICT = "conflict"


class ChangeType(str, Enum):
    """Kind of local or remote change."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CONFLICT = "conflict"


class ConflictStrategy(str, Enum):
    """Which side wins when a remote change conflicts with local state."""

    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MANUAL = "manual"


class HealthLevel(str, Enum):
    """Derived health of the sync subsystem."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class SyncPhase(str, Enum):
    """Phase of the current sync run.

    A run goes IDLE -> LOCKED -> (INITIAL_SYNC) -> PUSHING -> PULLING -> IDLE.
    """

    IDLE = "idle"
    LOCKED = "locked"
    INITIAL_SYNC = "initial_sync"
    PUSHING = "pushing"
    PULLING = "pulling"


class ApplyOutcome(str, Enum):
    """Result of applying one remote change locally."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    DEFERRED = "deferred"
    FAILED = "failed"
