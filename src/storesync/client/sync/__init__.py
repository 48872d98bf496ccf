"""Synchronization between the local store and the cloud backend.

Architecture:
    CRUD layer -> ChangeJournal -> SyncEngine -> CloudClient
                                       ^
    SyncScheduler (poll) --------------+

Components:
- **ChangeJournal** (journal): durable queue of local changes awaiting push
- **SyncLock** (lock): one run at a time, with an expiring persisted lease
- **IdMappingStore / ForeignKeyTranslator** (mapping): local <-> remote ids
- **ConflictResolver** (conflict): server_wins / client_wins / manual
- **DeferredChangeStore** (deferred): remote changes waiting for parents
- **SyncEngine** (engine): initial sync, push, pull, status and health
- **SyncScheduler** (scheduler): interval-driven runs

The engine and scheduler depend on the HTTP client, which itself imports
this package; import them from their modules.
"""

from storesync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    NETWORK_EXCEPTIONS,
    classify_error,
    is_permanent_error,
    retry_with_backoff,
    tag_error,
)
from storesync.client.sync.types import (
    CycleReport,
    ForeignKeyMissingError,
    ForeignKeyPendingError,
    InitialSyncReport,
    JournalError,
    NotConfiguredError,
    PullReport,
    RecordNotFoundError,
    SyncDisabledError,
    SyncError,
    SyncInProgressError,
    SyncReport,
)

__all__ = [
    # Retry functions and constants
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "NETWORK_EXCEPTIONS",
    "classify_error",
    "is_permanent_error",
    "retry_with_backoff",
    "tag_error",
    # Exceptions
    "ForeignKeyMissingError",
    "ForeignKeyPendingError",
    "JournalError",
    "NotConfiguredError",
    "RecordNotFoundError",
    "SyncDisabledError",
    "SyncError",
    "SyncInProgressError",
    # Reports
    "CycleReport",
    "InitialSyncReport",
    "PullReport",
    "SyncReport",
]
