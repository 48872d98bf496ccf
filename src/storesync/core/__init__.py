"""Core module - Shared types, table registry and configuration."""

from storesync.core.config import CloudConfig, ConfigError
from storesync.core.tables import (
    DEFAULT_TABLES,
    EXCLUDED_TABLES,
    SYNCED_TABLES,
    ForeignKey,
    TableRegistry,
    TableSpec,
)
from storesync.core.timeutil import format_ts, is_uuid, parse_ts, utcnow
from storesync.core.types import (
    ApplyOutcome,
    ChangeType,
    ConflictStrategy,
    HealthLevel,
    SyncPhase,
    SyncStatus,
)

__all__ = [
    # Config
    "CloudConfig",
    "ConfigError",
    # Tables
    "DEFAULT_TABLES",
    "EXCLUDED_TABLES",
    "ForeignKey",
    "SYNCED_TABLES",
    "TableRegistry",
    "TableSpec",
    # Time
    "format_ts",
    "is_uuid",
    "parse_ts",
    "utcnow",
    # Types
    "ApplyOutcome",
    "ChangeType",
    "ConflictStrategy",
    "HealthLevel",
    "SyncPhase",
    "SyncStatus",
]
