"""Sync metadata: the singleton configuration and checkpoint row.

This module provides:
- SyncSettings: snapshot of the sync_metadata row
- SyncMetadataStore: lazy creation, validated partial updates, checkpoint
  and lock-lease accessors

The lock-lease column is only written through SyncLock.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from storesync.core.config import SUPPORTED_PROVIDERS, CloudConfig, ConfigError
from storesync.core.timeutil import format_ts, parse_ts, utcnow
from storesync.core.types import ConflictStrategy

if TYPE_CHECKING:
    import sqlite3

    from storesync.client.state import LocalStore

logger = logging.getLogger(__name__)

# Fields a caller may change through update_config
CONFIG_FIELDS = frozenset(
    {
        "sync_enabled",
        "sync_interval_minutes",
        "cloud_provider",
        "cloud_url",
        "api_key",
        "table_prefix",
        "conflict_resolution_strategy",
    }
)

# Values a UI sends back when it only displays a masked credential
PLACEHOLDER_API_KEYS = frozenset({"", "***"})
MIN_API_KEY_LENGTH = 10


def is_placeholder_api_key(value: str | None) -> bool:
    """Check whether a credential update must be ignored."""
    if value is None:
        return True
    key = value.strip()
    return key in PLACEHOLDER_API_KEYS or len(key) <= MIN_API_KEY_LENGTH


def mask_api_key(value: str | None) -> str | None:
    if not value:
        return None
    return f"{value[:4]}***{value[-4:]}" if len(value) > 12 else "***"


@dataclass
class SyncSettings:
    """Snapshot of the sync metadata row."""

    last_sync_at: datetime | None
    sync_enabled: bool
    sync_interval_minutes: int
    cloud_provider: str
    cloud_url: str | None
    api_key: str | None
    table_prefix: str
    conflict_resolution_strategy: ConflictStrategy
    lock_expires_at: datetime | None
    device_id: str
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SyncSettings:
        """Create SyncSettings from database row."""
        try:
            strategy = ConflictStrategy(row["conflict_resolution_strategy"])
        except ValueError:
            logger.warning(
                "Unknown conflict strategy %r, using server_wins",
                row["conflict_resolution_strategy"],
            )
            strategy = ConflictStrategy.SERVER_WINS
        return cls(
            last_sync_at=parse_ts(row["last_sync_at"]),
            sync_enabled=bool(row["sync_enabled"]),
            sync_interval_minutes=row["sync_interval_minutes"],
            cloud_provider=row["cloud_provider"],
            cloud_url=row["cloud_url"],
            api_key=row["api_key"],
            table_prefix=row["table_prefix"] or "",
            conflict_resolution_strategy=strategy,
            lock_expires_at=parse_ts(row["sync_lock_expires_at"]),
            device_id=row["device_id"],
            updated_at=parse_ts(row["updated_at"]),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.cloud_url and self.api_key)

    def cloud_config(self, **overrides: Any) -> CloudConfig:
        """Build the connection settings of the transport.

        Raises:
            ConfigError: If no URL or credential is stored.
        """
        if not self.is_configured:
            raise ConfigError("Cloud provider is not configured")
        return CloudConfig(
            url=self.cloud_url or "",
            api_key=self.api_key or "",
            table_prefix=self.table_prefix,
            **overrides,
        )

    def to_public_dict(self) -> dict[str, Any]:
        """Settings safe to display, with the credential masked."""
        return {
            "sync_enabled": self.sync_enabled,
            "sync_interval_minutes": self.sync_interval_minutes,
            "cloud_provider": self.cloud_provider,
            "cloud_url": self.cloud_url,
            "api_key": mask_api_key(self.api_key),
            "table_prefix": self.table_prefix,
            "conflict_resolution_strategy": self.conflict_resolution_strategy.value,
            "last_sync_at": format_ts(self.last_sync_at) if self.last_sync_at else None,
            "device_id": self.device_id,
        }


class SyncMetadataStore:
    """Access to the singleton sync_metadata row (id = 1)."""

    def __init__(
        self,
        store: LocalStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    def _ensure_row(self) -> None:
        self._store.execute(
            "INSERT OR IGNORE INTO sync_metadata (id, device_id, sync_enabled, updated_at) "
            "VALUES (1, ?, 0, ?)",
            (str(uuid.uuid4()), format_ts(self._clock())),
        )

    def get(self) -> SyncSettings:
        """Get the settings, creating the row on first access."""
        self._ensure_row()
        row = self._store.fetchone("SELECT * FROM sync_metadata WHERE id = 1")
        assert row is not None
        return SyncSettings.from_row(row)

    @property
    def enabled(self) -> bool:
        return self.get().sync_enabled

    def _validate(self, name: str, value: Any) -> Any:
        if name == "sync_enabled":
            return 1 if value else 0
        if name == "sync_interval_minutes":
            try:
                minutes = int(value)
            except (TypeError, ValueError):
                raise ConfigError(f"sync_interval_minutes must be an integer: {value!r}") from None
            if minutes < 1:
                raise ConfigError("sync_interval_minutes must be at least 1")
            return minutes
        if name == "cloud_provider":
            if value not in SUPPORTED_PROVIDERS:
                raise ConfigError(f"Unsupported cloud provider: {value!r}")
            return value
        if name == "cloud_url":
            url = (value or "").strip().rstrip("/")
            if url and not url.startswith(("http://", "https://")):
                raise ConfigError(f"Cloud URL must start with http:// or https://: {url!r}")
            return url or None
        if name == "conflict_resolution_strategy":
            try:
                return ConflictStrategy(value).value
            except ValueError:
                raise ConfigError(f"Unknown conflict strategy: {value!r}") from None
        if name == "table_prefix":
            return (value or "").strip()
        return value

    def update_config(self, **changes: Any) -> SyncSettings:
        """Update some configuration fields.

        A placeholder credential (blank, "***" or too short to be real) is
        ignored so it never overwrites the stored one.

        Returns:
            The settings after the update.

        Raises:
            ConfigError: If a field is unknown or a value invalid, or if only a
                placeholder credential was given.
        """
        if not changes:
            raise ConfigError("No fields to update")
        unknown = set(changes) - CONFIG_FIELDS
        if unknown:
            raise ConfigError(f"Unknown configuration field(s): {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {}
        for name, value in changes.items():
            if name == "api_key":
                if is_placeholder_api_key(value):
                    logger.info("Ignoring placeholder API key update")
                    continue
                values[name] = value.strip()
                continue
            values[name] = self._validate(name, value)
        if not values:
            raise ConfigError("No valid fields to update")

        self._ensure_row()
        values["updated_at"] = format_ts(self._clock())
        assignments = ", ".join(f"{name} = ?" for name in values)
        self._store.execute(
            f"UPDATE sync_metadata SET {assignments} WHERE id = 1",
            list(values.values()),
        )
        logger.info(
            "Sync configuration updated: %s",
            ", ".join(name for name in values if name != "updated_at"),
        )
        return self.get()

    def set_enabled(self, enabled: bool) -> SyncSettings:
        return self.update_config(sync_enabled=enabled)

    def set_last_sync_at(self, value: datetime | None) -> None:
        """Move the sync checkpoint."""
        self._ensure_row()
        self._store.execute(
            "UPDATE sync_metadata SET last_sync_at = ? WHERE id = 1",
            (format_ts(value) if value else None,),
        )

    def read_lock_expiry(self) -> datetime | None:
        return self.get().lock_expires_at

    def write_lock_expiry(self, value: datetime | None) -> None:
        self._ensure_row()
        self._store.execute(
            "UPDATE sync_metadata SET sync_lock_expires_at = ? WHERE id = 1",
            (format_ts(value) if value else None,),
        )
