"""Remote changes waiting for their foreign keys to resolve.

A pulled change whose parents are not known locally yet cannot be applied.
It is kept in pending_remote_changes and re-attempted on every pull, so
moving the checkpoint forward never loses it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from storesync.client.api import RemoteChange
from storesync.core.timeutil import format_ts, utcnow

if TYPE_CHECKING:
    from storesync.client.state import LocalStore

logger = logging.getLogger(__name__)


class DeferredChangeStore:
    """Persisted set of remote changes not applied yet."""

    def __init__(self, store: LocalStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def save(self, change: RemoteChange, error: str) -> None:
        """Keep a change for the next pull. A newer version replaces an older one."""
        serialized = change.to_dict()
        self._store.execute(
            """
            INSERT INTO pending_remote_changes (
                table_name, record_id, change_type, data, server_timestamp,
                attempts, last_error, created_at
            ) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT (table_name, record_id) DO UPDATE SET
                change_type = excluded.change_type,
                data = excluded.data,
                server_timestamp = excluded.server_timestamp,
                attempts = attempts + 1,
                last_error = excluded.last_error
            """,
            (
                change.table,
                change.record_id,
                change.change_type.value,
                json.dumps(serialized["data"], default=str),
                serialized["server_timestamp"],
                error,
                format_ts(self._clock()),
            ),
        )
        logger.debug("Deferred remote change %s/%s: %s", change.table, change.record_id, error)

    def remove(self, table: str, record_id: str) -> None:
        self._store.execute(
            "DELETE FROM pending_remote_changes WHERE table_name = ? AND record_id = ?",
            (table, record_id),
        )

    def list(self) -> list[RemoteChange]:
        """Deferred changes, oldest first."""
        rows = self._store.fetchall(
            "SELECT * FROM pending_remote_changes ORDER BY created_at, rowid"
        )
        return [
            RemoteChange.from_dict(
                {
                    "table": row["table_name"],
                    "record_id": row["record_id"],
                    "change_type": row["change_type"],
                    "data": json.loads(row["data"]),
                    "server_timestamp": row["server_timestamp"],
                }
            )
            for row in rows
        ]

    def count(self) -> int:
        row = self._store.fetchone("SELECT COUNT(*) AS n FROM pending_remote_changes")
        return row["n"] if row else 0
