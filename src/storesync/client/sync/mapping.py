"""Identifier mappings and foreign-key translation.

This module provides:
- IdMappingStore: persisted local id <-> remote id correspondence
- ForeignKeyTranslator: rewrites foreign keys between the two id spaces

Local ids are whatever the application minted (often 32 hex characters);
remote ids are UUIDs. A value already shaped like a UUID is considered
translated, which makes both directions idempotent.

Outbound, a foreign key that cannot be translated stops the push:
- parent exists locally -> the parent is queued and the child waits
  (ForeignKeyPendingError, retryable)
- parent missing locally -> the reference can never resolve
  (ForeignKeyMissingError, permanent), unless null fallback is enabled and
  the key is nullable
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from storesync.client.fields import decode_json_column, normalize_keys
from storesync.client.sync.types import ForeignKeyMissingError, ForeignKeyPendingError
from storesync.core.tables import DEFAULT_TABLES, NESTED_FOREIGN_KEYS, TableRegistry
from storesync.core.timeutil import format_ts, is_uuid, utcnow
from storesync.core.types import ChangeType

if TYPE_CHECKING:
    from storesync.client.entities import EntityRegistry
    from storesync.client.state import LocalStore
    from storesync.client.sync.journal import ChangeJournal

logger = logging.getLogger(__name__)


class IdMappingStore:
    """Persisted (table, local id) -> remote id mappings."""

    def __init__(self, store: LocalStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def lookup(self, table: str, local_id: str) -> str | None:
        """Get the remote id of a local record."""
        row = self._store.fetchone(
            "SELECT remote_id FROM id_mapping WHERE table_name = ? AND local_id = ?",
            (table, str(local_id)),
        )
        return row["remote_id"] if row is not None else None

    def reverse_lookup(self, table: str, remote_id: str) -> str | None:
        """Get the local id of a remote record."""
        row = self._store.fetchone(
            "SELECT local_id FROM id_mapping WHERE table_name = ? AND remote_id = ? "
            "ORDER BY updated_at DESC LIMIT 1",
            (table, str(remote_id)),
        )
        return row["local_id"] if row is not None else None

    def save(self, table: str, local_id: str, remote_id: str) -> None:
        """Persist a mapping. A newer remote id replaces an older one."""
        previous = self.lookup(table, local_id)
        if previous == remote_id:
            return
        if previous is not None:
            logger.warning(
                "Remapping %s/%s from %s to %s", table, local_id, previous, remote_id
            )
        now = format_ts(self._clock())
        self._store.execute(
            """
            INSERT INTO id_mapping (table_name, local_id, remote_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (table_name, local_id) DO UPDATE SET
                remote_id = excluded.remote_id,
                updated_at = excluded.updated_at
            """,
            (table, str(local_id), str(remote_id), now, now),
        )
        logger.debug("Mapped %s/%s -> %s", table, local_id, remote_id)

    def load_all(self, table: str | None = None) -> dict[tuple[str, str], str]:
        """Load mappings as {(table, local id): remote id}."""
        sql = "SELECT table_name, local_id, remote_id FROM id_mapping"
        params: tuple[str, ...] = ()
        if table is not None:
            sql += " WHERE table_name = ?"
            params = (table,)
        return {
            (row["table_name"], row["local_id"]): row["remote_id"]
            for row in self._store.fetchall(sql, params)
        }

    def count(self) -> int:
        row = self._store.fetchone("SELECT COUNT(*) AS n FROM id_mapping")
        return row["n"] if row else 0


class ForeignKeyTranslator:
    """Translates foreign keys between local and remote id spaces."""

    def __init__(
        self,
        mappings: IdMappingStore,
        journal: ChangeJournal,
        entities: EntityRegistry,
        tables: TableRegistry = DEFAULT_TABLES,
        allow_null_fallback: bool = False,
    ) -> None:
        """Initialize the translator.

        Args:
            mappings: Identifier mapping store.
            journal: Change journal, used to queue unsynced parents.
            entities: Entity adapters, used to look parents up locally.
            tables: Registry of synced tables.
            allow_null_fallback: Null out nullable foreign keys whose parent
                is missing locally instead of failing the push.
        """
        self._mappings = mappings
        self._journal = journal
        self._entities = entities
        self._tables = tables
        self.allow_null_fallback = allow_null_fallback

    def _local_parent(self, table: str, record_id: str) -> dict[str, Any] | None:
        if table not in self._entities:
            return None
        return self._entities.get(table).get_by_id(record_id)

    def translate_outbound(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Rewrite local foreign keys to remote ids before a push.

        Args:
            table: Table of the record.
            record: Local record.

        Returns:
            A translated copy of the record (snake_case keys).

        Raises:
            ForeignKeyPendingError: If a parent exists locally but has no
                remote id yet. The parent is queued if it was not already.
            ForeignKeyMissingError: If a parent does not exist locally.
        """
        spec = self._tables.get(table)
        data = normalize_keys(record)
        pending: list[str] = []
        missing: list[str] = []

        for fk in spec.foreign_keys:
            value = data.get(fk.column)
            if value in (None, "") or is_uuid(value):
                continue
            value = str(value)

            remote_id = self._mappings.lookup(fk.target, value)
            if remote_id is not None:
                data[fk.column] = remote_id
                continue

            parent = self._local_parent(fk.target, value)
            if parent is not None:
                if not self._journal.is_queued(fk.target, value):
                    self._journal.enqueue(fk.target, value, ChangeType.CREATE, parent)
                    logger.info(
                        "Queued parent %s/%s required by %s.%s",
                        fk.target, value, table, fk.column,
                    )
                pending.append(fk.column)
            elif self.allow_null_fallback and not fk.required:
                logger.warning(
                    "Parent %s/%s missing locally, clearing %s.%s",
                    fk.target, value, table, fk.column,
                )
                data[fk.column] = None
            else:
                missing.append(fk.column)

        if missing:
            raise ForeignKeyMissingError(table, missing)
        if pending:
            raise ForeignKeyPendingError(table, pending)
        return data

    def _resolve_inbound(self, target: str, value: str) -> str | None:
        local_id = self._mappings.reverse_lookup(target, value)
        if local_id is not None:
            return local_id
        # Records created remotely keep their UUID as local id
        if self._local_parent(target, value) is not None:
            return value
        return None

    def translate_inbound(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Rewrite remote foreign keys to local ids before applying a change.

        Args:
            table: Table of the record.
            record: Remote record.

        Returns:
            A translated copy of the record (snake_case keys).

        Raises:
            ForeignKeyPendingError: If a referenced record is unknown locally.
        """
        spec = self._tables.get(table)
        data = copy.deepcopy(normalize_keys(record))
        unresolved: list[str] = []

        for fk in spec.foreign_keys:
            value = data.get(fk.column)
            if not is_uuid(value):
                continue
            local_id = self._resolve_inbound(fk.target, value)
            if local_id is None:
                unresolved.append(fk.column)
            else:
                data[fk.column] = local_id

        nested = NESTED_FOREIGN_KEYS.get(table)
        if nested is not None:
            column, keys = nested
            items = decode_json_column(data.get(column))
            if isinstance(items, list):
                data[column] = items
                for index, item in enumerate(items):
                    if not isinstance(item, dict):
                        continue
                    for fk in keys:
                        value = item.get(fk.column)
                        if not is_uuid(value):
                            continue
                        local_id = self._resolve_inbound(fk.target, value)
                        if local_id is None:
                            unresolved.append(f"{column}[{index}].{fk.column}")
                        else:
                            item[fk.column] = local_id

        if unresolved:
            raise ForeignKeyPendingError(table, unresolved, "remote parent not pulled yet")
        return data
