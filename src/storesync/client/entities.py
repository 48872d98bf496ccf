"""Entity adapters: per-table CRUD used by the sync engine.

This module provides:
- EntityAdapter: the interface the engine uses to read and write records
- SqliteEntityAdapter: generic adapter over one synced SQLite table
- UserAdapter: users need a password hash the cloud never sends
- EntityRegistry: table name -> adapter

Records are plain dicts keyed by column name. Adapters never touch the
change journal: writes made while applying remote changes must not echo
back to the cloud.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from storesync.client.fields import encode_local_value, normalize_keys

if TYPE_CHECKING:
    from storesync.client.state import LocalStore
    from storesync.core.tables import TableSpec

logger = logging.getLogger(__name__)

# Users pulled without a password must reset it before logging in
PLACEHOLDER_PASSWORD_HASH = hashlib.sha256(b"TEMP_PASSWORD_RESET_REQUIRED").hexdigest()


class EntityAdapter(Protocol):
    """CRUD operations on one kind of synced record."""

    table: str

    def get_by_id(self, record_id: str) -> dict[str, Any] | None:
        """Get a record, soft-deleted or not."""
        ...

    def list_ids(self, include_deleted: bool = False) -> list[str]:
        """List record ids."""
        ...

    def create(self, data: dict[str, Any]) -> str:
        """Insert a record and return its id."""
        ...

    def update(self, record_id: str, data: dict[str, Any]) -> bool:
        """Update a record. Returns False if it does not exist."""
        ...

    def mark_deleted(self, record_id: str, deleted_at: str) -> bool:
        """Soft-delete a record. Returns False if it does not exist."""
        ...


class SqliteEntityAdapter:
    """Adapter over a synced table of the local store.

    The table's column set is read once, at construction; incoming data is
    restricted to it so that remote-only columns are ignored.
    """

    def __init__(self, store: LocalStore, spec: TableSpec) -> None:
        self._store = store
        self.spec = spec
        self.table = spec.name
        self._columns = tuple(store.table_columns(spec.name))

    @property
    def available(self) -> bool:
        """Whether the table exists locally."""
        return bool(self._columns)

    @property
    def columns(self) -> tuple[str, ...]:
        return self._columns

    def _row_values(self, data: dict[str, Any]) -> dict[str, Any]:
        normalized = normalize_keys(data)
        return {
            column: encode_local_value(column, value)
            for column, value in normalized.items()
            if column in self._columns
        }

    def get_by_id(self, record_id: str) -> dict[str, Any] | None:
        if not self.available:
            return None
        row = self._store.fetchone(
            f'SELECT * FROM "{self.table}" WHERE id = ?', (record_id,)
        )
        return dict(row) if row is not None else None

    def list_ids(self, include_deleted: bool = False) -> list[str]:
        if not self.available:
            return []
        sql = f'SELECT id FROM "{self.table}"'
        if not include_deleted and "deleted_at" in self._columns:
            sql += " WHERE deleted_at IS NULL"
        return [row["id"] for row in self._store.fetchall(sql + " ORDER BY rowid")]

    def create(self, data: dict[str, Any]) -> str:
        values = self._row_values(data)
        if not values.get("id"):
            raise ValueError(f"Cannot create {self.table} record without an id")
        columns = ", ".join(f'"{column}"' for column in values)
        placeholders = ", ".join("?" for _ in values)
        self._store.execute(
            f'INSERT INTO "{self.table}" ({columns}) VALUES ({placeholders})',
            list(values.values()),
        )
        logger.debug("Created %s/%s", self.table, values["id"])
        return str(values["id"])

    def update(self, record_id: str, data: dict[str, Any]) -> bool:
        values = self._row_values(data)
        values.pop("id", None)
        if not values:
            return self.get_by_id(record_id) is not None
        assignments = ", ".join(f'"{column}" = ?' for column in values)
        cursor = self._store.execute(
            f'UPDATE "{self.table}" SET {assignments} WHERE id = ?',
            [*values.values(), record_id],
        )
        return cursor.rowcount > 0

    def mark_deleted(self, record_id: str, deleted_at: str) -> bool:
        if "deleted_at" not in self._columns:
            logger.warning("%s has no deleted_at column, cannot soft-delete", self.table)
            return False
        cursor = self._store.execute(
            f'UPDATE "{self.table}" SET deleted_at = ? WHERE id = ?',
            (deleted_at, record_id),
        )
        return cursor.rowcount > 0


class UserAdapter(SqliteEntityAdapter):
    """Users adapter.

    The cloud never returns password hashes to other devices, so a user
    created from a remote row gets a deterministic placeholder hash, and an
    update without a hash keeps the local one.
    """

    def create(self, data: dict[str, Any]) -> str:
        data = normalize_keys(data)
        if not data.get("password_hash"):
            logger.info("User %s pulled without password, placeholder hash set", data.get("id"))
            data["password_hash"] = PLACEHOLDER_PASSWORD_HASH
        if not data.get("username"):
            data["username"] = data.get("email") or data.get("id")
        return super().create(data)

    def update(self, record_id: str, data: dict[str, Any]) -> bool:
        data = normalize_keys(data)
        if not data.get("password_hash"):
            data.pop("password_hash", None)
        return super().update(record_id, data)


ADAPTER_TYPES: dict[str, type[SqliteEntityAdapter]] = {
    "users": UserAdapter,
}


class EntityRegistry:
    """Maps table names to their adapters."""

    def __init__(self, adapters: Mapping[str, EntityAdapter] | None = None) -> None:
        self._adapters: dict[str, EntityAdapter] = dict(adapters or {})

    @classmethod
    def for_store(cls, store: LocalStore) -> EntityRegistry:
        """Build the default adapters for every synced table of a store."""
        registry = cls()
        for spec in store.tables:
            adapter_type = ADAPTER_TYPES.get(spec.name, SqliteEntityAdapter)
            registry.register(adapter_type(store, spec))
        return registry

    def register(self, adapter: EntityAdapter) -> None:
        self._adapters[adapter.table] = adapter

    def get(self, table: str) -> EntityAdapter:
        """Get the adapter of a table.

        Raises:
            KeyError: If no adapter is registered for the table.
        """
        return self._adapters[table]

    def __contains__(self, table: object) -> bool:
        return table in self._adapters

    def __iter__(self) -> Iterator[EntityAdapter]:
        return iter(self._adapters.values())
