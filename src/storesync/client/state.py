"""Local SQLite store for the sync client.

This module provides:
- LocalStore: connection handling, nested transactions, schema introspection
- Migration: a versioned schema step, applied once at startup
- MIGRATIONS: the ordered migrations creating the sync bookkeeping tables

Architecture:
    The store is shared by the entity adapters, the change journal, the
    identifier mappings and the sync metadata. All of them go through the
    same connection and the same re-entrant lock, so a transaction opened
    by the orchestrator covers writes made by any of them.

    The applied schema version lives in the ``schema_version`` table; each
    migration runs in its own transaction together with the version bump.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from storesync.core.tables import DEFAULT_TABLES, TableRegistry

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


@dataclass(frozen=True)
class Migration:
    """A versioned schema step.

    Attributes:
        version: Schema version reached once the step is applied.
        description: Human readable summary, logged when applied.
        apply: Callable executing the step on the store.
    """

    version: int
    description: str
    apply: Callable[[LocalStore], None]


_SYNC_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS sync_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        table_name TEXT NOT NULL,
        record_id TEXT NOT NULL,
        change_type TEXT NOT NULL,
        data TEXT,
        sync_status TEXT NOT NULL DEFAULT 'pending',
        error_message TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        synced_at TEXT,
        locked_at TEXT,
        last_attempt_at TEXT,
        UNIQUE (table_name, record_id, change_type)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue (sync_status, created_at)",
    """
    CREATE TABLE IF NOT EXISTS id_mapping (
        table_name TEXT NOT NULL,
        local_id TEXT NOT NULL,
        remote_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (table_name, local_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_id_mapping_remote ON id_mapping (table_name, remote_id)",
    """
    CREATE TABLE IF NOT EXISTS sync_metadata (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        last_sync_at TEXT,
        sync_enabled INTEGER NOT NULL DEFAULT 0,
        sync_interval_minutes INTEGER NOT NULL DEFAULT 5,
        cloud_provider TEXT NOT NULL DEFAULT 'supabase',
        cloud_url TEXT,
        api_key TEXT,
        table_prefix TEXT NOT NULL DEFAULT '',
        conflict_resolution_strategy TEXT NOT NULL DEFAULT 'server_wins',
        sync_lock_expires_at TEXT,
        device_id TEXT NOT NULL,
        updated_at TEXT
    )
    """,
)

_PENDING_REMOTE_CHANGES = (
    """
    CREATE TABLE IF NOT EXISTS pending_remote_changes (
        table_name TEXT NOT NULL,
        record_id TEXT NOT NULL,
        change_type TEXT NOT NULL,
        data TEXT NOT NULL,
        server_timestamp TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL,
        PRIMARY KEY (table_name, record_id)
    )
    """,
)


def _create_sync_tables(store: LocalStore) -> None:
    for statement in _SYNC_TABLES:
        store.execute(statement)


def _add_soft_delete_columns(store: LocalStore) -> None:
    """Add deleted_at to synced tables created before soft deletes existed."""
    for spec in store.tables:
        if not store.table_exists(spec.name):
            continue
        if "deleted_at" in store.table_columns(spec.name):
            continue
        store.execute(f'ALTER TABLE "{spec.name}" ADD COLUMN deleted_at TEXT')
        logger.info("Added deleted_at column to %s", spec.name)


def _create_pending_remote_changes(store: LocalStore) -> None:
    for statement in _PENDING_REMOTE_CHANGES:
        store.execute(statement)


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "sync queue, id mapping and metadata tables", _create_sync_tables),
    Migration(2, "soft-delete columns on synced tables", _add_soft_delete_columns),
    Migration(3, "deferred remote changes", _create_pending_remote_changes),
)


class LocalStore:
    """SQLite database shared by every sync component.

    Transactions nest: the outermost ``transaction()`` issues BEGIN/COMMIT,
    inner ones use savepoints.
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        tables: TableRegistry = DEFAULT_TABLES,
        migrations: Sequence[Migration] = MIGRATIONS,
        create_schema: bool = False,
    ) -> None:
        """Open the database and bring its schema up to date.

        Args:
            db_path: Path to the SQLite file, or ":memory:".
            tables: Registry of synced tables.
            migrations: Migrations to apply, in version order.
            create_schema: Create the reference retail tables first.
        """
        self._db_path = str(db_path)
        if self._db_path != MEMORY_DB:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self.tables = tables

        # Lock for thread-safe database access
        self._lock = threading.RLock()
        self._depth = 0

        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode, transactions are explicit
        )
        self._conn.row_factory = sqlite3.Row

        if self._db_path != MEMORY_DB:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        if create_schema:
            from storesync.client.schema import create_retail_schema

            create_retail_schema(self)

        self.migrate(migrations)

    @property
    def path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # === Statement helpers ===

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, tuple(params))

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[LocalStore]:
        """Run a block atomically.

        Yields:
            The store itself.

        Raises:
            Whatever the block raised, after rolling back.
        """
        with self._lock:
            if self._depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
                savepoint = None
            else:
                savepoint = f"sp_{self._depth}"
                self._conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if savepoint is None:
                    self._conn.execute("ROLLBACK")
                else:
                    self._conn.execute(f"ROLLBACK TO {savepoint}")
                    self._conn.execute(f"RELEASE {savepoint}")
                raise
            else:
                self._depth -= 1
                if savepoint is None:
                    self._conn.execute("COMMIT")
                else:
                    self._conn.execute(f"RELEASE {savepoint}")

    # === Introspection ===

    def table_exists(self, table: str) -> bool:
        row = self.fetchone(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,),
        )
        return row is not None

    def table_columns(self, table: str) -> list[str]:
        """List the columns of a table (empty if it does not exist)."""
        rows = self.fetchall(f'PRAGMA table_info("{table}")')
        return [row["name"] for row in rows]

    # === Migrations ===

    @property
    def schema_version(self) -> int:
        if not self.table_exists("schema_version"):
            return 0
        row = self.fetchone("SELECT MAX(version) AS version FROM schema_version")
        if row is None or row["version"] is None:
            return 0
        return int(row["version"])

    def migrate(self, migrations: Sequence[Migration] = MIGRATIONS) -> int:
        """Apply the migrations newer than the current schema version.

        Returns:
            The schema version after migrating.
        """
        self.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "version INTEGER PRIMARY KEY, description TEXT, applied_at TEXT)"
        )
        current = self.schema_version
        for migration in sorted(migrations, key=lambda m: m.version):
            if migration.version <= current:
                continue
            with self.transaction():
                migration.apply(self)
                self.execute(
                    "INSERT INTO schema_version (version, description, applied_at) "
                    "VALUES (?, ?, datetime('now'))",
                    (migration.version, migration.description),
                )
            logger.info(
                "Applied migration %d: %s", migration.version, migration.description
            )
            current = migration.version
        return current
