"""Tests for the entity adapters."""

from __future__ import annotations

import pytest

from storesync.client.entities import (
    PLACEHOLDER_PASSWORD_HASH,
    EntityRegistry,
    SqliteEntityAdapter,
    UserAdapter,
)
from storesync.client.state import LocalStore
from storesync.core.tables import DEFAULT_TABLES


@pytest.fixture
def registry(store: LocalStore) -> EntityRegistry:
    return EntityRegistry.for_store(store)


class TestSqliteEntityAdapter:
    """Tests for the generic adapter."""

    def test_create_and_get(self, registry: EntityRegistry) -> None:
        customers = registry.get("customers")

        record_id = customers.create({"id": "C1", "name": "Ada", "isActive": True, "vip": True})

        record = customers.get_by_id(record_id)
        assert record["name"] == "Ada"
        assert record["is_active"] == 1
        assert record["deleted_at"] is None
        assert "vip" not in record

    def test_create_requires_id(self, registry: EntityRegistry) -> None:
        with pytest.raises(ValueError):
            registry.get("customers").create({"name": "Ada"})

    def test_update(self, registry: EntityRegistry) -> None:
        customers = registry.get("customers")
        customers.create({"id": "C1", "name": "Ada"})

        assert customers.update("C1", {"name": "Grace", "id": "ignored"})
        assert customers.get_by_id("C1")["name"] == "Grace"
        assert not customers.update("C2", {"name": "Nobody"})

    def test_json_column_stored_as_text(self, registry: EntityRegistry) -> None:
        sales = registry.get("sales")
        sales.create({"id": "S1", "items": [{"name": "Case"}]})

        assert sales.get_by_id("S1")["items"] == '[{"name": "Case"}]'

    def test_soft_delete_and_list(self, registry: EntityRegistry) -> None:
        customers = registry.get("customers")
        customers.create({"id": "C1", "name": "Ada"})
        customers.create({"id": "C2", "name": "Bob"})

        assert customers.mark_deleted("C1", "2026-03-02T09:00:00+00:00")

        assert customers.list_ids() == ["C2"]
        assert customers.list_ids(include_deleted=True) == ["C1", "C2"]
        assert customers.get_by_id("C1")["deleted_at"] == "2026-03-02T09:00:00+00:00"

    def test_missing_table(self, tmp_path) -> None:  # type: ignore[no-untyped-def]
        bare = LocalStore(tmp_path / "bare.db")
        adapter = SqliteEntityAdapter(bare, DEFAULT_TABLES.get("customers"))

        assert not adapter.available
        assert adapter.get_by_id("C1") is None
        assert adapter.list_ids() == []
        bare.close()


class TestUserAdapter:
    """Tests for the users adapter."""

    def test_placeholder_hash_for_remote_user(self, registry: EntityRegistry) -> None:
        users = registry.get("users")
        assert isinstance(users, UserAdapter)

        users.create({"id": "U1", "email": "amy@example.com", "fullName": "Amy"})

        user = users.get_by_id("U1")
        assert user["password_hash"] == PLACEHOLDER_PASSWORD_HASH
        assert user["username"] == "amy@example.com"

    def test_update_without_hash_keeps_local(self, registry: EntityRegistry) -> None:
        users = registry.get("users")
        users.create({"id": "U1", "username": "amy", "password_hash": "real-hash"})

        users.update("U1", {"full_name": "Amy Pond", "password_hash": None})

        user = users.get_by_id("U1")
        assert user["password_hash"] == "real-hash"
        assert user["full_name"] == "Amy Pond"


class TestEntityRegistry:
    """Tests for EntityRegistry."""

    def test_one_adapter_per_table(self, registry: EntityRegistry) -> None:
        assert {adapter.table for adapter in registry} == set(DEFAULT_TABLES.names)
        assert "customers" in registry
        assert "sync_queue" not in registry

    def test_unknown_table(self, registry: EntityRegistry) -> None:
        with pytest.raises(KeyError):
            registry.get("sync_queue")
