"""Tests for identifier mappings and foreign-key translation."""

from __future__ import annotations

import pytest

from storesync.client.sync.engine import SyncEngine
from storesync.client.sync.mapping import ForeignKeyTranslator, IdMappingStore
from storesync.client.sync.types import ForeignKeyMissingError, ForeignKeyPendingError

CUSTOMER_ID = "11111111-1111-1111-1111-111111111111"
PRODUCT_ID = "55555555-5555-5555-5555-555555555555"


class TestIdMappingStore:
    """Tests for persisted mappings."""

    def test_lookup_both_ways(self, engine: SyncEngine) -> None:
        mappings = engine.mappings
        mappings.save("customers", "C1", CUSTOMER_ID)

        assert mappings.lookup("customers", "C1") == CUSTOMER_ID
        assert mappings.reverse_lookup("customers", CUSTOMER_ID) == "C1"
        assert mappings.lookup("sales", "C1") is None
        assert mappings.reverse_lookup("customers", PRODUCT_ID) is None

    def test_newer_remote_id_replaces_older(self, engine: SyncEngine) -> None:
        mappings = engine.mappings
        mappings.save("customers", "C1", PRODUCT_ID)
        mappings.save("customers", "C1", CUSTOMER_ID)

        assert mappings.lookup("customers", "C1") == CUSTOMER_ID
        assert mappings.count() == 1

    def test_load_all(self, engine: SyncEngine) -> None:
        mappings: IdMappingStore = engine.mappings
        mappings.save("customers", "C1", CUSTOMER_ID)
        mappings.save("products", "P1", PRODUCT_ID)

        assert mappings.load_all() == {
            ("customers", "C1"): CUSTOMER_ID,
            ("products", "P1"): PRODUCT_ID,
        }
        assert mappings.load_all("products") == {("products", "P1"): PRODUCT_ID}


class TestOutbound:
    """Tests for local -> remote translation before a push."""

    def test_mapped_key_rewritten(self, engine: SyncEngine) -> None:
        engine.mappings.save("customers", "C1", CUSTOMER_ID)

        data = engine.translator.translate_outbound(
            "sales", {"id": "S1", "customerId": "C1", "total": 3}
        )

        assert data["customer_id"] == CUSTOMER_ID
        assert data["id"] == "S1"

    def test_idempotent(self, engine: SyncEngine) -> None:
        """Translating an already-translated record changes nothing."""
        engine.mappings.save("customers", "C1", CUSTOMER_ID)
        once = engine.translator.translate_outbound("sales", {"id": "S1", "customer_id": "C1"})

        twice = engine.translator.translate_outbound("sales", once)

        assert twice == once

    def test_empty_keys_ignored(self, engine: SyncEngine) -> None:
        data = engine.translator.translate_outbound("sales", {"id": "S1", "customer_id": None})

        assert data["customer_id"] is None

    def test_unsynced_parent_queued(self, engine: SyncEngine) -> None:
        engine.entities.get("customers").create({"id": "C1", "name": "Ada"})

        with pytest.raises(ForeignKeyPendingError) as exc_info:
            engine.translator.translate_outbound("sales", {"id": "S1", "customer_id": "C1"})

        assert exc_info.value.fields == ["customer_id"]
        assert engine.journal.is_queued("customers", "C1")

    def test_missing_parent(self, engine: SyncEngine) -> None:
        with pytest.raises(ForeignKeyMissingError):
            engine.translator.translate_outbound("sales", {"id": "S1", "customer_id": "GONE"})

    def test_null_fallback_for_optional_key(self, engine: SyncEngine) -> None:
        translator = ForeignKeyTranslator(
            engine.mappings,
            engine.journal,
            engine.entities,
            engine.tables,
            allow_null_fallback=True,
        )

        data = translator.translate_outbound("sales", {"id": "S1", "customer_id": "GONE"})

        assert data["customer_id"] is None

    def test_null_fallback_never_clears_required_key(self, engine: SyncEngine) -> None:
        translator = ForeignKeyTranslator(
            engine.mappings,
            engine.journal,
            engine.entities,
            engine.tables,
            allow_null_fallback=True,
        )

        with pytest.raises(ForeignKeyMissingError):
            translator.translate_outbound(
                "inventory_items", {"id": "I1", "product_id": "GONE", "imei": "1"}
            )


class TestInbound:
    """Tests for remote -> local translation before applying a change."""

    def test_mapped_key_rewritten(self, engine: SyncEngine) -> None:
        engine.mappings.save("customers", "C1", CUSTOMER_ID)

        data = engine.translator.translate_inbound("sales", {"id": "x", "customer_id": CUSTOMER_ID})

        assert data["customer_id"] == "C1"

    def test_parent_created_remotely_keeps_uuid(self, engine: SyncEngine) -> None:
        engine.entities.get("customers").create({"id": CUSTOMER_ID, "name": "Ada"})

        data = engine.translator.translate_inbound("sales", {"customer_id": CUSTOMER_ID})

        assert data["customer_id"] == CUSTOMER_ID

    def test_unknown_parent_pending(self, engine: SyncEngine) -> None:
        with pytest.raises(ForeignKeyPendingError):
            engine.translator.translate_inbound("sales", {"customer_id": CUSTOMER_ID})

    def test_nested_sale_items(self, engine: SyncEngine) -> None:
        engine.mappings.save("products", "P1", PRODUCT_ID)
        record = {"items": '[{"product_id": "%s", "quantity": 2}, {"name": "Gift"}]' % PRODUCT_ID}

        data = engine.translator.translate_inbound("sales", record)

        assert data["items"] == [{"product_id": "P1", "quantity": 2}, {"name": "Gift"}]

    def test_nested_unknown_item_pending(self, engine: SyncEngine) -> None:
        record = {"items": [{"product_id": PRODUCT_ID}]}

        with pytest.raises(ForeignKeyPendingError) as exc_info:
            engine.translator.translate_inbound("sales", record)

        assert exc_info.value.fields == ["items[0].product_id"]
        # The caller's record is left untouched
        assert record["items"][0]["product_id"] == PRODUCT_ID
