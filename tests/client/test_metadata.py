"""Tests for the sync metadata row."""

from __future__ import annotations

import pytest

from storesync.client.state import LocalStore
from storesync.client.sync.metadata import (
    SyncMetadataStore,
    is_placeholder_api_key,
    mask_api_key,
)
from storesync.core.config import ConfigError
from storesync.core.types import ConflictStrategy


@pytest.fixture
def metadata(store: LocalStore, clock) -> SyncMetadataStore:  # type: ignore[no-untyped-def]
    return SyncMetadataStore(store, clock)


class TestDefaults:
    """Tests for the lazily created row."""

    def test_created_on_first_read(self, metadata: SyncMetadataStore) -> None:
        settings = metadata.get()

        assert settings.sync_enabled is False
        assert settings.sync_interval_minutes == 5
        assert settings.cloud_provider == "supabase"
        assert settings.conflict_resolution_strategy is ConflictStrategy.SERVER_WINS
        assert settings.last_sync_at is None
        assert not settings.is_configured
        assert len(settings.device_id) == 36

    def test_device_id_stable(self, metadata: SyncMetadataStore) -> None:
        assert metadata.get().device_id == metadata.get().device_id

    def test_unknown_strategy_falls_back(
        self, metadata: SyncMetadataStore, store: LocalStore
    ) -> None:
        metadata.get()
        store.execute("UPDATE sync_metadata SET conflict_resolution_strategy = 'newest'")

        assert metadata.get().conflict_resolution_strategy is ConflictStrategy.SERVER_WINS


class TestUpdateConfig:
    """Tests for validated partial updates."""

    def test_partial_update(self, metadata: SyncMetadataStore) -> None:
        settings = metadata.update_config(
            sync_enabled=True,
            cloud_url="https://abc.supabase.co/",
            api_key="  secret-key-1234567  ",
            sync_interval_minutes="15",
            conflict_resolution_strategy="manual",
        )

        assert settings.sync_enabled is True
        assert settings.cloud_url == "https://abc.supabase.co"
        assert settings.api_key == "secret-key-1234567"
        assert settings.sync_interval_minutes == 15
        assert settings.conflict_resolution_strategy is ConflictStrategy.MANUAL
        assert settings.is_configured

    @pytest.mark.parametrize("placeholder", ["", "***", "short", "   "])
    def test_placeholder_key_ignored(self, metadata: SyncMetadataStore, placeholder: str) -> None:
        metadata.update_config(api_key="secret-key-1234567")

        settings = metadata.update_config(api_key=placeholder, sync_interval_minutes=10)

        assert settings.api_key == "secret-key-1234567"
        assert settings.sync_interval_minutes == 10

    def test_placeholder_key_alone_rejected(self, metadata: SyncMetadataStore) -> None:
        metadata.update_config(api_key="secret-key-1234567")

        with pytest.raises(ConfigError, match="No valid fields"):
            metadata.update_config(api_key="***")

        assert metadata.get().api_key == "secret-key-1234567"

    @pytest.mark.parametrize(
        "changes",
        [
            {},
            {"device_id": "x"},
            {"sync_interval_minutes": 0},
            {"sync_interval_minutes": "often"},
            {"cloud_provider": "firebase"},
            {"cloud_url": "ftp://example.com"},
            {"conflict_resolution_strategy": "newest"},
        ],
    )
    def test_rejects_invalid(self, metadata: SyncMetadataStore, changes: dict) -> None:
        with pytest.raises(ConfigError):
            metadata.update_config(**changes)

    def test_cloud_config(self, metadata: SyncMetadataStore) -> None:
        settings = metadata.update_config(
            cloud_url="https://abc.supabase.co",
            api_key="secret-key-1234567",
            table_prefix="shop1_",
        )

        config = settings.cloud_config(max_attempts=1)

        assert config.rest_url == "https://abc.supabase.co/rest/v1"
        assert config.table_prefix == "shop1_"
        assert config.max_attempts == 1

    def test_cloud_config_requires_settings(self, metadata: SyncMetadataStore) -> None:
        with pytest.raises(ConfigError):
            metadata.get().cloud_config()


class TestCheckpoint:
    """Tests for last_sync_at and the lock lease columns."""

    def test_last_sync_round_trip(self, metadata: SyncMetadataStore, clock) -> None:  # type: ignore[no-untyped-def]
        metadata.set_last_sync_at(clock())
        assert metadata.get().last_sync_at == clock()

        metadata.set_last_sync_at(None)
        assert metadata.get().last_sync_at is None

    def test_lock_expiry_round_trip(self, metadata: SyncMetadataStore, clock) -> None:  # type: ignore[no-untyped-def]
        metadata.write_lock_expiry(clock())

        assert metadata.read_lock_expiry() == clock()


class TestPublicView:
    """Tests for the displayable settings."""

    def test_key_masked(self, metadata: SyncMetadataStore) -> None:
        metadata.update_config(api_key="abcd-secret-key-wxyz")

        public = metadata.get().to_public_dict()

        assert public["api_key"] == "abcd***wxyz"
        assert public["conflict_resolution_strategy"] == "server_wins"
        assert public["last_sync_at"] is None

    def test_mask_short_and_missing(self) -> None:
        assert mask_api_key("0123456789a") == "***"
        assert mask_api_key(None) is None

    def test_placeholder_detection(self) -> None:
        assert is_placeholder_api_key(None)
        assert is_placeholder_api_key("***")
        assert is_placeholder_api_key("0123456789")
        assert not is_placeholder_api_key("0123456789a")
