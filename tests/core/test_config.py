"""Tests for core configuration classes."""

from __future__ import annotations

import pytest

from storesync.core.config import CloudConfig, ConfigError


class TestCloudConfig:
    """Tests for CloudConfig class."""

    def test_init_basic(self) -> None:
        """Should initialize with required fields."""
        config = CloudConfig(url="https://abc.supabase.co", api_key="secret")
        assert config.url == "https://abc.supabase.co"
        assert config.api_key == "secret"
        assert config.table_prefix == ""
        assert config.write_timeout == 10.0
        assert config.read_timeout == 15.0
        assert config.connect_timeout == 5.0
        assert config.max_attempts == 3

    def test_url_trailing_slash_removed(self) -> None:
        """Should strip whitespace and trailing slash from the URL."""
        config = CloudConfig(url=" https://abc.supabase.co/ ", api_key="secret")
        assert config.url == "https://abc.supabase.co"

    def test_rest_url(self) -> None:
        """Should point at the PostgREST endpoints."""
        config = CloudConfig(url="https://abc.supabase.co", api_key="secret")
        assert config.rest_url == "https://abc.supabase.co/rest/v1"

    def test_is_secure(self) -> None:
        assert CloudConfig(url="https://abc.supabase.co", api_key="k").is_secure
        assert not CloudConfig(url="http://localhost:54321", api_key="k").is_secure

    @pytest.mark.parametrize(
        ("url", "api_key", "max_attempts"),
        [
            ("abc.supabase.co", "secret", 3),
            ("", "secret", 3),
            ("https://abc.supabase.co", "", 3),
            ("https://abc.supabase.co", "secret", 0),
        ],
    )
    def test_invalid(self, url: str, api_key: str, max_attempts: int) -> None:
        """Should reject unusable settings."""
        with pytest.raises(ConfigError):
            CloudConfig(url=url, api_key=api_key, max_attempts=max_attempts)

    def test_config_error_is_value_error(self) -> None:
        assert issubclass(ConfigError, ValueError)
