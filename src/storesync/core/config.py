"""Configuration classes for storesync.

This module defines the connection settings of the cloud backend and the
error raised when configuration input is rejected.
"""

from __future__ import annotations

from dataclasses import dataclass

SUPPORTED_PROVIDERS = ("supabase",)


class ConfigError(ValueError):
    """Raised when configuration values are missing or invalid."""


@dataclass
class CloudConfig:
    """Configuration for connecting to the PostgREST backend.

    Attributes:
        url: Project base URL (e.g., "https://abc.supabase.co").
        api_key: Credential sent as both ``apikey`` and bearer token.
        table_prefix: Prefix prepended to every remote table name.
        write_timeout: Timeout in seconds for PATCH/POST requests.
        read_timeout: Timeout in seconds for change enumeration.
        connect_timeout: Timeout in seconds for the connection test.
        max_attempts: Attempts per upsert before giving up.
        retry_backoff: Base backoff in seconds, doubled after each attempt.
        page_size: Rows requested per page when enumerating changes.
    """

    url: str
    api_key: str
    table_prefix: str = ""
    write_timeout: float = 10.0
    read_timeout: float = 15.0
    connect_timeout: float = 5.0
    max_attempts: int = 3
    retry_backoff: float = 1.0
    page_size: int = 1000

    def __post_init__(self) -> None:
        """Normalize and validate the base URL."""
        self.url = (self.url or "").strip().rstrip("/")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Cloud URL must start with http:// or https://: {self.url!r}")
        if not self.api_key:
            raise ConfigError("Cloud API key is required")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")

    @property
    def rest_url(self) -> str:
        """Base URL of the PostgREST endpoints."""
        return f"{self.url}/rest/v1"

    @property
    def is_secure(self) -> bool:
        return self.url.startswith("https://")
