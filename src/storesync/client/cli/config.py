"""Configuration utilities for the storesync CLI.

This module provides shared configuration functions used across CLI
commands. Cloud settings live in the database (sync_metadata); the config
file only remembers which database to open.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from storesync.client.sync.engine import SyncEngine

DEFAULT_DB_NAME = "storesync.db"


def get_config_dir() -> Path:
    """Get the configuration directory for storesync.

    Returns:
        Path to ~/.storesync.
    """
    return Path.home() / ".storesync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, str]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, str]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_db_path(override: str | Path | None = None) -> Path:
    """Get the database path.

    Args:
        override: Path given on the command line, if any.

    Returns:
        The override, else the configured path, else ~/.storesync/storesync.db.
    """
    if override:
        return Path(override).expanduser().resolve()
    config = load_config()
    if config.get("db_path"):
        return Path(config["db_path"]).expanduser().resolve()
    return get_config_dir() / DEFAULT_DB_NAME


def open_engine(db_path: Path) -> SyncEngine:
    """Open the database and build a sync engine over it.

    The engine builds its HTTP client from the stored cloud settings when
    a run starts.
    """
    from storesync.client.state import LocalStore
    from storesync.client.sync.engine import SyncEngine

    return SyncEngine(LocalStore(db_path))
