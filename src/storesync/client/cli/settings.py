"""Cloud settings commands for the storesync CLI.

Commands:
- config show: Show the sync settings (credential masked)
- config set: Update some sync settings
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Any

import click

from storesync.client.cli.config import get_db_path

if TYPE_CHECKING:
    from storesync.client.state import LocalStore
    from storesync.client.sync.metadata import SyncMetadataStore


def _open_metadata(db: str | None) -> tuple[LocalStore, SyncMetadataStore]:
    from storesync.client.state import LocalStore
    from storesync.client.sync.metadata import SyncMetadataStore

    store = LocalStore(get_db_path(db))
    return store, SyncMetadataStore(store)


@click.group("config")
def config_group() -> None:
    """Cloud sync settings."""


@config_group.command("show")
@click.pass_context
def show_cmd(ctx: click.Context) -> None:
    """Show the sync settings."""
    store, metadata = _open_metadata(ctx.obj.get("db"))
    try:
        settings = metadata.get().to_public_dict()
    finally:
        store.close()

    click.echo(f"Database: {store.path}")
    for name, value in settings.items():
        click.echo(f"{name}: {'' if value is None else value}")


@config_group.command("set")
@click.option("--url", "cloud_url", default=None, help="Backend base URL.")
@click.option("--api-key", default=None, help="Backend API key.")
@click.option("--provider", "cloud_provider", default=None, help="Cloud provider (supabase).")
@click.option("--table-prefix", default=None, help="Prefix of the remote table names.")
@click.option(
    "--interval",
    "sync_interval_minutes",
    type=int,
    default=None,
    help="Minutes between automatic syncs.",
)
@click.option(
    "--strategy",
    "conflict_resolution_strategy",
    type=click.Choice(["server_wins", "client_wins", "manual"]),
    default=None,
    help="Conflict resolution strategy.",
)
@click.option("--enable/--disable", "sync_enabled", default=None, help="Turn sync on or off.")
@click.pass_context
def set_cmd(ctx: click.Context, **options: Any) -> None:
    """Update some sync settings."""
    from storesync.core.config import ConfigError

    changes = {name: value for name, value in options.items() if value is not None}
    store, metadata = _open_metadata(ctx.obj.get("db"))
    try:
        settings = metadata.update_config(**changes)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()

    click.echo("Settings updated.")
    click.echo(f"Sync enabled: {'yes' if settings.sync_enabled else 'no'}")
    if options.get("api_key") is not None and settings.api_key != options["api_key"].strip():
        click.echo("API key not changed (placeholder value ignored).")
