"""Command-line interface for storesync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- init-db: Create the local database with the retail schema
- status: Show sync status
- health: Show sync health
- push: Push pending local changes
- pull: Pull remote changes
- sync: Full sync cycle, once or every interval (--watch)
- test-connection: Check the cloud backend
- config: Show or update the cloud sync settings
- queue: Inspect and manage the change journal
"""

from __future__ import annotations

import logging

import click

from storesync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_db_path,
    load_config,
    save_config,
)
from storesync.client.cli.queue import queue
from storesync.client.cli.settings import config_group
from storesync.client.cli.sync import health, init_db, pull, push, status, sync, test_connection

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("storesync")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


@click.group()
@click.version_option(package_name="storesync")
@click.option(
    "--db",
    envvar="STORESYNC_DB",
    type=click.Path(dir_okay=False),
    default=None,
    help="SQLite database (default: configured path or ~/.storesync/storesync.db).",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs.")
@click.pass_context
def cli(ctx: click.Context, db: str | None, verbose: bool) -> None:
    """storesync - keep a local retail database in sync with the cloud."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["db"] = db


# Database commands
cli.add_command(init_db)

# Sync commands
cli.add_command(status)
cli.add_command(health)
cli.add_command(push)
cli.add_command(pull)
cli.add_command(sync)
cli.add_command(test_connection)

# Settings and journal
cli.add_command(config_group)
cli.add_command(queue)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_db_path",
    "load_config",
    "save_config",
]
