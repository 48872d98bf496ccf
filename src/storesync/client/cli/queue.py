"""Change journal commands for the storesync CLI.

Commands:
- queue list: List journal entries
- queue retry: Reset failed entries to pending
- queue clear: Delete journal entries
"""

from __future__ import annotations

import click

from storesync.client.cli.config import get_db_path, open_engine

STATUS_CHOICES = ["pending", "syncing", "synced", "error", "conflict"]


@click.group()
def queue() -> None:
    """Inspect and manage the change journal."""


@queue.command("list")
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None, help="Filter by status.")
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
@click.pass_context
def list_cmd(ctx: click.Context, status: str | None, limit: int) -> None:
    """List journal entries, newest first."""
    engine = open_engine(get_db_path(ctx.obj.get("db")))
    try:
        entries = engine.journal.list_entries(status, limit=limit)
    finally:
        engine.store.close()

    if not entries:
        click.echo("No entries.")
        return
    for entry in entries:
        line = (
            f"#{entry.id} {entry.change_type.value:<8} {entry.table_name}/{entry.record_id} "
            f"[{entry.sync_status.value}] retries={entry.retry_count}"
        )
        if entry.error_message:
            line += f" {entry.error_message}"
        click.echo(line)


@queue.command("retry")
@click.argument("entry_ids", nargs=-1, type=int)
@click.pass_context
def retry_cmd(ctx: click.Context, entry_ids: tuple[int, ...]) -> None:
    """Reset failed entries to pending (all of them without ENTRY_IDS)."""
    engine = open_engine(get_db_path(ctx.obj.get("db")))
    try:
        count = engine.journal.reset_failed_items(ids=list(entry_ids) if entry_ids else None)
    finally:
        engine.store.close()
    click.echo(f"Reset {count} failed entries.")


@queue.command("clear")
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None, help="Only this status.")
@click.confirmation_option(prompt="Delete journal entries?")
@click.pass_context
def clear_cmd(ctx: click.Context, status: str | None) -> None:
    """Delete journal entries."""
    engine = open_engine(get_db_path(ctx.obj.get("db")))
    try:
        count = engine.journal.clear(status)
    finally:
        engine.store.close()
    click.echo(f"Deleted {count} entries.")
