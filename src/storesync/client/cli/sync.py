"""Sync commands for the storesync CLI.

Commands:
- init-db: Create the retail schema and sync tables
- status: Show journal counts and the last sync time
- health: Show the derived health level
- push: Push pending local changes
- pull: Pull remote changes
- sync: Run a full cycle, optionally every interval
- test-connection: Check the cloud backend
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

import click

from storesync.client.cli.config import get_db_path, load_config, open_engine, save_config

if TYPE_CHECKING:
    from storesync.client.sync.engine import SyncEngine
    from storesync.client.sync.types import PullReport, SyncReport

T = TypeVar("T")


def _run(engine: SyncEngine, operation: Coroutine[Any, Any, T]) -> T:
    """Run an engine coroutine, turning sync errors into exit code 1."""
    from storesync.client.api import APIError
    from storesync.client.sync.types import SyncError
    from storesync.core.config import ConfigError

    try:
        return asyncio.run(operation)
    except (SyncError, APIError, ConfigError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        engine.store.close()


def _echo_push(report: SyncReport) -> None:
    if report.initial is not None:
        initial = report.initial
        click.echo(
            f"Initial sync: {initial.downloaded} downloaded, {initial.queued} queued, "
            f"{initial.conflicts} conflicts"
        )
    click.echo(
        f"Pushed: {report.synced} synced, {report.deferred} deferred, {report.failed} failed"
    )
    for error in report.errors:
        click.echo(f"  {error}")
    for orphan in report.orphaned:
        click.echo(f"  Orphaned remote write: {orphan}", err=True)


def _echo_pull(report: PullReport) -> None:
    click.echo(
        f"Pulled: {report.total} changes, {report.applied} applied, "
        f"{report.conflicts} conflicts, {report.deferred} deferred, {report.failed} failed"
    )
    if report.retried_deferred:
        click.echo(f"  {report.retried_deferred} deferred changes resolved")


@click.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the local database with the retail schema."""
    from storesync.client.state import LocalStore

    db_path = get_db_path(ctx.obj.get("db"))
    store = LocalStore(db_path, create_schema=True)
    try:
        version = store.schema_version
    finally:
        store.close()

    config = load_config()
    config["db_path"] = str(db_path)
    save_config(config)
    click.echo(f"Database ready: {db_path} (schema version {version})")


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show sync status."""
    engine = open_engine(get_db_path(ctx.obj.get("db")))
    try:
        report = engine.status()
    finally:
        engine.store.close()

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    last_sync = report.last_sync_at.isoformat() if report.last_sync_at else "never"
    click.echo(f"Sync enabled: {'yes' if report.enabled else 'no'}")
    click.echo(f"Configured: {'yes' if report.configured else 'no'}")
    click.echo(f"Last sync: {last_sync}")
    click.echo(
        f"Queue: {report.counts.pending} pending, {report.counts.syncing} syncing, "
        f"{report.counts.error} error, {report.counts.synced} synced"
    )
    if report.counts.conflict:
        click.echo(f"Conflicts awaiting resolution: {report.counts.conflict}")
    if report.counts.stuck:
        click.echo(f"Stuck: {report.counts.stuck}")
    if report.deferred_remote:
        click.echo(f"Remote changes waiting for parents: {report.deferred_remote}")
    click.echo(f"Id mappings: {report.mappings}")


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def health(ctx: click.Context, as_json: bool) -> None:
    """Show sync health."""
    engine = open_engine(get_db_path(ctx.obj.get("db")))
    try:
        report = engine.health()
    finally:
        engine.store.close()

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    click.echo(f"Health: {report.level.value}")
    for alert in report.alerts:
        click.echo(f"  ALERT: {alert}")
    for warning in report.warnings:
        click.echo(f"  Warning: {warning}")


@click.command()
@click.pass_context
def push(ctx: click.Context) -> None:
    """Push pending local changes to the cloud."""
    engine = open_engine(get_db_path(ctx.obj.get("db")))
    report = _run(engine, engine.sync_all())
    _echo_push(report)
    if not report.success:
        sys.exit(1)


@click.command()
@click.option(
    "--since",
    type=click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]),
    default=None,
    help="Pull changes after this time (UTC), if later than the checkpoint.",
)
@click.pass_context
def pull(ctx: click.Context, since: datetime | None) -> None:
    """Pull remote changes into the local database."""
    engine = open_engine(get_db_path(ctx.obj.get("db")))
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    report = _run(engine, engine.pull_changes(since))
    _echo_pull(report)


async def _watch(engine: SyncEngine, interval: int | None) -> None:
    from storesync.client.sync.scheduler import SyncScheduler

    scheduler = SyncScheduler(engine, interval)
    await scheduler.run_now()
    scheduler.start()
    click.echo(f"Syncing every {scheduler.interval_minutes} minutes. Press Ctrl+C to stop.")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()


@click.command()
@click.option("--watch", "-w", is_flag=True, help="Keep running and sync every interval.")
@click.option("--interval", type=click.IntRange(min=1), default=None, help="Minutes between runs.")
@click.pass_context
def sync(ctx: click.Context, watch: bool, interval: int | None) -> None:
    """Run a full sync: initial sync if needed, push, then pull."""
    engine = open_engine(get_db_path(ctx.obj.get("db")))
    if watch:
        try:
            _run(engine, _watch(engine, interval))
        except KeyboardInterrupt:
            click.echo("\nStopped.")
        return

    report = _run(engine, engine.run_cycle())
    _echo_push(report.push)
    _echo_pull(report.pull)
    if not report.push.success:
        sys.exit(1)


@click.command("test-connection")
@click.pass_context
def test_connection(ctx: click.Context) -> None:
    """Check that the cloud backend is reachable."""
    engine = open_engine(get_db_path(ctx.obj.get("db")))
    result = _run(engine, engine.test_connection())
    if result.ok:
        click.echo(f"Connection OK ({result.message})")
        return
    click.echo(f"Error: Connection failed: {result.message}", err=True)
    sys.exit(1)
