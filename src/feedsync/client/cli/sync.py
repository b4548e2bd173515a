"""Sync commands for the feedsync CLI.

Commands:
- sync: Run one sync cycle now
- run: Keep syncing on the configured interval until interrupted
- status: Show queue, quota and watermark state
"""

from __future__ import annotations

import sys
import threading
from datetime import UTC, datetime

import click

from feedsync.client.cli.config import open_service
from feedsync.client.sync.metadata import (
    FULL_SYNC_CURSOR_TS,
    LAST_FULL_SYNC_TS,
    LAST_INCREMENTAL_SYNC_TS,
    LAST_SUCCESSFUL_SYNC_TS,
)
from feedsync.core.types import RunStatus, SyncTrigger


def format_ts(ts: float | None) -> str:
    """Format a unix timestamp for display."""
    if ts is None:
        return "never"
    return datetime.fromtimestamp(ts, tz=UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


@click.command()
@click.option(
    "--scheduled",
    is_flag=True,
    help="Apply the scheduling gate instead of forcing a cycle.",
)
def sync(scheduled: bool) -> None:
    """Run one sync cycle: push queued changes, then pull remote state."""
    service = open_service()
    try:
        trigger = SyncTrigger.SCHEDULED if scheduled else SyncTrigger.MANUAL
        run_id = service.trigger_sync(trigger)
        run = service.get_sync_run_status(run_id)
    finally:
        service.close()

    if run is None:
        click.echo("Error: Sync run was not recorded.", err=True)
        sys.exit(1)

    if run.status == RunStatus.SKIPPED:
        click.echo(f"Sync skipped: {run.error_message}")
        return
    if run.status == RunStatus.FAILED:
        click.echo(
            f"Sync failed ({run.error_kind.value if run.error_kind else 'unknown'}): "
            f"{run.error_message}",
            err=True,
        )
        sys.exit(1)

    counts = run.counts
    click.echo(f"Sync completed ({run.mode.value if run.mode else '-'})")
    click.echo(f"  Pushed:    {counts.pushed}")
    click.echo(f"  Fetched:   {counts.fetched}")
    click.echo(f"  New:       {counts.new}")
    click.echo(f"  Updated:   {counts.updated}")
    click.echo(f"  Conflicts: {counts.conflicts}")
    if counts.failed:
        click.echo(f"  Failed:    {counts.failed} (see 'feedsync failed')")


@click.command()
def status() -> None:
    """Show pending changes, quota usage and sync watermarks."""
    service = open_service()
    try:
        stats = service.queue_stats()
        metadata = service.metadata.snapshot()
    finally:
        service.close()

    click.echo("Change queue:")
    click.echo(f"  Pending:  {stats['total']}")
    for action in ("read", "unread", "star", "unstar"):
        if stats[action]:
            click.echo(f"    {action}: {stats[action]}")
    click.echo(f"  Retrying: {stats['retrying']}")
    click.echo(f"  Failed:   {stats['failed']}")
    click.echo("")
    click.echo(
        f"Quota: {stats['calls_used']}/{stats['daily_call_limit']} calls used today "
        f"({stats['calls_remaining']} remaining)"
    )
    click.echo("")

    def stamp(key: str) -> str:
        value = metadata.get(key)
        return format_ts(float(value) if value else None)

    click.echo("Last sync:")
    click.echo(f"  Successful:  {stamp(LAST_SUCCESSFUL_SYNC_TS)}")
    click.echo(f"  Incremental: {stamp(LAST_INCREMENTAL_SYNC_TS)}")
    click.echo(f"  Full:        {stamp(LAST_FULL_SYNC_TS)}")
    if metadata.get(FULL_SYNC_CURSOR_TS):
        click.echo(f"  Full sweep in progress, next from {stamp(FULL_SYNC_CURSOR_TS)}")


@click.command()
def run() -> None:
    """Sync periodically until interrupted (Ctrl+C)."""
    service = open_service()
    stop_event = threading.Event()
    service.start()
    click.echo(
        f"Syncing every {service.settings.sync_interval / 60:.0f} minutes. Press Ctrl+C to stop."
    )
    try:
        while service.scheduler.started and not stop_event.is_set():
            stop_event.wait(timeout=0.5)
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        service.close()
