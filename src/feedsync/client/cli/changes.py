"""Local change commands for the feedsync CLI.

Commands:
- mark: Mark one article read, unread, starred or unstarred
- mark-all-read: Mark a feed, folder or everything read
- failed: List changes that exhausted their retries
- requeue: Put failed changes back in the queue
"""

from __future__ import annotations

import sys

import click

from feedsync.client.cli.config import open_service
from feedsync.client.cli.sync import format_ts
from feedsync.client.store import ArticleNotFoundError
from feedsync.core.types import ActionType, MarkAllScope


@click.command()
@click.argument("article_id", type=int)
@click.argument("action", type=click.Choice([a.value for a in ActionType]))
def mark(article_id: int, action: str) -> None:
    """Apply ACTION to ARTICLE_ID locally and queue it for sync."""
    service = open_service()
    try:
        entry = service.enqueue_local_change(article_id, ActionType(action))
        pending = service.queue.pending_count()
    except ArticleNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        service.close()

    if entry is None:
        click.echo(f"Article {article_id}: {action} cancelled a pending change")
    else:
        click.echo(f"Article {article_id}: {action} queued")
    click.echo(f"{pending} change(s) pending")


@click.command("mark-all-read")
@click.option("--feed", "feed_id", help="Feed stream id (e.g. feed/https://...).")
@click.option("--folder", help="Folder label.")
def mark_all_read(feed_id: str | None, folder: str | None) -> None:
    """Mark a feed, a folder or everything read with one remote call."""
    if feed_id and folder:
        click.echo("Error: Use either --feed or --folder, not both.", err=True)
        sys.exit(1)

    if feed_id:
        scope = MarkAllScope.feed(feed_id)
    elif folder:
        scope = MarkAllScope.folder(folder)
    else:
        scope = MarkAllScope.everything()

    service = open_service()
    try:
        result = service.mark_all_as_read(scope)
    finally:
        service.close()

    click.echo(f"Marked {result.marked_locally} article(s) read in {scope}")
    if result.remote_applied:
        click.echo("Remote service updated")
    else:
        kind = result.error_kind.value if result.error_kind else "unknown"
        click.echo(
            f"Remote update failed ({kind}); {result.queued} change(s) queued for the next sync",
            err=True,
        )


@click.command()
def failed() -> None:
    """List changes that failed permanently."""
    service = open_service()
    try:
        entries = service.list_failed()
    finally:
        service.close()

    if not entries:
        click.echo("No failed changes")
        return

    for entry in entries:
        click.echo(
            f"[{entry.id}] article {entry.article_id} {entry.action_type.value} "
            f"({entry.attempt_count} attempts, failed {format_ts(entry.failed_at)})"
        )
        if entry.last_error:
            click.echo(f"      {entry.last_error}")
    click.echo(f"\n{len(entries)} failed change(s). Use 'feedsync requeue' to retry them.")


@click.command()
@click.argument("ids", nargs=-1, type=int)
def requeue(ids: tuple[int, ...]) -> None:
    """Requeue failed changes (all of them when no IDS are given)."""
    service = open_service()
    try:
        count = service.requeue_failed(list(ids) if ids else None)
    finally:
        service.close()
    click.echo(f"Requeued {count} failed change(s)")
