"""Command-line interface for feedsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Store API credentials and sync settings
- sync: Run one sync cycle now
- run: Sync periodically until interrupted
- status: Show queue, quota and watermark state
- mark: Change one article's read/starred state
- mark-all-read: Mark a feed, folder or everything read
- failed: List permanently failed changes
- requeue: Retry permanently failed changes
"""

from __future__ import annotations

import logging

import click

from feedsync.client.cli.changes import failed, mark, mark_all_read, requeue
from feedsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_db_path,
    load_config,
    load_settings,
    save_config,
)
from feedsync.client.cli.configure import configure
from feedsync.client.cli.sync import run, status, sync


@click.group()
@click.version_option(package_name="feedsync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """feedsync - Keep feed reader state in sync with the remote service."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Setup
cli.add_command(configure)

# Sync commands
cli.add_command(sync)
cli.add_command(run)
cli.add_command(status)

# Local change commands
cli.add_command(mark)
cli.add_command(mark_all_read)
cli.add_command(failed)
cli.add_command(requeue)


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
    "load_settings",
    "save_config",
]
