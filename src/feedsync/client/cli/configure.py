"""Configure command for the feedsync CLI.

Commands:
- configure: Store API credentials and sync settings
"""

from __future__ import annotations

import sys
from dataclasses import fields

import click

from feedsync.client.cli.config import get_config_file, load_config, save_config
from feedsync.core.config import DEFAULT_BASE_URL, SyncSettings


@click.command()
@click.option("--token", help="OAuth bearer token for the reader API.")
@click.option("--base-url", help=f"Reader API base URL (default: {DEFAULT_BASE_URL}).")
@click.option("--app-id", help="Application id sent as AppId.")
@click.option("--app-key", help="Application key sent as AppKey.")
@click.option(
    "--set",
    "settings",
    multiple=True,
    metavar="KEY=VALUE",
    help="Sync setting, e.g. --set batch_size=50 (repeatable).",
)
def configure(
    token: str | None,
    base_url: str | None,
    app_id: str | None,
    app_key: str | None,
    settings: tuple[str, ...],
) -> None:
    """Store credentials and sync settings in ~/.feedsync/config.json."""
    config = load_config()

    if token is None and not config.get("token"):
        token = click.prompt("API token", hide_input=True)

    for key, value in (
        ("token", token),
        ("base_url", base_url),
        ("app_id", app_id),
        ("app_key", app_key),
    ):
        if value:
            config[key] = value

    sync_config = dict(config.get("sync") or {})
    known = {f.name for f in fields(SyncSettings)}
    for item in settings:
        key, sep, value = item.partition("=")
        if not sep:
            click.echo(f"Error: Expected KEY=VALUE, got '{item}'", err=True)
            sys.exit(1)
        if key.strip() not in known:
            click.echo(f"Error: Unknown sync setting '{key.strip()}'", err=True)
            sys.exit(1)
        sync_config[key.strip()] = value.strip()

    try:
        SyncSettings.from_mapping(sync_config)
    except (TypeError, ValueError) as e:
        click.echo(f"Error: Invalid sync settings: {e}", err=True)
        sys.exit(1)

    if sync_config:
        config["sync"] = sync_config
    save_config(config)
    click.echo(f"Configuration saved to {get_config_file()}")
