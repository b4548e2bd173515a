"""Configuration utilities for the feedsync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from feedsync.core.config import DEFAULT_BASE_URL, ServerConfig, SyncSettings

if TYPE_CHECKING:
    from feedsync.client.service import SyncService


def get_config_dir() -> Path:
    """Get the configuration directory for feedsync.

    Returns:
        Path to ~/.feedsync.
    """
    return Path.home() / ".feedsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_db_path() -> Path:
    """Get the path to the local SQLite database."""
    return get_config_dir() / "state.db"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def load_settings(config: dict[str, Any] | None = None) -> SyncSettings:
    """Sync settings from the config file, overridden by FEEDSYNC_* variables."""
    config = load_config() if config is None else config
    return SyncSettings.from_env(base=SyncSettings.from_mapping(config.get("sync") or {}))


def open_service() -> SyncService:
    """Build a SyncService from the saved configuration.

    Exits with an error message if no token has been configured.
    """
    from feedsync.client.api import ReaderClient
    from feedsync.client.service import SyncService
    from feedsync.client.store import LocalStore

    config = load_config()
    if not config.get("token"):
        click.echo("Error: No API token configured. Run 'feedsync configure' first.", err=True)
        sys.exit(1)

    server_config = ServerConfig(
        token=config["token"],
        base_url=config.get("base_url") or DEFAULT_BASE_URL,
        app_id=config.get("app_id"),
        app_key=config.get("app_key"),
    )
    try:
        settings = load_settings(config)
    except ValueError as e:
        click.echo(f"Error: Invalid sync settings: {e}", err=True)
        sys.exit(1)
    return SyncService(LocalStore(get_db_path()), ReaderClient(server_config), settings=settings)
