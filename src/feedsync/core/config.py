"""Shared configuration classes for feedsync.

This module defines:
- ServerConfig: connection settings for the remote reader API
- SyncSettings: tunables of the sync engine (batching, retries, quota, pulls)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

DEFAULT_BASE_URL = "https://www.inoreader.com/reader/api/0"

MINUTE = 60.0
DAY = 24 * 60 * MINUTE

# Environment variable -> (settings field, multiplier applied to the raw value)
_ENV_OVERRIDES: dict[str, tuple[str, float]] = {
    "FEEDSYNC_SYNC_INTERVAL_MINUTES": ("sync_interval", MINUTE),
    "FEEDSYNC_MIN_CHANGES": ("min_changes", 1),
    "FEEDSYNC_STALE_AGE_MINUTES": ("stale_age", MINUTE),
    "FEEDSYNC_BATCH_SIZE": ("batch_size", 1),
    "FEEDSYNC_MAX_RETRIES": ("max_retries", 1),
    "FEEDSYNC_RETRY_BACKOFF_MINUTES": ("base_backoff", MINUTE),
    "FEEDSYNC_DAILY_CALL_LIMIT": ("daily_call_limit", 1),
    "FEEDSYNC_PULL_PAGE_SIZE": ("pull_page_size", 1),
    "FEEDSYNC_PULL_ITEM_CAP": ("pull_item_cap", 1),
}


@dataclass
class ServerConfig:
    """Configuration for connecting to the remote reader service.

    Attributes:
        base_url: API root (e.g., "https://www.inoreader.com/reader/api/0").
        token: OAuth bearer token.
        timeout: Request timeout in seconds.
        app_id: Optional application id header.
        app_key: Optional application key header.
    """

    token: str
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0
    app_id: str | None = None
    app_key: str | None = None

    def __post_init__(self) -> None:
        """Normalize base URL."""
        self.base_url = self.base_url.rstrip("/")


@dataclass(frozen=True)
class SyncSettings:
    """Tunables of the sync engine.

    Durations are in seconds.

    Attributes:
        sync_interval: Period of the scheduler tick.
        min_changes: Pending entries needed before a scheduled cycle runs.
        stale_age: Age of the oldest entry that forces a scheduled cycle.
        batch_size: Maximum ids per remote edit call.
        max_retries: Failed attempts tolerated before an entry is abandoned.
        base_backoff: Delay after the first failed attempt; doubles per attempt.
        daily_call_limit: Remote calls allowed per UTC day.
        full_sync_interval: Age of the last full sync that forces a new one.
        run_timeout: Wall-clock budget of one orchestrator run.
        pull_page_size: Items requested per stream page.
        pull_item_cap: Items pulled per cycle across pages.
        drain_limit: Queue entries drained per cycle (None = all eligible).
        quota_warning_ratio: Usage ratio that logs a quota warning.
        quota_critical_ratio: Usage ratio that logs a critical quota warning.
    """

    sync_interval: float = 5 * MINUTE
    min_changes: int = 5
    stale_age: float = 15 * MINUTE
    batch_size: int = 100
    max_retries: int = 3
    base_backoff: float = 10 * MINUTE
    daily_call_limit: int = 100
    full_sync_interval: float = 7 * DAY
    run_timeout: float = 2 * MINUTE
    pull_page_size: int = 100
    pull_item_cap: int = 100
    drain_limit: int | None = None
    quota_warning_ratio: float = 0.8
    quota_critical_ratio: float = 0.95

    def __post_init__(self) -> None:
        for name in (
            "sync_interval",
            "batch_size",
            "base_backoff",
            "daily_call_limit",
            "full_sync_interval",
            "run_timeout",
            "pull_page_size",
            "pull_item_cap",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.min_changes < 1:
            raise ValueError("min_changes must be at least 1")
        if self.max_retries < 0 or self.stale_age < 0:
            raise ValueError("max_retries and stale_age must not be negative")
        if self.drain_limit is not None and self.drain_limit <= 0:
            raise ValueError("drain_limit must be positive or None")
        if not 0 < self.quota_warning_ratio <= self.quota_critical_ratio <= 1:
            raise ValueError("quota ratios must satisfy 0 < warning <= critical <= 1")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> SyncSettings:
        """Build settings from a config-file dictionary.

        Unknown keys are ignored so the same file can hold credentials.
        """
        known = {f.name: f for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, raw in data.items():
            if key not in known or raw is None:
                continue
            default = known[key].default
            values[key] = type(default)(raw) if default is not None else int(raw)
        return cls(**values)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        base: SyncSettings | None = None,
    ) -> SyncSettings:
        """Apply ``FEEDSYNC_*`` environment overrides on top of ``base``."""
        environ = os.environ if environ is None else environ
        settings = base or cls()
        overrides: dict[str, Any] = {}
        for var, (name, multiplier) in _ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            value = float(raw) * multiplier
            current = getattr(settings, name)
            overrides[name] = int(value) if isinstance(current, int) else value
        return replace(settings, **overrides) if overrides else settings
