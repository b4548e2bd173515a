"""Sync metadata: watermarks and the daily call counter.

Keys:
    last_incremental_sync_ts  Pull cursor for incremental runs
    last_full_sync_ts         Start of the last successful full run
    last_successful_sync_ts   Start of the last successful run (conflict watermark)
    full_sync_cursor_ts       Resume point of a FULL sweep cut short by the item cap
    daily_call_count          Remote calls made in the current window
    call_count_reset_at       When the current window ends (next UTC midnight)
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from feedsync.client.store import LocalStore

logger = logging.getLogger(__name__)

LAST_INCREMENTAL_SYNC_TS = "last_incremental_sync_ts"
LAST_FULL_SYNC_TS = "last_full_sync_ts"
LAST_SUCCESSFUL_SYNC_TS = "last_successful_sync_ts"
FULL_SYNC_CURSOR_TS = "full_sync_cursor_ts"
DAILY_CALL_COUNT = "daily_call_count"
CALL_COUNT_RESET_AT = "call_count_reset_at"
REMOTE_RATE_LIMIT = "remote_rate_limit"


def next_utc_midnight(ts: float) -> float:
    """Unix time of the first UTC midnight strictly after ``ts``."""
    day = datetime.fromtimestamp(ts, tz=UTC).date()
    midnight = datetime(day.year, day.month, day.day, tzinfo=UTC) + timedelta(days=1)
    return midnight.timestamp()


class SyncMetadataStore:
    """Key/value sync metadata persisted in the local store."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    # === Raw access ===

    def get(self, key: str) -> str | None:
        """Get a metadata value."""
        row = self._store.execute(
            "SELECT value FROM sync_metadata WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str | float | int) -> None:
        """Set a metadata value."""
        self._store.execute(
            "INSERT OR REPLACE INTO sync_metadata (key, value) VALUES (?, ?)",
            (key, str(value)),
        )

    def update(self, values: dict[str, str | float | int | None]) -> None:
        """Set several values atomically; None removes the key."""
        with self._store.transaction() as conn:
            for key, value in values.items():
                if value is None:
                    conn.execute("DELETE FROM sync_metadata WHERE key = ?", (key,))
                    continue
                conn.execute(
                    "INSERT OR REPLACE INTO sync_metadata (key, value) VALUES (?, ?)",
                    (key, str(value)),
                )

    def get_float(self, key: str) -> float | None:
        value = self.get(key)
        return float(value) if value else None

    def snapshot(self) -> dict[str, str]:
        """All metadata as a dictionary."""
        rows = self._store.execute("SELECT key, value FROM sync_metadata").fetchall()
        return {row["key"]: row["value"] for row in rows}

    # === Watermarks ===

    @property
    def last_incremental_sync_ts(self) -> float | None:
        return self.get_float(LAST_INCREMENTAL_SYNC_TS)

    @property
    def last_full_sync_ts(self) -> float | None:
        return self.get_float(LAST_FULL_SYNC_TS)

    @property
    def last_successful_sync_ts(self) -> float | None:
        return self.get_float(LAST_SUCCESSFUL_SYNC_TS)

    @property
    def full_sync_cursor_ts(self) -> float | None:
        return self.get_float(FULL_SYNC_CURSOR_TS)

    # === Daily call counter ===

    def _roll_window(self, now: float) -> int:
        """Reset the counter if the window has ended; return current usage."""
        reset_at = self.get_float(CALL_COUNT_RESET_AT)
        if reset_at is None or now >= reset_at:
            new_reset = next_utc_midnight(now)
            self.update({DAILY_CALL_COUNT: 0, CALL_COUNT_RESET_AT: new_reset})
            if reset_at is not None:
                logger.info("Daily call counter reset (next reset at %.0f)", new_reset)
            return 0
        return int(self.get(DAILY_CALL_COUNT) or 0)

    def calls_used(self, now: float) -> int:
        """Remote calls consumed in the window containing ``now``."""
        with self._store.transaction():
            return self._roll_window(now)

    def increment_calls(self, now: float, amount: int = 1) -> int:
        """Consume quota units.

        Returns:
            Usage after the increment.
        """
        with self._store.transaction():
            used = self._roll_window(now) + amount
            self.set(DAILY_CALL_COUNT, used)
        return used

    def exhaust_calls(self, now: float, limit: int) -> None:
        """Mark the current window as fully used."""
        with self._store.transaction():
            used = self._roll_window(now)
            self.set(DAILY_CALL_COUNT, max(used, limit))

    # === Remote rate-limit headers ===

    def set_remote_rate_limit(self, info: dict[str, int | None]) -> None:
        self.set(REMOTE_RATE_LIMIT, json.dumps(info))

    def get_remote_rate_limit(self) -> dict[str, int | None] | None:
        value = self.get(REMOTE_RATE_LIMIT)
        return dict(json.loads(value)) if value else None
