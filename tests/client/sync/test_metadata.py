"""Tests for sync metadata and the daily call counter."""

from __future__ import annotations

from datetime import UTC, datetime

from feedsync.client.store import LocalStore
from feedsync.client.sync.metadata import (
    CALL_COUNT_RESET_AT,
    FULL_SYNC_CURSOR_TS,
    LAST_FULL_SYNC_TS,
    LAST_INCREMENTAL_SYNC_TS,
    SyncMetadataStore,
    next_utc_midnight,
)

# 2023-11-14 22:13:20 UTC
NOW = 1_700_000_000.0
MIDNIGHT = datetime(2023, 11, 15, tzinfo=UTC).timestamp()


class TestNextUtcMidnight:
    """Tests for next_utc_midnight."""

    def test_mid_day(self) -> None:
        """Should return the following UTC midnight."""
        assert next_utc_midnight(NOW) == MIDNIGHT

    def test_exactly_midnight(self) -> None:
        """Midnight itself rolls to the next day."""
        assert next_utc_midnight(MIDNIGHT) == MIDNIGHT + 86400


class TestSyncMetadataStore:
    """Tests for watermark storage."""

    def test_unset_watermarks_are_none(self, metadata: SyncMetadataStore) -> None:
        """A fresh store has no watermarks."""
        assert metadata.last_incremental_sync_ts is None
        assert metadata.last_full_sync_ts is None
        assert metadata.last_successful_sync_ts is None

    def test_update_is_visible(self, metadata: SyncMetadataStore) -> None:
        """Values written together are read back."""
        metadata.update({LAST_INCREMENTAL_SYNC_TS: 10.5, LAST_FULL_SYNC_TS: 3.0})

        assert metadata.last_incremental_sync_ts == 10.5
        assert metadata.last_full_sync_ts == 3.0
        assert metadata.snapshot()[LAST_INCREMENTAL_SYNC_TS] == "10.5"

    def test_update_with_none_removes_key(self, metadata: SyncMetadataStore) -> None:
        """None in an update deletes the key in the same transaction."""
        metadata.update({FULL_SYNC_CURSOR_TS: 7.0})
        assert metadata.full_sync_cursor_ts == 7.0

        metadata.update({FULL_SYNC_CURSOR_TS: None, LAST_FULL_SYNC_TS: 8.0})

        assert metadata.full_sync_cursor_ts is None
        assert FULL_SYNC_CURSOR_TS not in metadata.snapshot()
        assert metadata.last_full_sync_ts == 8.0

    def test_persists_across_instances(self, store: LocalStore) -> None:
        """Metadata survives a new store wrapper."""
        SyncMetadataStore(store).set(LAST_FULL_SYNC_TS, 42.0)
        assert SyncMetadataStore(store).last_full_sync_ts == 42.0

    def test_remote_rate_limit_roundtrip(self, metadata: SyncMetadataStore) -> None:
        """Rate-limit info is stored as JSON."""
        assert metadata.get_remote_rate_limit() is None
        metadata.set_remote_rate_limit({"zone1_usage": 3, "zone1_limit": None})
        assert metadata.get_remote_rate_limit() == {"zone1_usage": 3, "zone1_limit": None}


class TestDailyCallCounter:
    """Tests for the quota window."""

    def test_increment_counts_calls(self, metadata: SyncMetadataStore) -> None:
        """Each increment consumes one unit."""
        assert metadata.calls_used(NOW) == 0
        assert metadata.increment_calls(NOW) == 1
        assert metadata.increment_calls(NOW + 10) == 2
        assert metadata.calls_used(NOW + 20) == 2

    def test_window_resets_at_utc_midnight(self, metadata: SyncMetadataStore) -> None:
        """The counter starts over at the next UTC midnight."""
        metadata.increment_calls(NOW)
        metadata.increment_calls(NOW)

        assert metadata.calls_used(MIDNIGHT - 1) == 2
        assert metadata.calls_used(MIDNIGHT) == 0
        assert metadata.get_float(CALL_COUNT_RESET_AT) == MIDNIGHT + 86400

    def test_exhaust_calls(self, metadata: SyncMetadataStore) -> None:
        """Exhausting marks the window fully used until it resets."""
        metadata.increment_calls(NOW)

        metadata.exhaust_calls(NOW, 100)

        assert metadata.calls_used(NOW) == 100
        assert metadata.calls_used(MIDNIGHT) == 0
