"""Tests for retry bookkeeping and backoff."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from feedsync.client.store import Article
from feedsync.client.sync.events import MemoryEventSink
from feedsync.client.sync.queue import ChangeQueue
from feedsync.client.sync.retry import RetryManager
from feedsync.client.sync.types import NetworkError, QueueEntry
from feedsync.core.types import ActionType
from tests.conftest import FakeClock

MINUTE = 60.0


@pytest.fixture
def retry(queue: ChangeQueue, clock: FakeClock, sink: MemoryEventSink) -> RetryManager:
    return RetryManager(queue, clock, base_backoff=10 * MINUTE, max_retries=3, sink=sink)


@pytest.fixture
def entry(queue: ChangeQueue, add_article: Callable[..., Article]) -> QueueEntry:
    article = add_article("item-1")
    entry = queue.enqueue(article.id, article.remote_id, ActionType.READ)
    assert entry is not None
    return entry


class TestBackoff:
    """Tests for the backoff schedule."""

    def test_delays_double(self, retry: RetryManager) -> None:
        """Failures 1, 2, 3 wait 10, 20, 40 minutes."""
        assert retry.backoff_delay(0) == 0
        assert retry.backoff_delay(1) == 10 * MINUTE
        assert retry.backoff_delay(2) == 20 * MINUTE
        assert retry.backoff_delay(3) == 40 * MINUTE

    def test_fresh_entry_is_eligible(self, retry: RetryManager, entry: QueueEntry) -> None:
        """Never-attempted entries are eligible immediately."""
        assert retry.is_eligible(entry)
        assert retry.next_eligible_at(entry) == entry.created_at


class TestRecordFailure:
    """Tests for failure handling."""

    def test_eligibility_follows_backoff(
        self, retry: RetryManager, queue: ChangeQueue, entry: QueueEntry, clock: FakeClock
    ) -> None:
        """After each failure the entry waits out its delay before re-drain."""
        for attempt, delay in enumerate([10, 20, 40], start=1):
            outcome = retry.record_failure([entry], NetworkError("down"))
            assert len(outcome.retrying) == 1
            entry = outcome.retrying[0]
            assert entry.attempt_count == attempt

            clock.advance(delay * MINUTE - 1)
            assert not retry.is_eligible(entry)
            assert queue.drain(ready=retry.is_eligible) == []

            clock.advance(1)
            assert retry.is_eligible(entry)
            assert retry.next_eligible_at(entry) == clock.now()

    def test_fourth_failure_is_permanent(
        self,
        retry: RetryManager,
        queue: ChangeQueue,
        entry: QueueEntry,
        sink: MemoryEventSink,
    ) -> None:
        """Exceeding max_retries moves the entry to the failed table."""
        for _ in range(3):
            outcome = retry.record_failure([entry], NetworkError("down"))
            entry = outcome.retrying[0]

        outcome = retry.record_failure([entry], NetworkError("still down"), run_id="run-1")

        assert outcome.retrying == []
        assert len(outcome.abandoned) == 1
        failed = outcome.abandoned[0]
        assert failed.attempt_count == 4
        assert failed.last_error == "network_error: still down"
        assert queue.pending_count() == 0
        assert len(queue.list_failed()) == 1

        events = sink.named("entry_failed_permanently")
        assert len(events) == 1
        assert events[0].run_id == "run-1"
        assert events[0].data["remote_id"] == "item-1"

    def test_missing_entry_is_ignored(
        self, retry: RetryManager, queue: ChangeQueue, entry: QueueEntry
    ) -> None:
        """Entries removed meanwhile are skipped."""
        queue.remove([entry.id])

        outcome = retry.record_failure([entry], NetworkError("down"))

        assert outcome.retrying == []
        assert outcome.abandoned == []
