"""Retry bookkeeping with exponential backoff for queued changes.

Attempt counts are persisted on the queue entries, not held in memory:

    delay(n) = base_backoff * 2 ** (n - 1)     for n = attempt_count >= 1

An entry is eligible for re-drain once ``now - last_attempt_at >= delay``.
Once ``attempt_count`` exceeds ``max_retries`` the entry is moved to the
failed table with its last error.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from feedsync.client.sync.events import LoggingEventSink, SyncEventRecord

if TYPE_CHECKING:
    from feedsync.client.sync.events import EventSink
    from feedsync.client.sync.queue import ChangeQueue
    from feedsync.client.sync.types import FailedEntry, QueueEntry, SyncError
    from feedsync.core.clock import Clock

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_BACKOFF = 600.0  # seconds


@dataclass
class RetryOutcome:
    """What happened to a set of failed entries."""

    retrying: list[QueueEntry] = field(default_factory=list)
    abandoned: list[FailedEntry] = field(default_factory=list)


class RetryManager:
    """Tracks per-entry attempts and decides re-eligibility."""

    def __init__(
        self,
        queue: ChangeQueue,
        clock: Clock,
        base_backoff: float = DEFAULT_BASE_BACKOFF,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sink: EventSink | None = None,
    ) -> None:
        """Initialize the retry manager.

        Args:
            queue: Change queue holding the persisted attempt counts.
            clock: Local clock.
            base_backoff: Delay after the first failure, in seconds.
            max_retries: Failures tolerated before an entry is abandoned.
            sink: Event sink for permanent failures.
        """
        self._queue = queue
        self._clock = clock
        self.base_backoff = base_backoff
        self.max_retries = max_retries
        self._sink = sink or LoggingEventSink()

    def backoff_delay(self, attempt_count: int) -> float:
        """Minimum wait before an entry with ``attempt_count`` failures is retried."""
        if attempt_count <= 0:
            return 0.0
        return self.base_backoff * 2 ** (attempt_count - 1)

    def next_eligible_at(self, entry: QueueEntry) -> float:
        """Earliest time the entry may be drained again."""
        if entry.attempt_count <= 0 or entry.last_attempt_at is None:
            return entry.created_at
        return entry.last_attempt_at + self.backoff_delay(entry.attempt_count)

    def is_eligible(self, entry: QueueEntry, now: float | None = None) -> bool:
        """True if the entry may be transmitted now."""
        if entry.attempt_count <= 0 or entry.last_attempt_at is None:
            return True
        now = self._clock.now() if now is None else now
        return now - entry.last_attempt_at >= self.backoff_delay(entry.attempt_count)

    def record_failure(
        self,
        entries: Iterable[QueueEntry],
        error: SyncError,
        run_id: str | None = None,
    ) -> RetryOutcome:
        """Persist a failed attempt for each entry and abandon exhausted ones.

        Args:
            entries: Entries whose transmission failed.
            error: Classified failure.
            run_id: Run the failure happened in (for events).

        Returns:
            RetryOutcome listing entries still retrying and entries abandoned.
        """
        outcome = RetryOutcome()
        reason = f"{error.kind.value}: {error.message}"
        for entry in entries:
            updated = self._queue.mark_attempt(entry.id, reason)
            if updated is None:
                continue

            if updated.attempt_count > self.max_retries:
                failed = self._queue.fail(updated.id, reason)
                if failed is None:
                    continue
                outcome.abandoned.append(failed)
                logger.error(
                    "Entry %d (%s article %d) failed permanently after %d attempts: %s",
                    failed.id,
                    failed.action_type.value,
                    failed.article_id,
                    failed.attempt_count,
                    reason,
                )
                self._sink.record(
                    SyncEventRecord(
                        name="entry_failed_permanently",
                        timestamp=self._clock.now(),
                        run_id=run_id,
                        data={
                            "entry_id": failed.id,
                            "article_id": failed.article_id,
                            "remote_id": failed.remote_id,
                            "action": failed.action_type.value,
                            "attempts": failed.attempt_count,
                            "error": reason,
                        },
                    )
                )
            else:
                outcome.retrying.append(updated)
                logger.warning(
                    "Will retry entry %d in %.0f minutes (attempt %d/%d): %s",
                    updated.id,
                    self.backoff_delay(updated.attempt_count) / 60,
                    updated.attempt_count,
                    self.max_retries,
                    reason,
                )
        return outcome
