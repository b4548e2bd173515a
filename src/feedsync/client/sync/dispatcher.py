"""Batch dispatcher for queued local changes.

This module provides:
- BatchDispatcher: Drains the change queue and transmits it in batches

Dispatch loop:
1. Drain entries whose backoff has elapsed, oldest first
2. Group them by action type (first-seen order)
3. Chunk each group to ``batch_size`` ids, one remote call per chunk
4. Remove accepted entries; hand rejected or failed ones to the RetryManager

A RATE_LIMIT or AUTH_EXPIRED failure stops the loop immediately; the
remaining entries stay queued untouched.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from feedsync.client.sync.events import LoggingEventSink, SyncEventRecord
from feedsync.client.sync.types import DispatchResult, PartialFailureError, SyncError

if TYPE_CHECKING:
    from feedsync.client.sync.events import EventSink
    from feedsync.client.sync.queue import ChangeQueue
    from feedsync.client.sync.remote import RemoteSyncClient
    from feedsync.client.sync.retry import RetryManager
    from feedsync.client.sync.types import QueueEntry, SyncRun
    from feedsync.core.clock import Clock
    from feedsync.core.types import ActionType, MarkAllScope

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


def group_by_action(entries: list[QueueEntry]) -> dict[ActionType, list[QueueEntry]]:
    """Group entries by action type, keeping first-seen order."""
    groups: dict[ActionType, list[QueueEntry]] = {}
    for entry in entries:
        groups.setdefault(entry.action_type, []).append(entry)
    return groups


class BatchDispatcher:
    """Transmits queued changes with one remote call per batch."""

    def __init__(
        self,
        queue: ChangeQueue,
        remote: RemoteSyncClient,
        retry: RetryManager,
        clock: Clock,
        batch_size: int = DEFAULT_BATCH_SIZE,
        drain_limit: int | None = None,
        sink: EventSink | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            queue: Change queue to drain.
            remote: Quota-gated remote client.
            retry: Retry manager for failed chunks.
            clock: Local clock.
            batch_size: Maximum ids per remote call.
            drain_limit: Maximum entries drained per dispatch (None = all).
            sink: Event sink for batch events.
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._queue = queue
        self._remote = remote
        self._retry = retry
        self._clock = clock
        self.batch_size = batch_size
        self.drain_limit = drain_limit
        self._sink = sink or LoggingEventSink()

    def _emit(self, name: str, run_id: str | None, **data: object) -> None:
        self._sink.record(
            SyncEventRecord(name=name, timestamp=self._clock.now(), run_id=run_id, data=data)
        )

    def dispatch(self, run: SyncRun | None = None) -> DispatchResult:
        """Transmit every eligible queued change.

        Args:
            run: Run to attribute events and counters to.

        Returns:
            DispatchResult; ``halted_by`` is set if a quota or auth failure
            stopped the dispatch early.
        """
        run_id = run.id if run else None
        now = self._clock.now()
        entries = self._queue.drain(
            self.drain_limit,
            ready=lambda entry: self._retry.is_eligible(entry, now),
        )
        result = DispatchResult()
        if not entries:
            logger.debug("Change queue empty, nothing to push")
            return result

        logger.info("Pushing %d queued changes", len(entries))
        self._send(entries, result, run_id)
        if run is not None:
            run.counts.pushed += result.sent
            run.counts.failed += result.abandoned
        return result

    def _send(
        self,
        entries: list[QueueEntry],
        result: DispatchResult,
        run_id: str | None,
    ) -> None:
        """Send entries one action group and chunk at a time.

        Stops at the first quota or auth failure and records it on ``result``.
        """
        for action, group in group_by_action(entries).items():
            for start in range(0, len(group), self.batch_size):
                chunk = group[start:start + self.batch_size]
                try:
                    batch = self._remote.send_action_batch(
                        action, [e.remote_id for e in chunk]
                    )
                except SyncError as e:
                    if e.halts_cycle:
                        logger.warning(
                            "Push halted by %s with %d %s entries unsent: %s",
                            e.kind.value,
                            len(group) - start,
                            action.value,
                            e.message,
                        )
                        self._emit(
                            "batch_failed",
                            run_id,
                            action=action.value,
                            size=len(chunk),
                            error_kind=e.kind.value,
                            error=e.message,
                        )
                        result.halted_by = e
                        return
                    self._fail_chunk(chunk, e, result, run_id)
                    continue

                result.calls += 1
                rejected = set(batch.rejected)
                accepted = [e for e in chunk if e.remote_id not in rejected]
                failed = [e for e in chunk if e.remote_id in rejected]
                self._queue.remove(e.id for e in accepted)
                result.sent += len(accepted)
                logger.info(
                    "Sent %s batch: %d accepted, %d rejected",
                    action.value,
                    len(accepted),
                    len(failed),
                )
                self._emit(
                    "batch_sent",
                    run_id,
                    action=action.value,
                    size=len(chunk),
                    accepted=len(accepted),
                    rejected=len(failed),
                )
                if failed:
                    error = PartialFailureError(
                        f"{len(failed)} of {len(chunk)} ids rejected for {action.value}",
                        rejected_ids=sorted(rejected),
                    )
                    self._fail_chunk(failed, error, result, run_id, emit=False)

    def _fail_chunk(
        self,
        chunk: list[QueueEntry],
        error: SyncError,
        result: DispatchResult,
        run_id: str | None,
        emit: bool = True,
    ) -> None:
        if emit:
            logger.warning(
                "Batch of %d %s entries failed (%s): %s",
                len(chunk),
                chunk[0].action_type.value,
                error.kind.value,
                error.message,
            )
            self._emit(
                "batch_failed",
                run_id,
                action=chunk[0].action_type.value,
                size=len(chunk),
                error_kind=error.kind.value,
                error=error.message,
            )
        outcome = self._retry.record_failure(chunk, error, run_id=run_id)
        result.retrying += len(outcome.retrying)
        result.abandoned += len(outcome.abandoned)

    def mark_all_as_read(self, scope: MarkAllScope, run_id: str | None = None) -> int:
        """Mark a whole scope read remotely with a single call.

        Queue entries on the read axis for articles in the scope are dropped
        afterwards, since the scope-wide call supersedes them.

        Args:
            scope: Feed, folder or global scope.
            run_id: Run to attribute the event to.

        Returns:
            Number of queue entries made redundant.

        Raises:
            SyncError: If the remote call fails; nothing is removed.
        """
        now = self._clock.now()
        self._remote.mark_all_read(scope, now)
        removed = self._queue.remove_for_scope(scope)
        logger.info("Marked %s read remotely, dropped %d queued entries", scope, removed)
        self._emit("mark_all_read", run_id, scope=str(scope), removed=removed)
        return removed
