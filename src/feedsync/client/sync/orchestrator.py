"""Sync orchestrator: one push-then-pull cycle as a state machine.

This module provides:
- SyncOrchestrator: Runs a single sync cycle for a SyncRun

State flow:
    IDLE -> DETERMINING_MODE -> PULLING -> RECONCILING -> UPDATING_WATERMARKS -> IDLE
    (any step) -> FAILED -> IDLE

Before DETERMINING_MODE the queued local changes are pushed, so a pull in
the same cycle observes the state just sent. Watermarks only move in
UPDATING_WATERMARKS; any failure before that leaves them untouched and the
next cycle retries the same window.

FULL and INCREMENTAL pulls both run oldest-first. A FULL sweep cut short by
the item cap records a cursor and the following runs stay FULL, resuming
from it, until the sweep reaches the end of the stream.

The run deadline is checked between steps and between pull pages. A single
request, including each push batch, is bounded by the HTTP client timeout
instead.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from feedsync.client.sync.events import LoggingEventSink, SyncEventRecord
from feedsync.client.sync.metadata import (
    FULL_SYNC_CURSOR_TS,
    LAST_FULL_SYNC_TS,
    LAST_INCREMENTAL_SYNC_TS,
    LAST_SUCCESSFUL_SYNC_TS,
)
from feedsync.client.sync.types import (
    InternalSyncError,
    PullResult,
    SyncError,
    SyncTimeoutError,
)
from feedsync.core.config import SyncSettings
from feedsync.core.types import OrchestratorState, RunStatus, SyncMode

if TYPE_CHECKING:
    from feedsync.client.store import LocalStore
    from feedsync.client.sync.conflict import ConflictResolver, ConflictSummary
    from feedsync.client.sync.dispatcher import BatchDispatcher
    from feedsync.client.sync.events import EventSink
    from feedsync.client.sync.metadata import SyncMetadataStore
    from feedsync.client.sync.queue import ChangeQueue
    from feedsync.client.sync.remote import RemoteSyncClient
    from feedsync.client.sync.types import SyncRun
    from feedsync.core.clock import Clock

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Runs sync cycles: push, choose mode, pull, reconcile, advance watermarks.

    The orchestrator is not reentrant; the scheduler guarantees a single
    cycle at a time.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: ChangeQueue,
        metadata: SyncMetadataStore,
        remote: RemoteSyncClient,
        dispatcher: BatchDispatcher,
        resolver: ConflictResolver,
        clock: Clock,
        settings: SyncSettings | None = None,
        sink: EventSink | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Local store (feeds are refreshed on full runs).
            queue: Change queue (loop prevention after a pull).
            metadata: Watermarks.
            remote: Quota-gated remote client.
            dispatcher: Pushes queued changes.
            resolver: Applies pulled records.
            clock: Local clock; also drives the run deadline.
            settings: Sync tunables.
            sink: Event sink for cycle events.
        """
        self._store = store
        self._queue = queue
        self._metadata = metadata
        self._remote = remote
        self._dispatcher = dispatcher
        self._resolver = resolver
        self._clock = clock
        self.settings = settings or SyncSettings()
        self._sink = sink or LoggingEventSink()

        self._state = OrchestratorState.IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> OrchestratorState:
        """Current state of the state machine."""
        return self._state

    def _transition(self, state: OrchestratorState) -> None:
        with self._state_lock:
            logger.debug("Orchestrator %s -> %s", self._state.value, state.value)
            self._state = state

    def _emit(self, name: str, run: SyncRun, **data: object) -> None:
        self._sink.record(
            SyncEventRecord(name=name, timestamp=self._clock.now(), run_id=run.id, data=data)
        )

    def _check_deadline(self, deadline: float, step: str) -> None:
        if self._clock.now() > deadline:
            raise SyncTimeoutError(
                f"Run exceeded {self.settings.run_timeout:.0f}s timeout during {step}"
            )

    def determine_mode(self, now: float) -> SyncMode:
        """FULL if a sweep is unfinished, never succeeded or is too old."""
        if self._metadata.full_sync_cursor_ts is not None:
            return SyncMode.FULL
        last_full = self._metadata.last_full_sync_ts
        if last_full is None or now - last_full >= self.settings.full_sync_interval:
            return SyncMode.FULL
        return SyncMode.INCREMENTAL

    def run(self, run: SyncRun) -> SyncRun:
        """Execute one cycle and finalize ``run``.

        Never raises for sync failures: they are recorded on the run as an
        error kind and message.

        Args:
            run: Pending run to execute.

        Returns:
            The same run, finished (completed or failed).
        """
        started = self._clock.now()
        run.status = RunStatus.RUNNING
        run.started_at = started
        deadline = started + self.settings.run_timeout
        logger.info("Sync run %s started (%s)", run.id, run.trigger.value)
        self._emit("cycle_started", run, trigger=run.trigger.value)

        try:
            self._run_steps(run, started, deadline)
        except SyncError as e:
            self._fail(run, e)
        except Exception as e:
            logger.exception("Unexpected error during sync run %s", run.id)
            self._fail(run, InternalSyncError(f"{type(e).__name__}: {e}"))
        else:
            run.status = RunStatus.COMPLETED
            run.completed_at = self._clock.now()
            logger.info(
                "Sync run %s completed (%s): fetched=%d new=%d updated=%d "
                "conflicts=%d pushed=%d failed=%d",
                run.id,
                run.mode.value if run.mode else "-",
                run.counts.fetched,
                run.counts.new,
                run.counts.updated,
                run.counts.conflicts,
                run.counts.pushed,
                run.counts.failed,
            )
            self._emit(
                "cycle_completed",
                run,
                mode=run.mode.value if run.mode else None,
                duration=run.completed_at - started,
                counts=run.to_dict()["counts"],
            )
        finally:
            self._transition(OrchestratorState.IDLE)
        return run

    def _fail(self, run: SyncRun, error: SyncError) -> None:
        self._transition(OrchestratorState.FAILED)
        run.fail(error, self._clock.now())
        logger.error("Sync run %s failed (%s): %s", run.id, error.kind.value, error.message)
        self._emit("cycle_failed", run, error_kind=error.kind.value, error=error.message)

    def _run_steps(self, run: SyncRun, started: float, deadline: float) -> None:
        # Push first so the pull sees what was just sent
        dispatched = self._dispatcher.dispatch(run)
        if dispatched.halted_by is not None:
            raise dispatched.halted_by
        self._check_deadline(deadline, "push")

        self._transition(OrchestratorState.DETERMINING_MODE)
        mode = self.determine_mode(started)
        run.mode = mode
        logger.debug("Run %s uses %s mode", run.id, mode.value)

        self._transition(OrchestratorState.PULLING)
        pulled = self._pull(mode, deadline)
        run.counts.fetched = len(pulled.articles)
        self._check_deadline(deadline, "pull")

        self._transition(OrchestratorState.RECONCILING)
        pending = self._queue.pending_article_ids(a.remote_id for a in pulled.articles)
        summary = self._resolver.resolve_all(
            pulled.articles,
            watermark_ts=self._metadata.last_successful_sync_ts,
            sync_ts=started,
            run_id=run.id,
            pending_article_ids=pending,
        )
        run.counts.new = summary.inserted
        run.counts.updated = summary.overwritten
        run.counts.conflicts = summary.total_conflicts
        self._prevent_loops(pulled, summary)
        self._check_deadline(deadline, "reconcile")

        self._transition(OrchestratorState.UPDATING_WATERMARKS)
        self._metadata.update(self._watermarks(mode, started, pulled))

    def _pull(self, mode: SyncMode, deadline: float) -> PullResult:
        if mode is SyncMode.FULL:
            cursor = self._metadata.full_sync_cursor_ts
            if cursor is None:
                subscriptions = self._remote.get_subscriptions()
                self._store.upsert_feeds(subscriptions)
                logger.info("Refreshed %d subscriptions", len(subscriptions))
                self._check_deadline(deadline, "subscriptions")
            else:
                logger.info("Resuming full sweep from %.3f", cursor)
            return self._remote.pull_stream(
                cursor,
                exclude_read=False,
                page_size=self.settings.pull_page_size,
                item_cap=self.settings.pull_item_cap,
                oldest_first=True,
                deadline=deadline,
            )
        return self._remote.pull_stream(
            self._metadata.last_incremental_sync_ts,
            exclude_read=True,
            page_size=self.settings.pull_page_size,
            item_cap=self.settings.pull_item_cap,
            oldest_first=True,
            deadline=deadline,
        )

    def _prevent_loops(self, pulled: PullResult, summary: ConflictSummary) -> None:
        """Drop queue entries the pull just made redundant.

        Articles whose local change was preserved keep their entries; those
        changes still have to reach the remote service.
        """
        removed = self._queue.remove_for_remote_ids(
            (a.remote_id for a in pulled.articles),
            keep_article_ids=summary.preserved_article_ids,
        )
        if removed:
            logger.debug("Dropped %d queue entries superseded by pulled state", removed)

    def _watermarks(
        self,
        mode: SyncMode,
        started: float,
        pulled: PullResult,
    ) -> dict[str, str | float | int | None]:
        values: dict[str, str | float | int | None] = {LAST_SUCCESSFUL_SYNC_TS: started}
        if mode is SyncMode.FULL:
            if not pulled.truncated:
                values[LAST_FULL_SYNC_TS] = started
                values[LAST_INCREMENTAL_SYNC_TS] = started
                values[FULL_SYNC_CURSOR_TS] = None
            elif pulled.newest_crawl_ts is not None:
                # Sweep continues next run from the newest item retrieved
                values[FULL_SYNC_CURSOR_TS] = pulled.newest_crawl_ts
            else:
                logger.warning("Full sweep truncated without crawl times; cursor not moved")
        elif not pulled.truncated:
            values[LAST_INCREMENTAL_SYNC_TS] = started
        elif pulled.newest_crawl_ts is not None:
            # Only advance past what was actually retrieved
            values[LAST_INCREMENTAL_SYNC_TS] = pulled.newest_crawl_ts
        return values
