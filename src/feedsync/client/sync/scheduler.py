"""Sync scheduler: periodic and on-demand triggering of sync cycles.

This module provides:
- SyncScheduler: Gates, coalesces and runs sync cycles
- SchedulingDecision: Why a scheduled tick did or did not run

A scheduled tick only runs a cycle when one of these holds:
- at least ``min_changes`` entries are queued
- some entry has a failed attempt (retry pending)
- the oldest entry is older than ``stale_age``

Manual triggers skip the gate. Only one cycle runs at a time; a trigger
arriving while a cycle is in flight is coalesced and gets the in-flight run.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from feedsync.client.sync.events import LoggingEventSink, SyncEventRecord
from feedsync.client.sync.types import SyncRun
from feedsync.core.config import SyncSettings
from feedsync.core.types import RunStatus, SyncTrigger

if TYPE_CHECKING:
    from feedsync.client.sync.events import EventSink
    from feedsync.client.sync.orchestrator import SyncOrchestrator
    from feedsync.client.sync.queue import ChangeQueue
    from feedsync.core.clock import Clock

logger = logging.getLogger(__name__)

DEFAULT_MAX_RUNS = 50


@dataclass
class SchedulingDecision:
    """Outcome of the scheduling gate."""

    should_run: bool
    reason: str
    pending: int = 0


class SyncScheduler:
    """Owns the single-cycle mutex and the periodic timer."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        queue: ChangeQueue,
        clock: Clock,
        settings: SyncSettings | None = None,
        sink: EventSink | None = None,
        max_runs: int = DEFAULT_MAX_RUNS,
    ) -> None:
        """Initialize the scheduler.

        Args:
            orchestrator: Runs the cycles.
            queue: Change queue inspected by the gate.
            clock: Local clock.
            settings: Sync tunables (interval, gate thresholds).
            sink: Event sink for skipped and coalesced triggers.
            max_runs: Finished runs kept for status polling.
        """
        self._orchestrator = orchestrator
        self._queue = queue
        self._clock = clock
        self.settings = settings or SyncSettings()
        self._sink = sink or LoggingEventSink()
        self._max_runs = max_runs

        self._cycle_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        self._runs: OrderedDict[str, SyncRun] = OrderedDict()
        self._current: SyncRun | None = None
        self._scheduler: BackgroundScheduler | None = None

    # === Gate ===

    def should_run(self) -> SchedulingDecision:
        """Apply the scheduling gate to the current queue."""
        pending = self._queue.pending_count()
        if pending == 0:
            return SchedulingDecision(False, "queue empty", pending)
        if pending >= self.settings.min_changes:
            return SchedulingDecision(
                True, f"{pending} pending >= {self.settings.min_changes}", pending
            )
        if self._queue.has_retries():
            return SchedulingDecision(True, "retry pending", pending)
        oldest = self._queue.oldest_created_at()
        if oldest is not None and self._clock.now() - oldest > self.settings.stale_age:
            return SchedulingDecision(True, "oldest entry is stale", pending)
        return SchedulingDecision(
            False,
            f"{pending} pending < {self.settings.min_changes}, none stale or retrying",
            pending,
        )

    # === Run registry ===

    def _register(self, run: SyncRun) -> None:
        with self._registry_lock:
            self._runs[run.id] = run
            while len(self._runs) > self._max_runs:
                self._runs.popitem(last=False)

    def get_run(self, run_id: str) -> SyncRun | None:
        """Look up a recent run by id."""
        with self._registry_lock:
            return self._runs.get(run_id)

    def recent_runs(self) -> list[SyncRun]:
        """Recent runs, newest first."""
        with self._registry_lock:
            return list(reversed(self._runs.values()))

    @property
    def current_run(self) -> SyncRun | None:
        """The run in flight, if any."""
        return self._current

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    # === Triggers ===

    def _emit(self, name: str, run_id: str | None, **data: object) -> None:
        self._sink.record(
            SyncEventRecord(name=name, timestamp=self._clock.now(), run_id=run_id, data=data)
        )

    def _skipped(self, trigger: SyncTrigger, reason: str) -> SyncRun:
        now = self._clock.now()
        run = SyncRun(
            trigger=trigger,
            status=RunStatus.SKIPPED,
            started_at=now,
            completed_at=now,
            error_message=reason,
        )
        self._register(run)
        return run

    def _begin(self, trigger: SyncTrigger) -> tuple[SyncRun, bool]:
        """Take the cycle mutex and create a run, or resolve the trigger otherwise.

        Returns:
            (run, owned). When ``owned`` is True the caller holds the mutex
            and must execute the pending run; otherwise the run is skipped
            or the in-flight one.
        """
        if not self._cycle_lock.acquire(blocking=False):
            return self._coalesced(trigger), False
        if trigger is SyncTrigger.SCHEDULED:
            decision = self.should_run()
            if not decision.should_run:
                self._cycle_lock.release()
                logger.debug("Scheduled sync skipped: %s", decision.reason)
                run = self._skipped(trigger, decision.reason)
                self._emit("cycle_skipped", run.id, reason=decision.reason, pending=decision.pending)
                return run, False
        run = SyncRun(trigger=trigger)
        self._current = run
        self._register(run)
        return run, True

    def _coalesced(self, trigger: SyncTrigger) -> SyncRun:
        in_flight = self._current
        logger.warning(
            "Sync %s trigger coalesced into run %s",
            trigger.value,
            in_flight.id if in_flight else "-",
        )
        self._emit(
            "cycle_coalesced",
            in_flight.id if in_flight else None,
            trigger=trigger.value,
        )
        if in_flight is not None:
            return in_flight
        return self._skipped(trigger, "another sync operation is in progress")

    def _execute(self, run: SyncRun) -> None:
        try:
            self._orchestrator.run(run)
        finally:
            self._current = None
            self._cycle_lock.release()

    def request(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncRun:
        """Run a cycle synchronously.

        Args:
            trigger: MANUAL skips the gate; SCHEDULED honours it.

        Returns:
            The finished run, a skipped run, or the in-flight run if the
            trigger was coalesced.
        """
        trigger = SyncTrigger(trigger)
        run, owned = self._begin(trigger)
        if not owned:
            return run
        self._execute(run)
        return run

    def request_async(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncRun:
        """Start a cycle in a background thread and return its run immediately.

        Poll the returned run (or get_run()) for completion.
        """
        trigger = SyncTrigger(trigger)
        run, owned = self._begin(trigger)
        if not owned:
            return run
        thread = threading.Thread(
            target=self._execute,
            args=(run,),
            name=f"SyncRun-{run.id[:8]}",
            daemon=True,
        )
        thread.start()
        return run

    def tick(self) -> SyncRun:
        """One scheduled tick."""
        return self.request(SyncTrigger.SCHEDULED)

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the cycle mutex for an out-of-cycle remote operation.

        Blocks until any in-flight cycle finishes.
        """
        with self._cycle_lock:
            yield

    # === Periodic timer ===

    def _tick_job(self) -> None:
        """Job function for the periodic tick."""
        try:
            self.tick()
        except Exception:
            logger.exception("Error during scheduled sync tick")

    def start(self) -> None:
        """Start the periodic timer."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._tick_job,
            trigger=IntervalTrigger(seconds=self.settings.sync_interval),
            id="sync_tick",
            name="Periodic sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("Sync scheduler started (every %.0f seconds)", self.settings.sync_interval)

    def stop(self) -> None:
        """Stop the periodic timer."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync scheduler stopped")

    @property
    def started(self) -> bool:
        return self._scheduler is not None
