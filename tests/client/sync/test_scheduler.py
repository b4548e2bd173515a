"""Tests for the sync scheduler: gate, mutex, coalescing and timer."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from unittest.mock import patch

import pytest

from feedsync.client.api import Subscription
from feedsync.client.service import SyncService
from feedsync.client.store import Article, LocalStore
from feedsync.client.sync.events import MemoryEventSink
from feedsync.client.sync.scheduler import SyncScheduler
from feedsync.core.config import SyncSettings
from feedsync.core.types import ActionType, RunStatus, SyncTrigger
from tests.conftest import FakeClock, FakeReaderApi

MINUTE = 60.0


@pytest.fixture
def service(
    store: LocalStore,
    fake_api: FakeReaderApi,
    clock: FakeClock,
    sink: MemoryEventSink,
) -> SyncService:
    return SyncService(store, fake_api, settings=SyncSettings(), clock=clock, sink=sink)


@pytest.fixture
def scheduler(service: SyncService) -> SyncScheduler:
    return service.scheduler


@pytest.fixture
def queue_changes(
    service: SyncService, add_article: Callable[..., Article]
) -> Callable[[int], None]:
    def _queue(count: int) -> None:
        for i in range(count):
            article = add_article(f"item-{i}")
            service.enqueue_local_change(article.id, ActionType.READ)

    return _queue


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


class TestSchedulingGate:
    """Tests for the scheduled-trigger gate."""

    def test_empty_queue_skips(
        self,
        scheduler: SyncScheduler,
        fake_api: FakeReaderApi,
        sink: MemoryEventSink,
    ) -> None:
        """Nothing queued, nothing to do."""
        run = scheduler.tick()

        assert run.status is RunStatus.SKIPPED
        assert run.error_message == "queue empty"
        assert fake_api.calls == []
        assert sink.named("cycle_skipped")[0].data["pending"] == 0

    def test_below_threshold_skips(
        self,
        scheduler: SyncScheduler,
        queue_changes: Callable[[int], None],
        fake_api: FakeReaderApi,
    ) -> None:
        """Four fresh changes are not enough."""
        queue_changes(4)

        run = scheduler.tick()

        assert run.status is RunStatus.SKIPPED
        assert "4 pending < 5" in (run.error_message or "")
        assert fake_api.calls == []

    def test_threshold_runs(
        self,
        scheduler: SyncScheduler,
        queue_changes: Callable[[int], None],
        fake_api: FakeReaderApi,
    ) -> None:
        """Five changes trigger a cycle."""
        queue_changes(5)

        run = scheduler.tick()

        assert run.status is RunStatus.COMPLETED
        assert run.trigger is SyncTrigger.SCHEDULED
        assert run.counts.pushed == 5
        assert len(fake_api.calls_to("edit_tag")) == 1

    def test_stale_entry_runs(
        self, scheduler: SyncScheduler, queue_changes: Callable[[int], None], clock: FakeClock
    ) -> None:
        """A single change older than the stale age triggers a cycle."""
        queue_changes(1)
        clock.advance(15 * MINUTE)
        assert not scheduler.should_run().should_run

        clock.advance(1)
        decision = scheduler.should_run()

        assert decision.should_run
        assert decision.reason == "oldest entry is stale"
        assert scheduler.tick().status is RunStatus.COMPLETED

    def test_retry_pending_runs(
        self, scheduler: SyncScheduler, service: SyncService, queue_changes: Callable[[int], None]
    ) -> None:
        """An entry with a failed attempt triggers a cycle."""
        queue_changes(1)
        entry = service.queue.drain()[0]
        service.queue.mark_attempt(entry.id, "network_error: down")

        decision = scheduler.should_run()

        assert decision.should_run
        assert decision.reason == "retry pending"

    def test_manual_bypasses_gate(self, scheduler: SyncScheduler, fake_api: FakeReaderApi) -> None:
        """Manual triggers run even with an empty queue."""
        run = scheduler.request(SyncTrigger.MANUAL)

        assert run.status is RunStatus.COMPLETED
        assert fake_api.calls_to("stream_contents")


class TestSingleCycle:
    """Tests for the cycle mutex and coalescing."""

    def test_trigger_during_exclusive_is_skipped(
        self, scheduler: SyncScheduler, sink: MemoryEventSink, fake_api: FakeReaderApi
    ) -> None:
        """A trigger while an out-of-cycle operation holds the mutex does not run."""
        with scheduler.exclusive():
            assert scheduler.is_running
            run = scheduler.request(SyncTrigger.MANUAL)

        assert run.status is RunStatus.SKIPPED
        assert run.error_message == "another sync operation is in progress"
        assert len(sink.named("cycle_coalesced")) == 1
        assert fake_api.calls == []
        assert not scheduler.is_running

    def test_trigger_during_cycle_gets_in_flight_run(
        self, scheduler: SyncScheduler, fake_api: FakeReaderApi
    ) -> None:
        """Concurrent triggers are coalesced into the running cycle."""
        entered = threading.Event()
        release = threading.Event()
        original = fake_api.subscription_list

        def blocking_subscription_list() -> list[Subscription]:
            entered.set()
            assert release.wait(timeout=5)
            return original()

        fake_api.subscription_list = blocking_subscription_list

        first = scheduler.request_async(SyncTrigger.MANUAL)
        assert entered.wait(timeout=5)
        second = scheduler.request(SyncTrigger.MANUAL)
        third = scheduler.request(SyncTrigger.SCHEDULED)
        release.set()
        wait_for(lambda: first.finished)

        assert second is first
        assert third is first
        assert first.status is RunStatus.COMPLETED
        assert len(fake_api.calls_to("subscription_list")) == 1
        wait_for(lambda: not scheduler.is_running)
        assert scheduler.current_run is None


class TestRunRegistry:
    """Tests for run lookup."""

    def test_runs_are_retrievable(self, scheduler: SyncScheduler) -> None:
        """Finished runs can be polled by id."""
        run = scheduler.request()

        assert scheduler.get_run(run.id) is run
        assert scheduler.get_run("unknown") is None

    def test_registry_is_bounded(self, service: SyncService, clock: FakeClock) -> None:
        """Only the newest runs are kept, newest first."""
        scheduler = SyncScheduler(
            service.orchestrator, service.queue, clock, settings=service.settings, max_runs=3
        )
        runs = [scheduler.tick() for _ in range(5)]

        recent = scheduler.recent_runs()

        assert [r.id for r in recent] == [r.id for r in reversed(runs[2:])]
        assert scheduler.get_run(runs[0].id) is None


class TestTimer:
    """Tests for the periodic APScheduler job."""

    def test_start_registers_interval_job(self, scheduler: SyncScheduler) -> None:
        """Starting installs one tick job at the configured interval."""
        with patch("feedsync.client.sync.scheduler.BackgroundScheduler") as mock_cls:
            scheduler.start()
            scheduler.start()

            mock_scheduler = mock_cls.return_value
            mock_scheduler.add_job.assert_called_once()
            kwargs = mock_scheduler.add_job.call_args.kwargs
            assert kwargs["id"] == "sync_tick"
            assert kwargs["max_instances"] == 1
            assert kwargs["trigger"].interval.total_seconds() == 5 * MINUTE
            mock_scheduler.start.assert_called_once()
            assert scheduler.started

            scheduler.stop()

            mock_scheduler.shutdown.assert_called_once_with(wait=False)
            assert not scheduler.started

    def test_tick_job_logs_errors(self, scheduler: SyncScheduler) -> None:
        """An exception in a tick never escapes into the timer thread."""
        with patch.object(scheduler, "tick", side_effect=RuntimeError("boom")) as tick:
            scheduler._tick_job()

        tick.assert_called_once()
