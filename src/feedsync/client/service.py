"""Presentation-facing entry points of the sync engine.

This module provides:
- SyncService: Wires the sync components and exposes the only operations
  a UI may use
- MarkAllReadResult: Outcome of a mark-all-as-read request

Usage:
    service = SyncService(LocalStore(db_path), ReaderClient(server_config))
    service.enqueue_local_change(article_id, ActionType.READ)
    run_id = service.trigger_sync()
    service.get_sync_run_status(run_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from feedsync.client.store import ArticleNotFoundError
from feedsync.client.sync.conflict import ConflictResolver
from feedsync.client.sync.dispatcher import BatchDispatcher
from feedsync.client.sync.events import LoggingEventSink
from feedsync.client.sync.metadata import SyncMetadataStore
from feedsync.client.sync.orchestrator import SyncOrchestrator
from feedsync.client.sync.queue import ChangeQueue
from feedsync.client.sync.remote import RemoteSyncClient
from feedsync.client.sync.retry import RetryManager
from feedsync.client.sync.scheduler import SyncScheduler
from feedsync.client.sync.types import SyncError
from feedsync.core.clock import SystemClock
from feedsync.core.config import SyncSettings
from feedsync.core.types import ActionType, ErrorKind, SyncTrigger

if TYPE_CHECKING:
    from feedsync.client.api import ReaderClient, UnreadCount
    from feedsync.client.store import LocalStore
    from feedsync.client.sync.events import EventSink
    from feedsync.client.sync.remote import TokenProvider
    from feedsync.client.sync.types import FailedEntry, QueueEntry, SyncRun
    from feedsync.core.clock import Clock
    from feedsync.core.types import MarkAllScope

logger = logging.getLogger(__name__)


@dataclass
class MarkAllReadResult:
    """What a mark-all-as-read request did.

    Attributes:
        scope: Requested scope.
        marked_locally: Articles that changed from unread to read locally.
        remote_applied: True if the single remote call succeeded.
        queued: Per-article read entries queued because the remote call failed.
        error_kind: Failure kind of the remote call, if it failed.
    """

    scope: MarkAllScope
    marked_locally: int
    remote_applied: bool
    queued: int = 0
    error_kind: ErrorKind | None = None


class SyncService:
    """Facade over the sync engine for the presentation layer."""

    def __init__(
        self,
        store: LocalStore,
        api: ReaderClient,
        settings: SyncSettings | None = None,
        clock: Clock | None = None,
        sink: EventSink | None = None,
        token_provider: TokenProvider | None = None,
    ) -> None:
        """Initialize the service and its components.

        Args:
            store: Local store.
            api: Reader API HTTP client.
            settings: Sync tunables.
            clock: Local clock (defaults to the system clock).
            sink: Event sink shared by all components.
            token_provider: Credential refresher for AUTH_EXPIRED.
        """
        self.settings = settings or SyncSettings()
        self.clock = clock or SystemClock()
        self.sink = sink or LoggingEventSink()
        self.store = store
        self.api = api

        self.queue = ChangeQueue(store, self.clock)
        self.metadata = SyncMetadataStore(store)
        self.remote = RemoteSyncClient(
            api,
            self.metadata,
            self.clock,
            daily_limit=self.settings.daily_call_limit,
            token_provider=token_provider,
            warning_ratio=self.settings.quota_warning_ratio,
            critical_ratio=self.settings.quota_critical_ratio,
            sink=self.sink,
        )
        self.retry = RetryManager(
            self.queue,
            self.clock,
            base_backoff=self.settings.base_backoff,
            max_retries=self.settings.max_retries,
            sink=self.sink,
        )
        self.dispatcher = BatchDispatcher(
            self.queue,
            self.remote,
            self.retry,
            self.clock,
            batch_size=self.settings.batch_size,
            drain_limit=self.settings.drain_limit,
            sink=self.sink,
        )
        self.resolver = ConflictResolver(store, self.clock, sink=self.sink)
        self.orchestrator = SyncOrchestrator(
            store,
            self.queue,
            self.metadata,
            self.remote,
            self.dispatcher,
            self.resolver,
            self.clock,
            settings=self.settings,
            sink=self.sink,
        )
        self.scheduler = SyncScheduler(
            self.orchestrator,
            self.queue,
            self.clock,
            settings=self.settings,
            sink=self.sink,
        )

    # === Sync runs ===

    def trigger_sync(
        self,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        wait: bool = True,
    ) -> str:
        """Request a sync cycle.

        Args:
            trigger: MANUAL runs unconditionally; SCHEDULED applies the gate.
            wait: Block until the cycle finishes.

        Returns:
            Id of the run (the in-flight one if the request was coalesced).
        """
        if wait:
            run = self.scheduler.request(trigger)
        else:
            run = self.scheduler.request_async(trigger)
        return run.id

    def get_sync_run_status(self, run_id: str) -> SyncRun | None:
        """Status of a recent run, or None if unknown or evicted."""
        return self.scheduler.get_run(run_id)

    def recent_runs(self) -> list[SyncRun]:
        return self.scheduler.recent_runs()

    # === Local changes ===

    def enqueue_local_change(self, article_id: int, action: ActionType | str) -> QueueEntry | None:
        """Apply a user action locally and queue it for the remote service.

        Args:
            article_id: Local article id.
            action: read, unread, star or unstar.

        Returns:
            The live queue entry, or None if the change cancelled a pending one.

        Raises:
            ArticleNotFoundError: If the article does not exist.
            ValueError: If the action is unknown.
        """
        action = ActionType(action)
        with self.store.transaction():
            article = self.store.get_article(article_id)
            if article is None:
                raise ArticleNotFoundError(f"Article {article_id} not found")
            self.store.apply_local_action(article_id, action, self.clock.now())
            return self.queue.enqueue(article_id, article.remote_id, action)

    def mark_all_as_read(self, scope: MarkAllScope) -> MarkAllReadResult:
        """Mark a scope read locally, then remotely with one call.

        If the remote call fails, per-article read entries are queued so the
        change still reaches the remote service through normal dispatch.
        """
        with self.scheduler.exclusive():
            changed = self.store.mark_scope_read(scope, self.clock.now())
            try:
                self.dispatcher.mark_all_as_read(scope)
            except SyncError as e:
                logger.warning(
                    "Mark-all-as-read for %s failed remotely (%s), queueing %d articles",
                    scope,
                    e.kind.value,
                    len(changed),
                )
                queued = self._queue_reads(changed)
                return MarkAllReadResult(
                    scope=scope,
                    marked_locally=len(changed),
                    remote_applied=False,
                    queued=queued,
                    error_kind=e.kind,
                )
        return MarkAllReadResult(scope=scope, marked_locally=len(changed), remote_applied=True)

    def _queue_reads(self, article_ids: list[int]) -> int:
        queued = 0
        with self.store.transaction():
            for article_id in article_ids:
                article = self.store.get_article(article_id)
                if article is None:
                    continue
                if self.queue.enqueue(article_id, article.remote_id, ActionType.READ):
                    queued += 1
        return queued

    # === Status ===

    def get_unread_counts(self) -> list[UnreadCount]:
        """Unread counts from the remote service (costs one quota unit)."""
        return self.remote.get_unread_counts()

    def queue_stats(self) -> dict[str, Any]:
        """Queue counters plus quota usage."""
        stats: dict[str, Any] = dict(self.queue.stats())
        stats["calls_used"] = self.remote.calls_used()
        stats["calls_remaining"] = self.remote.remaining_quota()
        stats["daily_call_limit"] = self.remote.daily_limit
        return stats

    def list_failed(self) -> list[FailedEntry]:
        return self.queue.list_failed()

    def requeue_failed(self, ids: list[int] | None = None) -> int:
        """Give permanently failed entries a fresh set of attempts."""
        return self.queue.requeue_failed(ids)

    # === Lifecycle ===

    def start(self) -> None:
        """Start the periodic scheduler."""
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()

    def close(self) -> None:
        """Stop the scheduler and release the HTTP client and database."""
        self.stop()
        self.api.close()
        self.store.close()
