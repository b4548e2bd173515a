"""Shared fixtures for feedsync tests.

Provides a controllable clock, a temporary local store, the sync
components built on it, and an in-memory stand-in for the reader API.
"""

from __future__ import annotations

from collections.abc import Callable, Generator, Sequence
from pathlib import Path
from typing import Any

import pytest

from feedsync.client.api import (
    EditTagResult,
    RemoteArticle,
    StreamPage,
    Subscription,
    UnreadCount,
)
from feedsync.client.store import Article, LocalStore
from feedsync.client.sync.events import MemoryEventSink
from feedsync.client.sync.metadata import SyncMetadataStore
from feedsync.client.sync.queue import ChangeQueue

# 2023-11-14 22:13:20 UTC
START_TS = 1_700_000_000.0


class FakeClock:
    """Deterministic clock driven by the test."""

    def __init__(self, start: float = START_TS) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        self._now += seconds
        return self._now

    def set(self, ts: float) -> None:
        self._now = ts


class FakeReaderApi:
    """In-memory reader API recording every call.

    Failures queued in ``failures[operation]`` are raised (in order) by the
    next calls to that operation before any normal answer.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.rejected: set[str] = set()
        self.pages: list[StreamPage] = []
        self.subscriptions: list[Subscription] = []
        self.unread_counts: list[UnreadCount] = []
        self.last_rate_limit = None
        self.token: str | None = None
        self.closed = False

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def set_token(self, token: str) -> None:
        self.token = token

    def close(self) -> None:
        self.closed = True

    def subscription_list(self) -> list[Subscription]:
        self._record("subscription_list")
        return list(self.subscriptions)

    def unread_count(self) -> list[UnreadCount]:
        self._record("unread_count")
        return list(self.unread_counts)

    def stream_contents(
        self,
        stream_id: str,
        count: int,
        newer_than: float | None = None,
        exclude_read: bool = False,
        oldest_first: bool = False,
        continuation: str | None = None,
    ) -> StreamPage:
        self._record(
            "stream_contents",
            stream_id=stream_id,
            count=count,
            newer_than=newer_than,
            exclude_read=exclude_read,
            oldest_first=oldest_first,
            continuation=continuation,
        )
        if self.pages:
            return self.pages.pop(0)
        return StreamPage(articles=[])

    def edit_tag(
        self,
        item_ids: Sequence[str],
        add: str | None = None,
        remove: str | None = None,
    ) -> EditTagResult:
        self._record("edit_tag", item_ids=list(item_ids), add=add, remove=remove)
        return EditTagResult(
            accepted=[i for i in item_ids if i not in self.rejected],
            rejected=[i for i in item_ids if i in self.rejected],
        )

    def mark_all_as_read(self, stream_id: str, before_ts: float) -> None:
        self._record("mark_all_as_read", stream_id=stream_id, before_ts=before_ts)


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at START_TS until advanced."""
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> Generator[LocalStore, None, None]:
    """Create a temporary local store."""
    store = LocalStore(tmp_path / "state.db")
    yield store
    store.close()


@pytest.fixture
def queue(store: LocalStore, clock: FakeClock) -> ChangeQueue:
    return ChangeQueue(store, clock)


@pytest.fixture
def metadata(store: LocalStore) -> SyncMetadataStore:
    return SyncMetadataStore(store)


@pytest.fixture
def sink() -> MemoryEventSink:
    return MemoryEventSink()


@pytest.fixture
def fake_api() -> FakeReaderApi:
    return FakeReaderApi()


@pytest.fixture
def make_remote() -> Callable[..., RemoteArticle]:
    """Factory for remote articles."""

    def _make(
        remote_id: str,
        is_read: bool = False,
        is_starred: bool = False,
        feed_id: str = "feed/https://example.com/rss",
        crawl_ts: float | None = START_TS - 60,
    ) -> RemoteArticle:
        return RemoteArticle(
            remote_id=remote_id,
            feed_id=feed_id,
            title=f"Article {remote_id}",
            url=f"https://example.com/{remote_id}",
            published_at=START_TS - 3600,
            crawl_ts=crawl_ts,
            is_read=is_read,
            is_starred=is_starred,
        )

    return _make


@pytest.fixture
def add_article(
    store: LocalStore,
    make_remote: Callable[..., RemoteArticle],
) -> Callable[..., Article]:
    """Factory inserting an article as if it had been pulled at START_TS - 3600."""

    def _add(remote_id: str, **kwargs: Any) -> Article:
        return store.insert_article(make_remote(remote_id, **kwargs), START_TS - 3600)

    return _add
