"""Tests for the quota-gated remote sync client."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest

from feedsync.client.api import (
    APIError,
    AuthenticationError,
    RateLimitedError,
    RateLimitInfo,
    ReaderClient,
    RemoteArticle,
    StreamPage,
)
from feedsync.client.sync.events import MemoryEventSink
from feedsync.client.sync.metadata import SyncMetadataStore
from feedsync.client.sync.remote import RemoteSyncClient
from feedsync.client.sync.types import (
    AuthExpiredError,
    NetworkError,
    RateLimitError,
    SyncTimeoutError,
)
from feedsync.core.config import ServerConfig
from feedsync.core.types import READ_TAG, STARRED_TAG, ActionType, MarkAllScope
from tests.conftest import FakeClock, FakeReaderApi


class StaticRefresher:
    """Token provider handing out a fixed new token."""

    def __init__(self, token: str = "fresh-token") -> None:
        self.token = token
        self.calls = 0

    def refresh(self) -> str:
        self.calls += 1
        return self.token


class FailingRefresher:
    """Token provider that cannot refresh."""

    def refresh(self) -> str:
        raise RuntimeError("refresh token revoked")


@pytest.fixture
def remote(
    fake_api: FakeReaderApi,
    metadata: SyncMetadataStore,
    clock: FakeClock,
    sink: MemoryEventSink,
) -> RemoteSyncClient:
    return RemoteSyncClient(fake_api, metadata, clock, daily_limit=10, sink=sink)


class TestQuota:
    """Tests for daily quota enforcement."""

    def test_each_call_costs_one_unit(
        self,
        remote: RemoteSyncClient,
        fake_api: FakeReaderApi,
    ) -> None:
        """A batch of many ids costs exactly one unit."""
        remote.send_action_batch(ActionType.READ, [f"item-{i}" for i in range(100)])

        assert remote.calls_used() == 1
        assert remote.remaining_quota() == 9
        assert len(fake_api.calls_to("edit_tag")) == 1

    def test_exhausted_quota_skips_network(
        self,
        remote: RemoteSyncClient,
        metadata: SyncMetadataStore,
        fake_api: FakeReaderApi,
        clock: FakeClock,
    ) -> None:
        """At the limit the call fails with RATE_LIMIT and nothing is sent."""
        metadata.increment_calls(clock.now(), amount=10)

        with pytest.raises(RateLimitError):
            remote.send_action_batch(ActionType.READ, ["item-1"])

        assert fake_api.calls == []
        assert remote.calls_used() == 10

    def test_remote_429_exhausts_local_counter(
        self, remote: RemoteSyncClient, fake_api: FakeReaderApi
    ) -> None:
        """A remote rate limit makes later calls fail fast."""
        fake_api.failures["unread_count"] = [RateLimitedError("too many", 429)]

        with pytest.raises(RateLimitError):
            remote.get_unread_counts()

        assert remote.remaining_quota() == 0
        with pytest.raises(RateLimitError):
            remote.get_subscriptions()
        assert len(fake_api.calls) == 1

    def test_failed_call_consumes_nothing(
        self,
        remote: RemoteSyncClient,
        fake_api: FakeReaderApi,
    ) -> None:
        """Only successful calls are counted."""
        fake_api.failures["edit_tag"] = [APIError("server error", 503)]

        with pytest.raises(NetworkError):
            remote.send_action_batch(ActionType.READ, ["item-1"])

        assert remote.calls_used() == 0

    def test_warnings_at_thresholds(
        self, remote: RemoteSyncClient, sink: MemoryEventSink
    ) -> None:
        """Crossing 80% and 95% of the limit emits one warning each."""
        for _ in range(10):
            remote.get_unread_counts()

        warnings = sink.named("quota_warning")
        assert [(w.data["level"], w.data["used"]) for w in warnings] == [
            ("warning", 8),
            ("critical", 9),
        ]

    def test_persists_rate_limit_headers(
        self, remote: RemoteSyncClient, fake_api: FakeReaderApi, metadata: SyncMetadataStore
    ) -> None:
        """Header info from the last call is saved to metadata."""
        fake_api.last_rate_limit = RateLimitInfo(zone1_usage=40, zone1_limit=100)

        remote.get_subscriptions()

        saved = metadata.get_remote_rate_limit()
        assert saved is not None
        assert saved["zone1_usage"] == 40


class TestOperations:
    """Tests for individual remote operations."""

    @pytest.mark.parametrize(
        ("action", "add", "remove"),
        [
            (ActionType.READ, READ_TAG, None),
            (ActionType.UNREAD, None, READ_TAG),
            (ActionType.STAR, STARRED_TAG, None),
            (ActionType.UNSTAR, None, STARRED_TAG),
        ],
    )
    def test_action_tags(
        self,
        remote: RemoteSyncClient,
        fake_api: FakeReaderApi,
        action: ActionType,
        add: str | None,
        remove: str | None,
    ) -> None:
        """Each action adds or removes its state tag."""
        remote.send_action_batch(action, ["item-1"])

        call = fake_api.calls_to("edit_tag")[0]
        assert call["add"] == add
        assert call["remove"] == remove

    def test_partial_rejection(self, remote: RemoteSyncClient, fake_api: FakeReaderApi) -> None:
        """Rejected ids are reported separately."""
        fake_api.rejected = {"b"}

        result = remote.send_action_batch(ActionType.READ, ["a", "b"])

        assert result.accepted == ["a"]
        assert result.rejected == ["b"]

    def test_pull_pages_until_cap(
        self,
        remote: RemoteSyncClient,
        fake_api: FakeReaderApi,
        make_remote: Callable[..., RemoteArticle],
    ) -> None:
        """Pages are followed via continuation until the item cap."""
        fake_api.pages = [
            StreamPage([make_remote(f"p1-{i}") for i in range(3)], continuation="c1"),
            StreamPage([make_remote(f"p2-{i}") for i in range(2)], continuation="c2"),
        ]

        result = remote.pull_stream(1000.0, exclude_read=True, page_size=3, item_cap=5)

        assert len(result.articles) == 5
        assert result.truncated
        assert result.calls == 2
        calls = fake_api.calls_to("stream_contents")
        assert [c["count"] for c in calls] == [3, 2]
        assert [c["continuation"] for c in calls] == [None, "c1"]
        assert calls[0]["newer_than"] == 1000.0
        assert calls[0]["exclude_read"] is True
        assert remote.calls_used() == 2

    def test_pull_stops_at_end_of_stream(
        self,
        remote: RemoteSyncClient,
        fake_api: FakeReaderApi,
        make_remote: Callable[..., RemoteArticle],
    ) -> None:
        """No continuation means the stream was fully read."""
        fake_api.pages = [StreamPage([make_remote("only")])]

        result = remote.pull_stream(None, exclude_read=False, page_size=100, item_cap=100)

        assert [a.remote_id for a in result.articles] == ["only"]
        assert not result.truncated
        assert result.newest_crawl_ts == make_remote("only").crawl_ts

    def test_pull_stops_when_deadline_passes(
        self,
        remote: RemoteSyncClient,
        fake_api: FakeReaderApi,
        clock: FakeClock,
        make_remote: Callable[..., RemoteArticle],
    ) -> None:
        """No further page is requested once the run deadline is behind us."""
        fake_api.pages = [
            StreamPage([make_remote("p1")], continuation="c1"),
            StreamPage([make_remote("p2")]),
        ]

        with pytest.raises(SyncTimeoutError, match="after 1 page"):
            remote.pull_stream(
                None, exclude_read=False, page_size=1, item_cap=10, deadline=clock.now() - 1
            )

        assert len(fake_api.calls_to("stream_contents")) == 1

    def test_mark_all_read_uses_scope_stream(
        self,
        remote: RemoteSyncClient,
        fake_api: FakeReaderApi,
    ) -> None:
        """Mark-all-read targets the scope's stream id."""
        remote.mark_all_read(MarkAllScope.folder("Tech"), 1234.0)

        call = fake_api.calls_to("mark_all_as_read")[0]
        assert call["stream_id"] == "user/-/label/Tech"
        assert call["before_ts"] == 1234.0


class TestAuthRefresh:
    """Tests for the single refresh-and-retry on AUTH_EXPIRED."""

    def test_refresh_then_retry(
        self, fake_api: FakeReaderApi, metadata: SyncMetadataStore, clock: FakeClock
    ) -> None:
        """A rejected token is refreshed once and the call retried."""
        refresher = StaticRefresher()
        remote = RemoteSyncClient(fake_api, metadata, clock, token_provider=refresher)
        fake_api.failures["subscription_list"] = [AuthenticationError("expired", 401)]

        remote.get_subscriptions()

        assert refresher.calls == 1
        assert fake_api.token == "fresh-token"
        assert len(fake_api.calls_to("subscription_list")) == 2
        assert remote.calls_used() == 1

    def test_second_rejection_is_fatal(
        self, fake_api: FakeReaderApi, metadata: SyncMetadataStore, clock: FakeClock
    ) -> None:
        """Only one refresh is attempted."""
        refresher = StaticRefresher()
        remote = RemoteSyncClient(fake_api, metadata, clock, token_provider=refresher)
        fake_api.failures["subscription_list"] = [
            AuthenticationError("expired", 401),
            AuthenticationError("still expired", 401),
        ]

        with pytest.raises(AuthExpiredError):
            remote.get_subscriptions()

        assert refresher.calls == 1
        assert remote.calls_used() == 0

    def test_without_refresher(self, remote: RemoteSyncClient, fake_api: FakeReaderApi) -> None:
        """No token provider means AUTH_EXPIRED immediately."""
        fake_api.failures["unread_count"] = [AuthenticationError("expired", 401)]

        with pytest.raises(AuthExpiredError):
            remote.get_unread_counts()

    def test_refresh_failure(
        self,
        fake_api: FakeReaderApi,
        metadata: SyncMetadataStore,
        clock: FakeClock,
    ) -> None:
        """A failing refresher surfaces AUTH_EXPIRED."""
        remote = RemoteSyncClient(fake_api, metadata, clock, token_provider=FailingRefresher())
        fake_api.failures["unread_count"] = [AuthenticationError("expired", 401)]

        with pytest.raises(AuthExpiredError, match="refresh failed"):
            remote.get_unread_counts()


class TestTransportTranslation:
    """Tests for transport error classification over real HTTP."""

    @pytest.fixture
    def http_remote(self, metadata: SyncMetadataStore, clock: FakeClock) -> RemoteSyncClient:
        api = ReaderClient(ServerConfig(token="t", base_url="http://reader.test/api/0"))
        return RemoteSyncClient(api, metadata, clock)

    def test_timeout(
        self,
        http_remote: RemoteSyncClient,
        httpx_mock,
    ) -> None:  # type: ignore[no-untyped-def]
        """Request timeouts become TIMEOUT."""
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"))

        with pytest.raises(SyncTimeoutError):
            http_remote.get_unread_counts()

    def test_connection_error(
        self,
        http_remote: RemoteSyncClient,
        httpx_mock,
    ) -> None:  # type: ignore[no-untyped-def]
        """Connection failures become NETWORK_ERROR."""
        httpx_mock.add_exception(httpx.ConnectError("refused"))

        with pytest.raises(NetworkError):
            http_remote.get_unread_counts()

    def test_server_error(
        self,
        http_remote: RemoteSyncClient,
        httpx_mock,
    ) -> None:  # type: ignore[no-untyped-def]
        """5xx responses are retryable NETWORK_ERROR."""
        httpx_mock.add_response(method="POST", status_code=502)

        with pytest.raises(NetworkError) as excinfo:
            http_remote.send_action_batch(ActionType.STAR, ["item-1"])

        assert excinfo.value.retryable

    def test_success_counts(
        self,
        http_remote: RemoteSyncClient,
        httpx_mock,
    ) -> None:  # type: ignore[no-untyped-def]
        """A successful HTTP call consumes one unit."""
        httpx_mock.add_response(method="POST", text="OK")

        result = http_remote.send_action_batch(ActionType.READ, ["a", "b"])

        assert result.accepted == ["a", "b"]
        assert http_remote.calls_used() == 1
