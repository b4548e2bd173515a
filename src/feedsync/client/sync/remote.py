"""Quota-gated remote sync client.

RemoteSyncClient is the only path from the sync engine to the remote
service. Every call:

1. Checks the shared daily counter; if exhausted, fails with RATE_LIMIT
   without touching the network.
2. Issues exactly one HTTP request (plus one retry after a token refresh
   on AUTH_EXPIRED).
3. On success, consumes exactly one quota unit regardless of batch size.

Transport exceptions are translated into SyncError subclasses here and
nowhere else.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Protocol, TypeVar

import httpx

from feedsync.client.api import (
    APIError,
    AuthenticationError,
    RateLimitedError,
    ReaderClient,
    RemoteArticle,
    Subscription,
    UnreadCount,
)
from feedsync.client.sync.events import LoggingEventSink, SyncEventRecord
from feedsync.client.sync.types import (
    ActionBatchResult,
    AuthExpiredError,
    NetworkError,
    PullResult,
    RateLimitError,
    SyncTimeoutError,
)
from feedsync.core.types import READING_LIST, ActionType, MarkAllScope

if TYPE_CHECKING:
    from feedsync.client.sync.events import EventSink
    from feedsync.client.sync.metadata import SyncMetadataStore
    from feedsync.core.clock import Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenProvider(Protocol):
    """Supplies and refreshes the bearer credential."""

    def refresh(self) -> str:
        """Obtain a fresh token or raise if re-authentication is required."""
        ...


class RemoteSyncClient:
    """Translates sync operations into quota-costed remote calls."""

    def __init__(
        self,
        api: ReaderClient,
        metadata: SyncMetadataStore,
        clock: Clock,
        daily_limit: int = 100,
        token_provider: TokenProvider | None = None,
        warning_ratio: float = 0.8,
        critical_ratio: float = 0.95,
        sink: EventSink | None = None,
    ) -> None:
        """Initialize the remote sync client.

        Args:
            api: HTTP client for the reader API.
            metadata: Holder of the shared daily counter.
            clock: Local clock (quota window and event timestamps).
            daily_limit: Remote calls allowed per UTC day.
            token_provider: Credential refresher for AUTH_EXPIRED.
            warning_ratio: Usage ratio that logs a warning.
            critical_ratio: Usage ratio that logs a critical warning.
            sink: Event sink for quota warnings.
        """
        self._api = api
        self._metadata = metadata
        self._clock = clock
        self.daily_limit = daily_limit
        self._token_provider = token_provider
        self._warning_ratio = warning_ratio
        self._critical_ratio = critical_ratio
        self._sink = sink or LoggingEventSink()

    # === Quota ===

    def calls_used(self) -> int:
        return self._metadata.calls_used(self._clock.now())

    def remaining_quota(self) -> int:
        """Remote calls still allowed in the current window."""
        return max(0, self.daily_limit - self.calls_used())

    def _check_quota(self, operation: str) -> None:
        used = self.calls_used()
        if used >= self.daily_limit:
            logger.warning(
                "Daily quota exhausted (%d/%d); not calling %s", used, self.daily_limit, operation
            )
            raise RateLimitError(
                f"Daily remote call quota exhausted ({used}/{self.daily_limit})"
            )

    def _consume(self, operation: str) -> None:
        used = self._metadata.increment_calls(self._clock.now())
        info = self._api.last_rate_limit
        if info is not None:
            self._metadata.set_remote_rate_limit(info.as_dict())
        for ratio, level in (
            (self._critical_ratio, "critical"),
            (self._warning_ratio, "warning"),
        ):
            threshold = int(self.daily_limit * ratio)
            # Report once, on the call that crosses the threshold
            if used == threshold:
                remaining = self.daily_limit - used
                logger.warning(
                    "Remote quota %s: %d calls remaining today (after %s)",
                    level,
                    remaining,
                    operation,
                )
                self._sink.record(
                    SyncEventRecord(
                        name="quota_warning",
                        timestamp=self._clock.now(),
                        data={"level": level, "used": used, "limit": self.daily_limit},
                    )
                )
                break

    # === Call wrapper ===

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run one quota-costed remote call with error translation."""
        self._check_quota(operation)
        try:
            try:
                result = func()
            except AuthenticationError:
                result = self._refresh_and_retry(operation, func)
        except RateLimitedError as e:
            self._metadata.exhaust_calls(self._clock.now(), self.daily_limit)
            raise RateLimitError(f"Remote service rate limited {operation}") from e
        except httpx.TimeoutException as e:
            raise SyncTimeoutError(f"{operation} timed out: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"{operation} failed: {e}") from e
        except APIError as e:
            raise NetworkError(f"{operation} failed with HTTP {e.status_code}: {e}") from e
        self._consume(operation)
        return result

    def _refresh_and_retry(self, operation: str, func: Callable[[], T]) -> T:
        """Refresh the credential once and retry; fatal if it fails again."""
        if self._token_provider is None:
            raise AuthExpiredError(f"{operation}: credential expired and no refresher configured")
        logger.info("Token rejected during %s, refreshing once", operation)
        try:
            token = self._token_provider.refresh()
        except Exception as e:
            raise AuthExpiredError(f"{operation}: token refresh failed: {e}") from e
        self._api.set_token(token)
        try:
            return func()
        except AuthenticationError as e:
            raise AuthExpiredError(
                f"{operation}: credential rejected after refresh; re-authentication required"
            ) from e

    # === Operations ===

    def send_action_batch(self, action: ActionType, remote_ids: Sequence[str]) -> ActionBatchResult:
        """Apply one action to many items in a single call.

        Args:
            action: read, unread, star or unstar.
            remote_ids: Remote item ids (at most one batch).

        Returns:
            ActionBatchResult with accepted and rejected ids.
        """
        action = ActionType(action)
        tags = {"add": action.tag} if action.adds_tag else {"remove": action.tag}
        result = self._call(
            f"edit-tag({action.value}, {len(remote_ids)} ids)",
            lambda: self._api.edit_tag(remote_ids, **tags),
        )
        return ActionBatchResult(action=action, accepted=result.accepted, rejected=result.rejected)

    def pull_stream(
        self,
        watermark_ts: float | None,
        exclude_read: bool,
        page_size: int = 100,
        item_cap: int = 100,
        oldest_first: bool = False,
        stream_id: str = READING_LIST,
        deadline: float | None = None,
    ) -> PullResult:
        """Pull stream pages until ``item_cap`` items or the stream ends.

        Each page costs one quota unit. A page that fails after earlier
        pages succeeded raises, so the caller never advances a watermark
        past a partial pull.

        Args:
            watermark_ts: Only items newer than this (``ot``), or None.
            exclude_read: Skip items already read remotely.
            page_size: Items per page.
            item_cap: Items per cycle across pages.
            oldest_first: Request ascending order.
            stream_id: Stream to pull.
            deadline: Local-clock time after which no further page is requested.

        Returns:
            PullResult; ``truncated`` is True if the cap cut the stream short.

        Raises:
            SyncTimeoutError: The deadline passed between pages.
        """
        articles: list[RemoteArticle] = []
        continuation: str | None = None
        calls = 0
        while True:
            if calls and deadline is not None and self._clock.now() > deadline:
                raise SyncTimeoutError(
                    f"Run deadline passed during pull after {calls} page(s)"
                )
            count = min(page_size, item_cap - len(articles))
            token = continuation
            page = self._call(
                f"stream/contents(n={count})",
                lambda: self._api.stream_contents(
                    stream_id,
                    count=count,
                    newer_than=watermark_ts,
                    exclude_read=exclude_read,
                    oldest_first=oldest_first,
                    continuation=token,
                ),
            )
            calls += 1
            articles.extend(page.articles)
            continuation = page.continuation
            if not continuation or not page.articles or len(articles) >= item_cap:
                break
        truncated = bool(continuation)
        logger.info(
            "Pulled %d items in %d calls%s",
            len(articles),
            calls,
            " (more pending)" if truncated else "",
        )
        return PullResult(articles=articles, truncated=truncated, calls=calls)

    def mark_all_read(self, scope: MarkAllScope, before_ts: float) -> None:
        """Mark everything in a scope read remotely in one call."""
        self._call(
            f"mark-all-as-read({scope})",
            lambda: self._api.mark_all_as_read(scope.stream_id, before_ts),
        )

    def get_subscriptions(self) -> list[Subscription]:
        """List subscriptions (one call)."""
        return self._call("subscription/list", self._api.subscription_list)

    def get_unread_counts(self) -> list[UnreadCount]:
        """List unread counts (one call)."""
        return self._call("unread-count", self._api.unread_count)
