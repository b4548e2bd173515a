"""HTTP client for the remote reader API (Google Reader protocol).

This module provides:
- ReaderClient: HTTP client for the feed-aggregation service
- Stream, subscription and unread-count parsing
- Tag edits and mark-all-as-read
- Rate-limit header capture

The client performs exactly one HTTP request per public method. Quota
accounting and error classification happen one layer up, in
feedsync.client.sync.remote.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from feedsync.core.config import ServerConfig
from feedsync.core.types import LABEL_PREFIX, READ_TAG, STARRED_TAG

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Token rejected (expired or revoked)."""


class RateLimitedError(APIError):
    """Remote quota exhausted."""


class NotFoundError(APIError):
    """Resource not found."""


def _parse_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value.replace(",", "")))
    except ValueError:
        return None


@dataclass
class RateLimitInfo:
    """Zone usage reported by the remote service in response headers."""

    zone1_usage: int | None = None
    zone1_limit: int | None = None
    zone2_usage: int | None = None
    zone2_limit: int | None = None
    reset_after: int | None = None

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> RateLimitInfo | None:
        """Parse ``X-Reader-*`` headers, or None if none are present."""
        info = cls(
            zone1_usage=_parse_int(headers.get("X-Reader-Zone1-Usage")),
            zone1_limit=_parse_int(headers.get("X-Reader-Zone1-Limit")),
            zone2_usage=_parse_int(headers.get("X-Reader-Zone2-Usage")),
            zone2_limit=_parse_int(headers.get("X-Reader-Zone2-Limit")),
            reset_after=_parse_int(headers.get("X-Reader-Limits-Reset-After")),
        )
        if all(value is None for value in info.as_dict().values()):
            return None
        return info

    def as_dict(self) -> dict[str, int | None]:
        return {
            "zone1_usage": self.zone1_usage,
            "zone1_limit": self.zone1_limit,
            "zone2_usage": self.zone2_usage,
            "zone2_limit": self.zone2_limit,
            "reset_after": self.reset_after,
        }


@dataclass
class Subscription:
    """A subscribed feed and the folders it sits in."""

    id: str
    title: str
    url: str | None = None
    folders: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subscription:
        """Create from API response dictionary."""
        folders = []
        for category in data.get("categories") or []:
            label = category.get("label")
            if not label:
                category_id = category.get("id", "")
                if category_id.startswith(LABEL_PREFIX):
                    label = category_id[len(LABEL_PREFIX):]
            if label:
                folders.append(label)
        return cls(
            id=data["id"],
            title=data.get("title") or data["id"],
            url=data.get("url") or data.get("htmlUrl"),
            folders=folders,
        )


@dataclass
class UnreadCount:
    """Unread count for one stream."""

    stream_id: str
    count: int
    newest_item_ts: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UnreadCount:
        """Create from API response dictionary."""
        newest = data.get("newestItemTimestampUsec")
        return cls(
            stream_id=data["id"],
            count=int(data.get("count", 0)),
            newest_item_ts=int(newest) / 1_000_000 if newest else None,
        )


@dataclass
class RemoteArticle:
    """Article state as reported by the remote stream.

    ``crawl_ts`` is the remote service's own timestamp. It is used only
    as a pull cursor, never for conflict decisions.
    """

    remote_id: str
    feed_id: str | None
    title: str
    url: str | None
    published_at: float | None
    crawl_ts: float | None
    is_read: bool
    is_starred: bool

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteArticle:
        """Create from a stream item dictionary."""
        categories = data.get("categories") or []
        origin = data.get("origin") or {}
        links = data.get("canonical") or data.get("alternate") or []
        crawl_msec = data.get("crawlTimeMsec")
        published = data.get("published")
        return cls(
            remote_id=data["id"],
            feed_id=origin.get("streamId"),
            title=data.get("title") or "Untitled",
            url=links[0].get("href") if links else None,
            published_at=float(published) if published else None,
            crawl_ts=int(crawl_msec) / 1000 if crawl_msec else None,
            is_read=READ_TAG in categories,
            is_starred=STARRED_TAG in categories,
        )


@dataclass
class StreamPage:
    """One page of a stream/contents call."""

    articles: list[RemoteArticle]
    continuation: str | None = None


@dataclass
class EditTagResult:
    """Outcome of an edit-tag call.

    The service answers ``OK`` when every id was accepted. A JSON body
    with an ``errors`` list names the ids it rejected.
    """

    accepted: list[str]
    rejected: list[str] = field(default_factory=list)

    @classmethod
    def from_body(cls, item_ids: Sequence[str], body: str) -> EditTagResult:
        text = body.strip()
        if text == "OK" or not text:
            return cls(accepted=list(item_ids))
        try:
            payload = json.loads(text)
        except ValueError:
            raise APIError(f"Unexpected edit-tag response: {text[:200]}") from None
        errors = payload.get("errors") if isinstance(payload, dict) else None
        if not isinstance(errors, list):
            raise APIError(f"Unexpected edit-tag response: {text[:200]}")
        rejected_set = {str(e["id"]) if isinstance(e, dict) else str(e) for e in errors}
        return cls(
            accepted=[i for i in item_ids if i not in rejected_set],
            rejected=[i for i in item_ids if i in rejected_set],
        )


class ReaderClient:
    """HTTP client for a Google Reader compatible API."""

    def __init__(
        self,
        config: ServerConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the reader client.

        Args:
            config: Server configuration (URL, token, timeout).
            transport: Optional httpx transport (tests).
        """
        self._config = config
        headers = {"Authorization": f"Bearer {config.token}"}
        if config.app_id:
            headers["AppId"] = config.app_id
        if config.app_key:
            headers["AppKey"] = config.app_key
        self._client = httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout,
            headers=headers,
            transport=transport,
        )
        self.last_rate_limit: RateLimitInfo | None = None

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> ReaderClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def set_token(self, token: str) -> None:
        """Swap the bearer token after a refresh."""
        self._client.headers["Authorization"] = f"Bearer {token}"

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Capture rate-limit headers and raise on error statuses."""
        info = RateLimitInfo.from_headers(response.headers)
        if info is not None:
            self.last_rate_limit = info
        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired token", response.status_code)
        if response.status_code == 404:
            raise NotFoundError("Resource not found", 404)
        if response.status_code == 429:
            raise RateLimitedError("Remote rate limit exceeded", 429)
        if response.status_code >= 400:
            detail = response.text[:200] or response.reason_phrase
            raise APIError(detail, response.status_code)
        return response

    # === Read operations ===

    def subscription_list(self) -> list[Subscription]:
        """List subscribed feeds.

        Returns:
            Subscriptions with their folder labels.
        """
        response = self._handle_response(
            self._client.get("/subscription/list", params={"output": "json"})
        )
        return [Subscription.from_dict(s) for s in response.json().get("subscriptions", [])]

    def unread_count(self) -> list[UnreadCount]:
        """Get unread counts per stream."""
        response = self._handle_response(
            self._client.get("/unread-count", params={"output": "json"})
        )
        return [UnreadCount.from_dict(c) for c in response.json().get("unreadcounts", [])]

    def stream_contents(
        self,
        stream_id: str,
        count: int,
        newer_than: float | None = None,
        exclude_read: bool = False,
        oldest_first: bool = False,
        continuation: str | None = None,
    ) -> StreamPage:
        """Fetch one page of a stream.

        Args:
            stream_id: Stream to read (e.g. the reading list).
            count: Maximum number of items (``n``).
            newer_than: Only items newer than this unix time (``ot``).
            exclude_read: Exclude items tagged read (``xt``).
            oldest_first: Ascending order (``r=o``).
            continuation: Token from a previous page (``c``).

        Returns:
            StreamPage with parsed articles and the next continuation token.
        """
        params: dict[str, str] = {"n": str(count), "output": "json"}
        if newer_than is not None:
            params["ot"] = str(int(newer_than))
        if exclude_read:
            params["xt"] = READ_TAG
        if oldest_first:
            params["r"] = "o"
        if continuation:
            params["c"] = continuation
        response = self._handle_response(
            self._client.get(
                f"/stream/contents/{quote(stream_id, safe='/')}", params=params
            )
        )
        data = response.json()
        return StreamPage(
            articles=[RemoteArticle.from_dict(item) for item in data.get("items", [])],
            continuation=data.get("continuation") or None,
        )

    # === Write operations ===

    def edit_tag(
        self,
        item_ids: Sequence[str],
        add: str | None = None,
        remove: str | None = None,
    ) -> EditTagResult:
        """Add and/or remove a tag on many items in one call.

        Args:
            item_ids: Remote item ids (``i``, repeated).
            add: Tag to add (``a``).
            remove: Tag to remove (``r``).
        """
        if not item_ids:
            raise ValueError("edit_tag requires at least one item id")
        form: dict[str, Any] = {"i": list(item_ids)}
        if add:
            form["a"] = add
        if remove:
            form["r"] = remove
        response = self._handle_response(self._client.post("/edit-tag", data=form))
        return EditTagResult.from_body(item_ids, response.text)

    def mark_all_as_read(self, stream_id: str, before_ts: float) -> None:
        """Mark every item of a stream older than ``before_ts`` as read.

        Args:
            stream_id: Feed, folder or reading-list stream id (``s``).
            before_ts: Unix time; sent in microseconds (``ts``).
        """
        self._handle_response(
            self._client.post(
                "/mark-all-as-read",
                data={"s": stream_id, "ts": str(int(before_ts * 1_000_000))},
            )
        )
