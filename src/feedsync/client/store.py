"""Local persistent store for feedsync.

This module provides:
- LocalStore: SQLite-backed store for articles, feeds, the change queue
  and sync metadata
- Article: Local view of an article's sync-relevant state

Write ownership:
    ``local_update_ts`` is only written by apply_local_action() and
    mark_scope_read() (user mutations). ``sync_update_ts`` is only written
    by insert_article() and apply_sync_state() (inbound sync). Keeping the
    two columns apart is what makes conflict resolution decidable.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from feedsync.core.types import ActionAxis, ActionType, MarkAllScope, ScopeKind

if TYPE_CHECKING:
    from feedsync.client.api import RemoteArticle, Subscription

logger = logging.getLogger(__name__)


class ArticleNotFoundError(LookupError):
    """No local article with the given id."""


@dataclass
class Article:
    """Sync-relevant state of a local article.

    Attributes:
        id: Local article id.
        remote_id: Remote item id.
        feed_id: Remote feed stream id.
        title: Article title.
        url: Article link.
        published_at: Publication time (unix seconds).
        is_read: Read flag.
        is_starred: Starred flag.
        local_update_ts: Last local user mutation (local clock).
        sync_update_ts: Last inbound sync write (local clock).
    """

    id: int
    remote_id: str
    feed_id: str | None
    title: str
    url: str | None
    published_at: float | None
    is_read: bool
    is_starred: bool
    local_update_ts: float | None
    sync_update_ts: float | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Article:
        """Create Article from database row."""
        return cls(
            id=row["id"],
            remote_id=row["remote_id"],
            feed_id=row["feed_id"],
            title=row["title"],
            url=row["url"],
            published_at=row["published_at"],
            is_read=bool(row["is_read"]),
            is_starred=bool(row["is_starred"]),
            local_update_ts=row["local_update_ts"],
            sync_update_ts=row["sync_update_ts"],
        )


class LocalStore:
    """SQLite-based local store.

    Single connection in autocommit mode guarded by an RLock. Multi-statement
    updates go through transaction().
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize local store database.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS articles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                remote_id TEXT NOT NULL UNIQUE,
                feed_id TEXT,
                title TEXT NOT NULL DEFAULT '',
                url TEXT,
                published_at REAL,
                is_read INTEGER NOT NULL DEFAULT 0,
                is_starred INTEGER NOT NULL DEFAULT 0,
                local_update_ts REAL,
                sync_update_ts REAL
            );
            CREATE INDEX IF NOT EXISTS idx_articles_feed ON articles(feed_id);

            CREATE TABLE IF NOT EXISTS feeds (
                feed_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                url TEXT,
                folders TEXT NOT NULL DEFAULT '[]'
            );

            -- Pending local changes, at most one per (article, axis)
            CREATE TABLE IF NOT EXISTS sync_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                article_id INTEGER NOT NULL,
                remote_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                axis TEXT NOT NULL,
                created_at REAL NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                last_attempt_at REAL,
                last_error TEXT,
                UNIQUE (article_id, axis)
            );
            CREATE INDEX IF NOT EXISTS idx_sync_queue_created ON sync_queue(created_at);

            -- Entries that exhausted their retries
            CREATE TABLE IF NOT EXISTS failed_sync_entries (
                id INTEGER PRIMARY KEY,
                article_id INTEGER NOT NULL,
                remote_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                created_at REAL NOT NULL,
                attempt_count INTEGER NOT NULL,
                last_attempt_at REAL,
                failed_at REAL NOT NULL,
                last_error TEXT
            );

            -- Key-value sync metadata
            CREATE TABLE IF NOT EXISTS sync_metadata (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several statements atomically.

        Nested use joins the outer transaction.
        """
        with self._lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        """Execute one statement under the store lock."""
        with self._lock:
            return self._conn.execute(sql, tuple(params))

    # === Article reads ===

    def get_article(self, article_id: int) -> Article | None:
        """Get an article by local id."""
        row = self.execute("SELECT * FROM articles WHERE id = ?", (article_id,)).fetchone()
        return Article.from_row(row) if row else None

    def get_article_by_remote_id(self, remote_id: str) -> Article | None:
        """Get an article by remote id."""
        row = self.execute(
            "SELECT * FROM articles WHERE remote_id = ?", (remote_id,)
        ).fetchone()
        return Article.from_row(row) if row else None

    def get_articles_by_remote_ids(self, remote_ids: Iterable[str]) -> dict[str, Article]:
        """Get many articles keyed by remote id."""
        ids = list(dict.fromkeys(remote_ids))
        found: dict[str, Article] = {}
        # Stay under SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ",".join("?" * len(chunk))
            rows = self.execute(
                f"SELECT * FROM articles WHERE remote_id IN ({placeholders})", chunk
            ).fetchall()
            for row in rows:
                found[row["remote_id"]] = Article.from_row(row)
        return found

    def list_articles(self, feed_id: str | None = None) -> list[Article]:
        """List articles, optionally for one feed."""
        if feed_id is None:
            rows = self.execute("SELECT * FROM articles ORDER BY id").fetchall()
        else:
            rows = self.execute(
                "SELECT * FROM articles WHERE feed_id = ? ORDER BY id", (feed_id,)
            ).fetchall()
        return [Article.from_row(row) for row in rows]

    # === Article writes ===

    def insert_article(self, remote: RemoteArticle, sync_ts: float) -> Article:
        """Insert an article first seen in a pull."""
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO articles (
                    remote_id, feed_id, title, url, published_at,
                    is_read, is_starred, local_update_ts, sync_update_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?)
                """,
                (
                    remote.remote_id,
                    remote.feed_id,
                    remote.title,
                    remote.url,
                    remote.published_at,
                    int(remote.is_read),
                    int(remote.is_starred),
                    sync_ts,
                ),
            )
            article = self.get_article(int(cursor.lastrowid or 0))
        assert article is not None
        return article

    def apply_local_action(self, article_id: int, action: ActionType, ts: float) -> Article:
        """Apply a user action to an article and stamp ``local_update_ts``.

        Raises:
            ArticleNotFoundError: If the article does not exist.
        """
        column = "is_read" if action.axis is ActionAxis.READ else "is_starred"
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE articles SET {column} = ?, local_update_ts = ? WHERE id = ?",
                (int(action.value_on_axis), ts, article_id),
            )
            if cursor.rowcount == 0:
                raise ArticleNotFoundError(f"Article {article_id} not found")
            article = self.get_article(article_id)
        assert article is not None
        return article

    def apply_sync_state(
        self,
        article_id: int,
        is_read: bool,
        is_starred: bool,
        sync_ts: float,
    ) -> None:
        """Overwrite state from an inbound record and stamp ``sync_update_ts``."""
        self.execute(
            "UPDATE articles SET is_read = ?, is_starred = ?, sync_update_ts = ? WHERE id = ?",
            (int(is_read), int(is_starred), sync_ts, article_id),
        )

    # === Scopes ===

    def scope_filter(self, scope: MarkAllScope) -> tuple[str, list[Any]]:
        """SQL condition on ``articles`` matching a mark-all scope."""
        if scope.kind is ScopeKind.GLOBAL:
            return "1 = 1", []
        if scope.kind is ScopeKind.FEED:
            return "feed_id = ?", [scope.value]
        return (
            "feed_id IN (SELECT feeds.feed_id FROM feeds, json_each(feeds.folders) "
            "WHERE json_each.value = ?)",
            [scope.value],
        )

    def article_ids_in_scope(self, scope: MarkAllScope, unread_only: bool = False) -> list[int]:
        """Local ids of the articles a scope covers."""
        condition, params = self.scope_filter(scope)
        if unread_only:
            condition = f"({condition}) AND is_read = 0"
        rows = self.execute(
            f"SELECT id FROM articles WHERE {condition} ORDER BY id", params
        ).fetchall()
        return [row["id"] for row in rows]

    def mark_scope_read(self, scope: MarkAllScope, ts: float) -> list[int]:
        """Mark every unread article in scope read as a local mutation.

        Returns:
            Ids of the articles that changed.
        """
        with self.transaction() as conn:
            ids = self.article_ids_in_scope(scope, unread_only=True)
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                placeholders = ",".join("?" * len(chunk))
                conn.execute(
                    f"UPDATE articles SET is_read = 1, local_update_ts = ? "
                    f"WHERE id IN ({placeholders})",
                    [ts, *chunk],
                )
        logger.debug("Marked %d articles read locally in scope %s", len(ids), scope)
        return ids

    # === Feeds ===

    def upsert_feeds(self, subscriptions: Iterable[Subscription]) -> int:
        """Insert or refresh feeds and their folder labels."""
        count = 0
        with self.transaction() as conn:
            for sub in subscriptions:
                conn.execute(
                    "INSERT OR REPLACE INTO feeds (feed_id, title, url, folders) "
                    "VALUES (?, ?, ?, ?)",
                    (sub.id, sub.title, sub.url, json.dumps(sub.folders)),
                )
                count += 1
        return count

    def feed_folders(self, feed_id: str) -> list[str]:
        """Folder labels of a feed (empty if unknown)."""
        row = self.execute("SELECT folders FROM feeds WHERE feed_id = ?", (feed_id,)).fetchone()
        return list(json.loads(row["folders"])) if row else []
