"""Durable change queue for pending local state changes.

This module provides:
- ChangeQueue: SQLite-backed queue of read/unread/star/unstar changes

Collapsing rules (one live entry per article and axis):
    | Pending entry  | New action | Attempted? | Result                         |
    |----------------|------------|------------|--------------------------------|
    | none           | X          | -          | Insert X                       |
    | X              | X          | any        | Refresh X in place, attempts 0 |
    | X              | opposite   | no         | Delete entry (net no-op)       |
    | X              | opposite   | yes        | Replace with opposite, attempts 0 |

An attempted entry may already have been applied remotely before the
failure was reported, so its opposite is sent rather than cancelled.

Persistence:
    Attempt counts and timestamps live on the row itself, so retry state
    survives restarts without any in-memory bookkeeping.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from feedsync.client.sync.types import FailedEntry, QueueEntry
from feedsync.core.types import ActionAxis, ActionType, MarkAllScope

if TYPE_CHECKING:
    from feedsync.client.store import LocalStore
    from feedsync.core.clock import Clock

logger = logging.getLogger(__name__)

_PARAM_CHUNK = 500


def _chunks(items: list, size: int = _PARAM_CHUNK) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ChangeQueue:
    """Queue of local changes awaiting transmission.

    Attributes:
        store: Backing LocalStore (shares its connection and lock).
        clock: Source of ``created_at``/``last_attempt_at`` timestamps.
    """

    def __init__(self, store: LocalStore, clock: Clock) -> None:
        self._store = store
        self._clock = clock

    # === Mutations ===

    def enqueue(
        self,
        article_id: int,
        remote_id: str,
        action: ActionType,
    ) -> QueueEntry | None:
        """Record a local change, collapsing with any pending same-axis entry.

        Args:
            article_id: Local article id.
            remote_id: Remote item id.
            action: The change to transmit.

        Returns:
            The live entry, or None if the change cancelled a pending one.
        """
        action = ActionType(action)
        now = self._clock.now()
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE article_id = ? AND axis = ?",
                (article_id, action.axis.value),
            ).fetchone()

            if row is None:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_queue
                    (article_id, remote_id, action_type, axis, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (article_id, remote_id, action.value, action.axis.value, now),
                )
                entry_id = int(cursor.lastrowid or 0)
                logger.debug("Queued %s for article %d", action.value, article_id)
            else:
                existing = QueueEntry.from_row(row)
                entry_id = existing.id
                if existing.action_type is action.opposite and existing.attempt_count == 0:
                    conn.execute("DELETE FROM sync_queue WHERE id = ?", (existing.id,))
                    logger.debug(
                        "Cancelled pending %s for article %d with %s",
                        existing.action_type.value,
                        article_id,
                        action.value,
                    )
                    return None
                conn.execute(
                    """
                    UPDATE sync_queue
                    SET action_type = ?, remote_id = ?, created_at = ?,
                        attempt_count = 0, last_attempt_at = NULL, last_error = NULL
                    WHERE id = ?
                    """,
                    (action.value, remote_id, now, existing.id),
                )
                logger.debug(
                    "Replaced pending %s with %s for article %d",
                    existing.action_type.value,
                    action.value,
                    article_id,
                )
            return self._get(entry_id)

    def remove(self, ids: Iterable[int]) -> int:
        """Delete entries by id (after successful transmission).

        Returns:
            Number of entries removed.
        """
        id_list = list(ids)
        removed = 0
        with self._store.transaction() as conn:
            for chunk in _chunks(id_list):
                placeholders = ",".join("?" * len(chunk))
                cursor = conn.execute(
                    f"DELETE FROM sync_queue WHERE id IN ({placeholders})", chunk
                )
                removed += cursor.rowcount
        if removed:
            logger.debug("Removed %d queue entries", removed)
        return removed

    def mark_attempt(self, entry_id: int, error: str | None = None) -> QueueEntry | None:
        """Record a failed transmission attempt on an entry.

        Returns:
            The updated entry, or None if it no longer exists.
        """
        self._store.execute(
            """
            UPDATE sync_queue
            SET attempt_count = attempt_count + 1, last_attempt_at = ?, last_error = ?
            WHERE id = ?
            """,
            (self._clock.now(), error, entry_id),
        )
        return self._get(entry_id)

    def fail(self, entry_id: int, reason: str | None = None) -> FailedEntry | None:
        """Move an entry to the failed table.

        Returns:
            The failed record, or None if the entry no longer exists.
        """
        now = self._clock.now()
        with self._store.transaction() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,)).fetchone()
            if row is None:
                return None
            entry = QueueEntry.from_row(row)
            conn.execute(
                """
                INSERT OR REPLACE INTO failed_sync_entries
                (id, article_id, remote_id, action_type, created_at,
                 attempt_count, last_attempt_at, failed_at, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.article_id,
                    entry.remote_id,
                    entry.action_type.value,
                    entry.created_at,
                    entry.attempt_count,
                    entry.last_attempt_at,
                    now,
                    reason or entry.last_error,
                ),
            )
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
            failed_row = conn.execute(
                "SELECT * FROM failed_sync_entries WHERE id = ?", (entry_id,)
            ).fetchone()
        return FailedEntry.from_row(failed_row)

    def remove_for_remote_ids(
        self,
        remote_ids: Iterable[str],
        keep_article_ids: Iterable[int] = (),
    ) -> int:
        """Drop entries for items just observed in a pull.

        Args:
            remote_ids: Remote ids present in the pulled set.
            keep_article_ids: Articles whose local change must still be pushed.

        Returns:
            Number of entries removed.
        """
        keep = set(keep_article_ids)
        ids = list(dict.fromkeys(remote_ids))
        victims: list[int] = []
        for chunk in _chunks(ids):
            placeholders = ",".join("?" * len(chunk))
            rows = self._store.execute(
                f"SELECT id, article_id FROM sync_queue WHERE remote_id IN ({placeholders})",
                chunk,
            ).fetchall()
            victims.extend(row["id"] for row in rows if row["article_id"] not in keep)
        return self.remove(victims)

    def pending_article_ids(self, remote_ids: Iterable[str]) -> set[int]:
        """Local ids of articles among ``remote_ids`` with live entries."""
        found: set[int] = set()
        for chunk in _chunks(list(dict.fromkeys(remote_ids))):
            placeholders = ",".join("?" * len(chunk))
            rows = self._store.execute(
                f"SELECT DISTINCT article_id FROM sync_queue WHERE remote_id IN ({placeholders})",
                chunk,
            ).fetchall()
            found.update(row["article_id"] for row in rows)
        return found

    def remove_for_scope(self, scope: MarkAllScope) -> int:
        """Drop read/unread entries made redundant by a mark-all-as-read.

        Returns:
            Number of entries removed.
        """
        condition, params = self._store.scope_filter(scope)
        cursor = self._store.execute(
            f"""
            DELETE FROM sync_queue
            WHERE axis = ? AND article_id IN (SELECT id FROM articles WHERE {condition})
            """,
            [ActionAxis.READ.value, *params],
        )
        removed = cursor.rowcount
        if removed:
            logger.debug("Removed %d read-axis entries covered by %s", removed, scope)
        return removed

    # === Reads ===

    def drain(
        self,
        max_items: int | None = None,
        ready: Callable[[QueueEntry], bool] | None = None,
    ) -> list[QueueEntry]:
        """Return live entries oldest-first without removing them.

        Args:
            max_items: Cap on the number of entries returned.
            ready: Optional eligibility predicate applied before the cap.

        Returns:
            Entries ordered by ``created_at`` then id.
        """
        rows = self._store.execute(
            "SELECT * FROM sync_queue ORDER BY created_at ASC, id ASC"
        ).fetchall()
        entries: list[QueueEntry] = []
        for row in rows:
            entry = QueueEntry.from_row(row)
            if ready is not None and not ready(entry):
                continue
            entries.append(entry)
            if max_items is not None and len(entries) >= max_items:
                break
        return entries

    def _get(self, entry_id: int) -> QueueEntry | None:
        row = self._store.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,)).fetchone()
        return QueueEntry.from_row(row) if row else None

    def get_for_article(self, article_id: int, axis: ActionAxis) -> QueueEntry | None:
        """The live entry for an article on one axis, if any."""
        row = self._store.execute(
            "SELECT * FROM sync_queue WHERE article_id = ? AND axis = ?",
            (article_id, axis.value),
        ).fetchone()
        return QueueEntry.from_row(row) if row else None

    def pending_count(self) -> int:
        """Number of live entries."""
        return int(self._store.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0])

    def has_retries(self) -> bool:
        """True if any live entry has a failed attempt."""
        row = self._store.execute(
            "SELECT 1 FROM sync_queue WHERE attempt_count > 0 LIMIT 1"
        ).fetchone()
        return row is not None

    def oldest_created_at(self) -> float | None:
        """``created_at`` of the oldest live entry."""
        value = self._store.execute("SELECT MIN(created_at) FROM sync_queue").fetchone()[0]
        return float(value) if value is not None else None

    def __len__(self) -> int:
        return self.pending_count()

    def stats(self) -> dict[str, int]:
        """Get queue statistics.

        Returns:
            Dictionary with counts by action type plus retry and failed totals.
        """
        stats: dict[str, int] = {
            "total": 0,
            "read": 0,
            "unread": 0,
            "star": 0,
            "unstar": 0,
            "retrying": 0,
            "failed": 0,
        }
        rows = self._store.execute(
            "SELECT action_type, COUNT(*) AS n, SUM(attempt_count > 0) AS r "
            "FROM sync_queue GROUP BY action_type"
        ).fetchall()
        for row in rows:
            stats[row["action_type"]] = row["n"]
            stats["total"] += row["n"]
            stats["retrying"] += row["r"] or 0
        stats["failed"] = int(
            self._store.execute("SELECT COUNT(*) FROM failed_sync_entries").fetchone()[0]
        )
        return stats

    # === Failed entries ===

    def list_failed(self) -> list[FailedEntry]:
        """Entries abandoned after exhausting their retries, oldest first."""
        rows = self._store.execute(
            "SELECT * FROM failed_sync_entries ORDER BY failed_at ASC, id ASC"
        ).fetchall()
        return [FailedEntry.from_row(row) for row in rows]

    def requeue_failed(self, ids: Iterable[int] | None = None) -> int:
        """Put failed entries back through enqueue() with a fresh attempt count.

        A live entry on the same axis is newer intent and wins through the
        normal collapsing rules.

        Args:
            ids: Failed entry ids, or None for all of them.

        Returns:
            Number of failed records consumed.
        """
        failed = self.list_failed()
        if ids is not None:
            wanted = set(ids)
            failed = [f for f in failed if f.id in wanted]
        for record in failed:
            with self._store.transaction() as conn:
                conn.execute("DELETE FROM failed_sync_entries WHERE id = ?", (record.id,))
                live = self.get_for_article(record.article_id, record.action_type.axis)
                if live is None:
                    self.enqueue(record.article_id, record.remote_id, record.action_type)
            logger.info(
                "Requeued failed %s for article %d", record.action_type.value, record.article_id
            )
        return len(failed)

    def clear_failed(self) -> int:
        """Forget all failed entries.

        Returns:
            Number of records removed.
        """
        cursor = self._store.execute("DELETE FROM failed_sync_entries")
        logger.info("Cleared %d failed entries", cursor.rowcount)
        return cursor.rowcount
