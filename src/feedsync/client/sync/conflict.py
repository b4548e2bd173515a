"""Conflict resolution for inbound remote records.

This module provides:
- ConflictResolver: Decides whether a pulled record may overwrite local state
- ConflictRecord, ConflictSummary: What was detected during a run

Rule:
    | Local article | local_update_ts vs watermark | Result                    |
    |---------------|------------------------------|---------------------------|
    | missing       | -                            | Insert remote record      |
    | present       | None (never edited locally)  | Overwrite from remote     |
    | present       | older than watermark         | Overwrite from remote     |
    | present       | at/after watermark, or no    | Preserve local state      |
    |               | watermark yet                |                           |
    | present, live | any (state differs)          | Preserve local state      |
    | queue entry   |                              |                           |

Both sides of the comparison come from the local clock. Remote timestamps
are never consulted here.

A live queue entry outranks the watermark: the change has not reached the
remote service yet, so the pulled record cannot reflect it.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from feedsync.client.sync.events import LoggingEventSink, SyncEventRecord

if TYPE_CHECKING:
    from feedsync.client.api import RemoteArticle
    from feedsync.client.store import Article, LocalStore
    from feedsync.client.sync.events import EventSink
    from feedsync.core.clock import Clock

logger = logging.getLogger(__name__)


class ResolveOutcome(str, Enum):
    """What happened to one inbound record."""

    INSERTED = "inserted"
    OVERWRITTEN = "overwritten"
    UNCHANGED = "unchanged"
    LOCAL_PRESERVED = "local_preserved"


class ConflictType(str, Enum):
    READ_STATUS = "read_status"
    STARRED_STATUS = "starred_status"
    BOTH = "both"


@dataclass
class ConflictRecord:
    """Local and remote state diverged for an article edited locally.

    Attributes:
        article_id: Local article id.
        remote_id: Remote item id.
        conflict_type: Which flags differ.
        local_read, local_starred: Local state before resolution.
        remote_read, remote_starred: Inbound state.
        resolution: "local" if the local state was kept, else "remote".
        local_update_ts: Last local mutation.
        watermark_ts: Watermark the mutation was compared against.
    """

    article_id: int
    remote_id: str
    conflict_type: ConflictType
    local_read: bool
    local_starred: bool
    remote_read: bool
    remote_starred: bool
    resolution: str
    local_update_ts: float | None
    watermark_ts: float | None

    def as_dict(self) -> dict[str, object]:
        return {
            "article_id": self.article_id,
            "remote_id": self.remote_id,
            "conflict_type": self.conflict_type.value,
            "local": {"read": self.local_read, "starred": self.local_starred},
            "remote": {"read": self.remote_read, "starred": self.remote_starred},
            "resolution": self.resolution,
            "local_update_ts": self.local_update_ts,
            "watermark_ts": self.watermark_ts,
        }


@dataclass
class Resolution:
    """Result of resolving one inbound record."""

    outcome: ResolveOutcome
    article: Article
    conflict: ConflictRecord | None = None


@dataclass
class ConflictSummary:
    """Per-run reconciliation tally."""

    inserted: int = 0
    overwritten: int = 0
    unchanged: int = 0
    preserved: int = 0
    read_conflicts: int = 0
    starred_conflicts: int = 0
    both_conflicts: int = 0
    resolved_local: int = 0
    resolved_remote: int = 0
    preserved_article_ids: list[int] = field(default_factory=list)

    @property
    def total_conflicts(self) -> int:
        return self.read_conflicts + self.starred_conflicts + self.both_conflicts

    def add(self, resolution: Resolution) -> None:
        if resolution.outcome is ResolveOutcome.INSERTED:
            self.inserted += 1
        elif resolution.outcome is ResolveOutcome.OVERWRITTEN:
            self.overwritten += 1
        elif resolution.outcome is ResolveOutcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.preserved += 1
            self.preserved_article_ids.append(resolution.article.id)

        conflict = resolution.conflict
        if conflict is None:
            return
        if conflict.conflict_type is ConflictType.BOTH:
            self.both_conflicts += 1
        elif conflict.conflict_type is ConflictType.READ_STATUS:
            self.read_conflicts += 1
        else:
            self.starred_conflicts += 1
        if conflict.resolution == "local":
            self.resolved_local += 1
        else:
            self.resolved_remote += 1


def local_change_wins(local_update_ts: float | None, watermark_ts: float | None) -> bool:
    """True if a local edit must be preserved against inbound state.

    Args:
        local_update_ts: Last local mutation of the article.
        watermark_ts: Start of the last successful sync (local clock).
    """
    if local_update_ts is None:
        return False
    if watermark_ts is None:
        # Never synced: any local edit is newer than anything the remote knows
        return True
    return local_update_ts >= watermark_ts


class ConflictResolver:
    """Applies inbound remote records subject to the local-edit rule."""

    def __init__(
        self,
        store: LocalStore,
        clock: Clock,
        sink: EventSink | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._sink = sink or LoggingEventSink()

    def resolve(
        self,
        remote: RemoteArticle,
        watermark_ts: float | None,
        sync_ts: float,
        run_id: str | None = None,
        local: Article | None = None,
        has_pending: bool = False,
    ) -> Resolution:
        """Apply one inbound record.

        Args:
            remote: Pulled record.
            watermark_ts: Conflict watermark for this run.
            sync_ts: Value stamped into ``sync_update_ts`` on write.
            run_id: Run id for conflict events.
            local: Pre-fetched local article (looked up if omitted).
            has_pending: The article has a live queue entry.

        Returns:
            Resolution describing the outcome.
        """
        if local is None:
            local = self._store.get_article_by_remote_id(remote.remote_id)
        if local is None:
            article = self._store.insert_article(remote, sync_ts)
            logger.debug("Inserted new article %s", remote.remote_id)
            return Resolution(outcome=ResolveOutcome.INSERTED, article=article)

        differs = local.is_read != remote.is_read or local.is_starred != remote.is_starred
        keep_local = (differs and has_pending) or local_change_wins(
            local.local_update_ts, watermark_ts
        )

        conflict = None
        if differs and local.local_update_ts is not None:
            conflict = self._record_conflict(
                local, remote, "local" if keep_local else "remote", watermark_ts, run_id
            )

        if keep_local:
            return Resolution(
                outcome=ResolveOutcome.LOCAL_PRESERVED, article=local, conflict=conflict
            )

        self._store.apply_sync_state(local.id, remote.is_read, remote.is_starred, sync_ts)
        local.is_read = remote.is_read
        local.is_starred = remote.is_starred
        local.sync_update_ts = sync_ts
        outcome = ResolveOutcome.OVERWRITTEN if differs else ResolveOutcome.UNCHANGED
        return Resolution(outcome=outcome, article=local, conflict=conflict)

    def resolve_all(
        self,
        articles: list[RemoteArticle],
        watermark_ts: float | None,
        sync_ts: float,
        run_id: str | None = None,
        pending_article_ids: Collection[int] = (),
    ) -> ConflictSummary:
        """Apply a pulled set and tally the outcomes.

        Args:
            articles: Pulled records in stream order.
            watermark_ts: Conflict watermark for this run.
            sync_ts: Value stamped into ``sync_update_ts`` on write.
            run_id: Run id for conflict events.
            pending_article_ids: Articles with live queue entries.
        """
        pending = set(pending_article_ids)
        summary = ConflictSummary()
        existing = self._store.get_articles_by_remote_ids(a.remote_id for a in articles)
        for remote in articles:
            local = existing.get(remote.remote_id)
            resolution = self.resolve(
                remote,
                watermark_ts,
                sync_ts,
                run_id,
                local=local,
                has_pending=local is not None and local.id in pending,
            )
            if resolution.outcome is ResolveOutcome.INSERTED:
                existing[remote.remote_id] = resolution.article
            summary.add(resolution)
        if summary.total_conflicts:
            logger.info(
                "Conflicts: %d total (%d kept local, %d took remote)",
                summary.total_conflicts,
                summary.resolved_local,
                summary.resolved_remote,
            )
        return summary

    def _record_conflict(
        self,
        local: Article,
        remote: RemoteArticle,
        resolution: str,
        watermark_ts: float | None,
        run_id: str | None,
    ) -> ConflictRecord:
        read_differs = local.is_read != remote.is_read
        starred_differs = local.is_starred != remote.is_starred
        if read_differs and starred_differs:
            conflict_type = ConflictType.BOTH
        elif read_differs:
            conflict_type = ConflictType.READ_STATUS
        else:
            conflict_type = ConflictType.STARRED_STATUS

        record = ConflictRecord(
            article_id=local.id,
            remote_id=local.remote_id,
            conflict_type=conflict_type,
            local_read=local.is_read,
            local_starred=local.is_starred,
            remote_read=remote.is_read,
            remote_starred=remote.is_starred,
            resolution=resolution,
            local_update_ts=local.local_update_ts,
            watermark_ts=watermark_ts,
        )
        logger.info(
            "Conflict on %s (%s): keeping %s state",
            local.remote_id,
            conflict_type.value,
            resolution,
        )
        self._sink.record(
            SyncEventRecord(
                name="conflict",
                timestamp=self._clock.now(),
                run_id=run_id,
                data=record.as_dict(),
            )
        )
        return record
