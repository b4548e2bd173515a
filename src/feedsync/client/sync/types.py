"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and subclasses: Errors classified by ErrorKind
- QueueEntry, FailedEntry: Change queue records
- SyncCounts, SyncRun: Per-cycle bookkeeping exposed for status polling
- ActionBatchResult, PullResult, DispatchResult: Component results
"""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

from feedsync.core.types import (
    ActionType,
    ErrorKind,
    RunStatus,
    SyncMode,
    SyncTrigger,
)

# =============================================================================
# Errors
# =============================================================================


class SyncError(Exception):
    """Base exception for sync errors.

    Attributes:
        kind: Machine-readable classification.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def retryable(self) -> bool:
        """True for failures the Retry Manager should handle."""
        return self.kind in (
            ErrorKind.NETWORK_ERROR,
            ErrorKind.TIMEOUT,
            ErrorKind.PARTIAL_FAILURE,
        )

    @property
    def halts_cycle(self) -> bool:
        """True for failures that must stop every further remote call."""
        return self.kind in (ErrorKind.RATE_LIMIT, ErrorKind.AUTH_EXPIRED)


class RateLimitError(SyncError):
    """Daily quota exhausted; nothing was sent."""

    kind = ErrorKind.RATE_LIMIT


class NetworkError(SyncError):
    """Transient transport or server failure."""

    kind = ErrorKind.NETWORK_ERROR


class SyncTimeoutError(SyncError):
    """A request or the whole run exceeded its time budget."""

    kind = ErrorKind.TIMEOUT


class AuthExpiredError(SyncError):
    """Credential rejected even after one refresh."""

    kind = ErrorKind.AUTH_EXPIRED


class PartialFailureError(SyncError):
    """Some ids of a batch were rejected."""

    kind = ErrorKind.PARTIAL_FAILURE

    def __init__(self, message: str, rejected_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.rejected_ids = rejected_ids or []


class InternalSyncError(SyncError):
    """Unexpected local fault (store error, bug)."""

    kind = ErrorKind.INTERNAL


# =============================================================================
# Change queue records
# =============================================================================


@dataclass
class QueueEntry:
    """A pending local change awaiting transmission.

    Attributes:
        id: Queue entry id.
        article_id: Local article id.
        remote_id: Remote item id the action applies to.
        action_type: read, unread, star or unstar.
        created_at: When the entry was (re)queued.
        attempt_count: Failed transmission attempts so far.
        last_attempt_at: Time of the last failed attempt.
        last_error: Reason of the last failed attempt.
    """

    id: int
    article_id: int
    remote_id: str
    action_type: ActionType
    created_at: float
    attempt_count: int = 0
    last_attempt_at: float | None = None
    last_error: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> QueueEntry:
        """Create QueueEntry from database row."""
        return cls(
            id=row["id"],
            article_id=row["article_id"],
            remote_id=row["remote_id"],
            action_type=ActionType(row["action_type"]),
            created_at=row["created_at"],
            attempt_count=row["attempt_count"],
            last_attempt_at=row["last_attempt_at"],
            last_error=row["last_error"],
        )


@dataclass
class FailedEntry:
    """A queue entry abandoned after exhausting its retries."""

    id: int
    article_id: int
    remote_id: str
    action_type: ActionType
    created_at: float
    attempt_count: int
    last_attempt_at: float | None
    failed_at: float
    last_error: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FailedEntry:
        """Create FailedEntry from database row."""
        return cls(
            id=row["id"],
            article_id=row["article_id"],
            remote_id=row["remote_id"],
            action_type=ActionType(row["action_type"]),
            created_at=row["created_at"],
            attempt_count=row["attempt_count"],
            last_attempt_at=row["last_attempt_at"],
            failed_at=row["failed_at"],
            last_error=row["last_error"],
        )


# =============================================================================
# Runs
# =============================================================================


@dataclass
class SyncCounts:
    """Per-run counters."""

    fetched: int = 0
    new: int = 0
    updated: int = 0
    conflicts: int = 0
    failed: int = 0
    pushed: int = 0


@dataclass
class SyncRun:
    """One sync cycle, as seen by the presentation layer.

    Attributes:
        id: Run id.
        trigger: manual or scheduled.
        status: pending, running, completed, failed or skipped.
        started_at: When the run started (local clock).
        completed_at: When the run finished.
        mode: Pull mode chosen, once determined.
        counts: Fetched/new/updated/conflicts/failed/pushed counters.
        error_kind: Failure classification when status is failed.
        error_message: Human-readable failure or skip reason.
    """

    trigger: SyncTrigger
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.PENDING
    started_at: float | None = None
    completed_at: float | None = None
    mode: SyncMode | None = None
    counts: SyncCounts = field(default_factory=SyncCounts)
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.SKIPPED)

    def fail(self, error: SyncError, now: float) -> None:
        """Finalize the run as failed."""
        self.status = RunStatus.FAILED
        self.error_kind = error.kind
        self.error_message = error.message
        self.completed_at = now

    def to_dict(self) -> dict[str, Any]:
        """Plain representation for status polling."""
        data = asdict(self)
        data["trigger"] = self.trigger.value
        data["status"] = self.status.value
        data["mode"] = self.mode.value if self.mode else None
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        return data


# =============================================================================
# Component results
# =============================================================================


@dataclass
class ActionBatchResult:
    """Outcome of one batched remote action call."""

    action: ActionType
    accepted: list[str]
    rejected: list[str] = field(default_factory=list)


@dataclass
class PullResult:
    """Articles retrieved by one cycle's pull."""

    articles: list[Any]
    truncated: bool = False
    calls: int = 0

    @property
    def newest_crawl_ts(self) -> float | None:
        stamps = [a.crawl_ts for a in self.articles if a.crawl_ts is not None]
        return max(stamps) if stamps else None


@dataclass
class DispatchResult:
    """Outcome of draining the change queue once.

    Attributes:
        sent: Entries confirmed by the remote service and removed.
        retrying: Entries that failed and remain queued for retry.
        abandoned: Entries moved to the failed table.
        calls: Remote calls issued.
        halted_by: Error that stopped the dispatch early, if any.
    """

    sent: int = 0
    retrying: int = 0
    abandoned: int = 0
    calls: int = 0
    halted_by: SyncError | None = None
