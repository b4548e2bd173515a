"""Shared types for feedsync.

This module defines the enums used across the local store, the sync
engine and the presentation entry points.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

READ_TAG = "user/-/state/com.google/read"
STARRED_TAG = "user/-/state/com.google/starred"
READING_LIST = "user/-/state/com.google/reading-list"
LABEL_PREFIX = "user/-/label/"


class ActionAxis(str, Enum):
    """Independent state axes of an article."""

    READ = "read"
    STAR = "star"


class ActionType(str, Enum):
    """A local state change that must be mirrored remotely."""

    READ = "read"
    UNREAD = "unread"
    STAR = "star"
    UNSTAR = "unstar"

    @property
    def axis(self) -> ActionAxis:
        """Axis this action mutates (read/unread share one, star/unstar another)."""
        if self in (ActionType.READ, ActionType.UNREAD):
            return ActionAxis.READ
        return ActionAxis.STAR

    @property
    def opposite(self) -> ActionType:
        """The action that cancels this one."""
        return _OPPOSITES[self]

    @property
    def value_on_axis(self) -> bool:
        """Flag value this action sets (True for read/star)."""
        return self in (ActionType.READ, ActionType.STAR)

    @property
    def tag(self) -> str:
        """Remote state tag this action adds or removes."""
        return READ_TAG if self.axis is ActionAxis.READ else STARRED_TAG

    @property
    def adds_tag(self) -> bool:
        """True if the remote call adds the tag, False if it removes it."""
        return self.value_on_axis


_OPPOSITES = {
    ActionType.READ: ActionType.UNREAD,
    ActionType.UNREAD: ActionType.READ,
    ActionType.STAR: ActionType.UNSTAR,
    ActionType.UNSTAR: ActionType.STAR,
}


class ErrorKind(str, Enum):
    """Machine-readable failure kinds surfaced on a SyncRun."""

    RATE_LIMIT = "rate_limit"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    AUTH_EXPIRED = "auth_expired"
    PARTIAL_FAILURE = "partial_failure"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class SyncTrigger(str, Enum):
    """What started a sync cycle."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"


class SyncMode(str, Enum):
    """Pull mode chosen for a run."""

    INCREMENTAL = "incremental"
    FULL = "full"


class RunStatus(str, Enum):
    """Lifecycle status of a SyncRun."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class OrchestratorState(str, Enum):
    """States of the orchestrator state machine."""

    IDLE = "idle"
    DETERMINING_MODE = "determining_mode"
    PULLING = "pulling"
    RECONCILING = "reconciling"
    UPDATING_WATERMARKS = "updating_watermarks"
    FAILED = "failed"


class ScopeKind(str, Enum):
    """Granularity of a mark-all-as-read request."""

    FEED = "feed"
    FOLDER = "folder"
    GLOBAL = "global"


@dataclass(frozen=True)
class MarkAllScope:
    """Target of a mark-all-as-read request.

    Attributes:
        kind: Feed, folder or global.
        value: Feed stream id (``feed/...``) or folder label; unused for global.
    """

    kind: ScopeKind
    value: str | None = None

    def __post_init__(self) -> None:
        if self.kind is not ScopeKind.GLOBAL and not self.value:
            raise ValueError(f"{self.kind.value} scope requires a value")

    @classmethod
    def everything(cls) -> MarkAllScope:
        return cls(ScopeKind.GLOBAL)

    @classmethod
    def feed(cls, feed_id: str) -> MarkAllScope:
        return cls(ScopeKind.FEED, feed_id)

    @classmethod
    def folder(cls, label: str) -> MarkAllScope:
        return cls(ScopeKind.FOLDER, label)

    @property
    def stream_id(self) -> str:
        """Remote stream id addressed by this scope."""
        if self.kind is ScopeKind.GLOBAL:
            return READING_LIST
        if self.kind is ScopeKind.FOLDER:
            return f"{LABEL_PREFIX}{self.value}"
        return str(self.value)

    def __str__(self) -> str:
        if self.kind is ScopeKind.GLOBAL:
            return "global"
        return f"{self.kind.value}:{self.value}"
