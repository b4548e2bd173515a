"""Core module - Shared configuration, clock and enums."""

from feedsync.core.clock import Clock, SystemClock
from feedsync.core.config import DEFAULT_BASE_URL, ServerConfig, SyncSettings
from feedsync.core.types import (
    READ_TAG,
    READING_LIST,
    STARRED_TAG,
    ActionAxis,
    ActionType,
    ErrorKind,
    MarkAllScope,
    OrchestratorState,
    RunStatus,
    ScopeKind,
    SyncMode,
    SyncTrigger,
)

__all__ = [
    # Clock
    "Clock",
    "SystemClock",
    # Config
    "DEFAULT_BASE_URL",
    "ServerConfig",
    "SyncSettings",
    # Types
    "READ_TAG",
    "READING_LIST",
    "STARRED_TAG",
    "ActionAxis",
    "ActionType",
    "ErrorKind",
    "MarkAllScope",
    "OrchestratorState",
    "RunStatus",
    "ScopeKind",
    "SyncMode",
    "SyncTrigger",
]
