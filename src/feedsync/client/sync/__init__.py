"""Bidirectional sync engine.

Architecture:
    SyncScheduler → SyncOrchestrator → BatchDispatcher / RemoteSyncClient → ConflictResolver

Components:
- **ChangeQueue**: Durable, collapsing queue of local read/star changes
- **SyncMetadataStore**: Watermarks and the daily call counter
- **RetryManager**: Persisted attempt counts and exponential backoff
- **BatchDispatcher**: Groups queued changes by action, one remote call per batch
- **RemoteSyncClient**: The only path to the remote service; enforces the daily quota
- **ConflictResolver**: Decides whether pulled state may overwrite local state
- **SyncOrchestrator**: Push, choose mode, pull, reconcile, advance watermarks
- **SyncScheduler**: Periodic and manual triggers, gating and coalescing

All public symbols are re-exported here.
"""

from feedsync.client.sync.conflict import (
    ConflictRecord,
    ConflictResolver,
    ConflictSummary,
    ConflictType,
    Resolution,
    ResolveOutcome,
)
from feedsync.client.sync.dispatcher import BatchDispatcher
from feedsync.client.sync.events import (
    EventSink,
    FanOutEventSink,
    JsonLinesEventSink,
    LoggingEventSink,
    MemoryEventSink,
    SyncEventRecord,
)
from feedsync.client.sync.metadata import SyncMetadataStore
from feedsync.client.sync.orchestrator import SyncOrchestrator
from feedsync.client.sync.queue import ChangeQueue
from feedsync.client.sync.remote import RemoteSyncClient, TokenProvider
from feedsync.client.sync.retry import (
    DEFAULT_BASE_BACKOFF,
    DEFAULT_MAX_RETRIES,
    RetryManager,
    RetryOutcome,
)
from feedsync.client.sync.scheduler import SchedulingDecision, SyncScheduler
from feedsync.client.sync.types import (
    ActionBatchResult,
    AuthExpiredError,
    DispatchResult,
    FailedEntry,
    InternalSyncError,
    NetworkError,
    PartialFailureError,
    PullResult,
    QueueEntry,
    RateLimitError,
    SyncCounts,
    SyncError,
    SyncRun,
    SyncTimeoutError,
)

__all__ = [
    # Components
    "BatchDispatcher",
    "ChangeQueue",
    "ConflictResolver",
    "RemoteSyncClient",
    "RetryManager",
    "SyncMetadataStore",
    "SyncOrchestrator",
    "SyncScheduler",
    "TokenProvider",
    # Conflicts
    "ConflictRecord",
    "ConflictSummary",
    "ConflictType",
    "Resolution",
    "ResolveOutcome",
    # Events
    "EventSink",
    "FanOutEventSink",
    "JsonLinesEventSink",
    "LoggingEventSink",
    "MemoryEventSink",
    "SyncEventRecord",
    # Retry
    "DEFAULT_BASE_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "RetryOutcome",
    # Scheduling
    "SchedulingDecision",
    # Types
    "ActionBatchResult",
    "DispatchResult",
    "FailedEntry",
    "PullResult",
    "QueueEntry",
    "SyncCounts",
    "SyncRun",
    # Errors
    "AuthExpiredError",
    "InternalSyncError",
    "NetworkError",
    "PartialFailureError",
    "RateLimitError",
    "SyncError",
    "SyncTimeoutError",
]
