"""Structured event emission for sync observability.

Components record what they did through an injected EventSink rather
than writing log files themselves:

    sink = MemoryEventSink()
    orchestrator = SyncOrchestrator(..., sink=sink)
    ...
    [e.name for e in sink.events]  # ["cycle_started", "batch_sent", ...]
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncEventRecord:
    """One observable sync event.

    Attributes:
        name: Event name (e.g. "batch_sent", "conflict").
        timestamp: Local clock time.
        run_id: Run the event belongs to, if any.
        data: Event-specific fields.
    """

    name: str
    timestamp: float
    run_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    """Receiver of sync events."""

    def record(self, event: SyncEventRecord) -> None:
        ...


class LoggingEventSink:
    """Emit events through the standard logging module."""

    def __init__(self, level: int = logging.DEBUG) -> None:
        self._level = level

    def record(self, event: SyncEventRecord) -> None:
        logger.log(
            self._level,
            "event=%s run=%s %s",
            event.name,
            event.run_id or "-",
            json.dumps(event.data, sort_keys=True, default=str),
        )


class MemoryEventSink:
    """Keep the most recent events in memory."""

    def __init__(self, max_events: int = 1000) -> None:
        self._events: deque[SyncEventRecord] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record(self, event: SyncEventRecord) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[SyncEventRecord]:
        with self._lock:
            return list(self._events)

    def named(self, name: str) -> list[SyncEventRecord]:
        """Events with the given name, oldest first."""
        return [e for e in self.events if e.name == name]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class JsonLinesEventSink:
    """Append events to a JSON-lines file, optionally filtered by name."""

    def __init__(self, path: Path, names: set[str] | None = None) -> None:
        self._path = Path(path)
        self._names = names
        self._lock = threading.Lock()

    def record(self, event: SyncEventRecord) -> None:
        if self._names is not None and event.name not in self._names:
            return
        line = json.dumps(asdict(event), sort_keys=True, default=str)
        try:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
        except OSError:
            logger.warning("Could not write event log %s", self._path, exc_info=True)


class FanOutEventSink:
    """Forward each event to several sinks."""

    def __init__(self, *sinks: EventSink) -> None:
        self._sinks = sinks

    def record(self, event: SyncEventRecord) -> None:
        for sink in self._sinks:
            sink.record(event)
