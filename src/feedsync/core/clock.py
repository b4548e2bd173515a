"""Clock abstraction.

All timestamps the sync engine compares or persists come from a single
injected clock owned by the local side, never from the remote service.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Source of the current time in unix seconds."""

    def now(self) -> float:
        ...


class SystemClock:
    """Wall-clock time from ``time.time()``."""

    def now(self) -> float:
        return time.time()
