"""
Clocks for lazily evaluated vesting and rolling windows.

The engine never schedules background timers: every call reads "now"
from an injected clock.

Usage:
    clock = SimClock(start=0)
    clock.advance(days=1)
    clock.time()                # 86400
"""

from __future__ import annotations

import time as _time

from liquidity_guard.constants import SECONDS_PER_DAY, SECONDS_PER_WEEK


class SystemClock:
    """Wall-clock time in whole Unix seconds."""

    def time(self) -> int:
        return int(_time.time())


class SimClock:
    """Deterministic simulated clock.

    Time only moves when explicitly advanced.
    """

    def __init__(self, start: int = 0):
        if start < 0:
            raise ValueError("SimClock start must be >= 0")
        self._current = int(start)

    def time(self) -> int:
        return self._current

    def advance(self, *, seconds: int = 0, hours: int = 0, days: int = 0, weeks: int = 0) -> None:
        """Advance simulated time. Negative deltas are rejected."""
        delta = seconds + hours * 3600 + days * SECONDS_PER_DAY + weeks * SECONDS_PER_WEEK
        if delta < 0:
            raise ValueError("Cannot advance by negative delta")
        self._current += int(delta)
