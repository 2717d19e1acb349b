"""
Injectable clocks for RecoCore.

Components that reason about expiry (leases, ledger retention, cache TTL)
read time through a Clock so tests can drive time explicitly. Durable
backends use the database clock instead (see storage.SQLITE_NOW_MS).

Invariants:
    - now_ms() is milliseconds since the Unix epoch
    - ManualClock never moves unless told to
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Source of wall-clock time in milliseconds."""

    def now_ms(self) -> int: ...


class SystemClock:
    """Clock backed by time.time()."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Clock that only advances when told to (testing helper).

    Example:
        >>> clock = ManualClock(start_ms=1_000)
        >>> clock.advance(500)
        >>> clock.now_ms()
        1500
    """

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = start_ms

    def now_ms(self) -> int:
        return self._now

    def advance(self, delta_ms: int) -> None:
        self._now += delta_ms

    def set(self, now_ms: int) -> None:
        self._now = now_ms
