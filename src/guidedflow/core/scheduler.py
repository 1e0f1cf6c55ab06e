"""Clocks and cancellable delayed callbacks.

Coordinators never touch the event loop timer API directly; they ask a
`Scheduler` for `call_later` handles and timestamps. `LoopScheduler` is
backed by the running asyncio loop. `VirtualScheduler` keeps a logical clock
that only moves when `advance()` is called, which makes debounce windows and
autosave ticks testable without sleeping.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    def monotonic(self) -> float:
        """Seconds on a monotonic clock."""
        ...

    def now(self) -> datetime:
        """Aware UTC timestamp used to stamp results and drafts."""
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio loop."""

    def monotonic(self) -> float:
        return asyncio.get_running_loop().time()

    def now(self) -> datetime:
        return datetime.now(UTC)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(max(0.0, delay), callback)


class _VirtualTimer:
    __slots__ = ("when", "seq", "callback", "_cancelled")

    def __init__(self, when: float, seq: int, callback: Callable[[], None]) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self._cancelled = False

    def __lt__(self, other: _VirtualTimer) -> bool:
        return (self.when, self.seq) < (other.when, other.seq)

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class VirtualScheduler:
    """Logical clock for tests.

    Example:
        sched = VirtualScheduler()
        sched.call_later(1.0, fired.append)
        sched.advance(0.5)   # nothing
        sched.advance(0.5)   # callback runs
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._origin = start or datetime(2024, 1, 1, tzinfo=UTC)
        self._time = 0.0
        self._seq = itertools.count()
        self._queue: list[_VirtualTimer] = []

    def monotonic(self) -> float:
        return self._time

    def now(self) -> datetime:
        return self._origin + timedelta(seconds=self._time)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _VirtualTimer(self._time + max(0.0, delay), next(self._seq), callback)
        heapq.heappush(self._queue, timer)
        return timer

    def pending(self) -> int:
        return sum(1 for t in self._queue if not t.cancelled())

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due callbacks in order.

        Returns the number of callbacks fired.
        """
        target = self._time + seconds
        fired = 0
        while self._queue and self._queue[0].when <= target:
            timer = heapq.heappop(self._queue)
            if timer.cancelled():
                continue
            self._time = timer.when
            timer.callback()
            fired += 1
        self._time = target
        return fired

    def tick(self, seconds: float = 0.001) -> None:
        """Advance the clock without requiring any timer to fire."""
        self.advance(seconds)
