"""Clock and timer abstraction.

Restart and timeout delays go through a Clock so they can be driven
deterministically in tests (see ``ManualClock``).
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections.abc import Callable
from typing import Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Time source plus non-blocking deferred callbacks."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    async def sleep(self, delay: float) -> None: ...


class LoopClock:
    """Clock backed by the running asyncio event loop."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


class _ManualTimer:
    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Clock that only moves when ``advance`` is called.

    Callbacks fire in deadline order from inside ``advance``. ``sleep``
    suspends until the clock has been advanced past its deadline.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._timers: list[tuple[float, int, _ManualTimer]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    @property
    def pending(self) -> int:
        """Number of scheduled, not yet fired or cancelled timers."""
        return sum(1 for _, _, t in self._timers if not t.cancelled)

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._timers, (timer.when, next(self._seq), timer))
        return timer

    async def sleep(self, delay: float) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not future.done():
                future.set_result(None)

        timer = self.call_later(delay, _wake)
        try:
            await future
        finally:
            timer.cancel()

    def advance(self, seconds: float) -> int:
        """Move time forward, firing due callbacks. Returns how many fired."""
        target = self._now + seconds
        fired = 0
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            self._now = when
            if timer.cancelled:
                continue
            timer.cancelled = True
            timer.callback()
            fired += 1
        self._now = target
        return fired
