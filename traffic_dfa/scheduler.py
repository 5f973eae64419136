"""Single-shot, cancellable timers.

Durations are given in simulated seconds together with a speed factor;
the real delay is ``duration / speed_factor``.  Two clocks are provided:

  - ManualScheduler: logical time that only moves when ``advance()`` is
    called.  Used by the tests and the replay driver.
  - AsyncioScheduler: ``loop.call_later`` on a running event loop.  Used
    by the REST service.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable


class TimerHandle:
    """Returned by ``Scheduler.schedule``; pass it back to ``cancel``."""

    __slots__ = ("deadline", "speed_factor", "callback", "cancelled", "fired", "_native")

    def __init__(self, deadline: float, speed_factor: float, callback: Callable[[], None]) -> None:
        self.deadline = deadline
        self.speed_factor = speed_factor
        self.callback = callback
        self.cancelled = False
        self.fired = False
        self._native = None

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)


class Scheduler(ABC):
    @abstractmethod
    def now(self) -> float:
        """Current clock reading in real (unscaled) seconds."""

    @abstractmethod
    def timestamp(self) -> datetime:
        ...

    def schedule(
        self, duration: float, speed_factor: float, callback: Callable[[], None]
    ) -> TimerHandle:
        if speed_factor <= 0:
            raise ValueError("speed_factor must be positive")
        delay = max(0.0, duration) / speed_factor
        handle = TimerHandle(self.now() + delay, speed_factor, callback)
        self._arm(handle, delay)
        return handle

    def cancel(self, handle: TimerHandle | None) -> None:
        if handle is None or not handle.active:
            return
        handle.cancelled = True
        self._disarm(handle)

    def remaining(self, handle: TimerHandle) -> float:
        """Simulated seconds left before ``handle`` fires."""
        if not handle.active:
            return 0.0
        return max(0.0, handle.deadline - self.now()) * handle.speed_factor

    def _fire(self, handle: TimerHandle) -> None:
        if not handle.active:
            return
        handle.fired = True
        handle.callback()

    # Subclass hooks
    @abstractmethod
    def _arm(self, handle: TimerHandle, delay: float) -> None:
        ...

    def _disarm(self, handle: TimerHandle) -> None:
        pass


# ---------------------------------------------------------------------------
# Fake clock
# ---------------------------------------------------------------------------

_EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)

# Deadlines are sums of float delays; treat anything this close to the
# advance target as due.
_TOLERANCE = 1e-9


class ManualScheduler(Scheduler):
    """Deadline queue on a logical clock.

    Callbacks fire synchronously inside ``advance()``, in deadline order,
    with the clock set to each callback's deadline.  Timers armed by a
    callback fire in the same ``advance()`` call if they fall inside the
    window.
    """

    def __init__(self, start: float = 0.0, epoch: datetime = _EPOCH) -> None:
        self._now = float(start)
        self._epoch = epoch
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def timestamp(self) -> datetime:
        return self._epoch + timedelta(seconds=self._now)

    def _arm(self, handle: TimerHandle, delay: float) -> None:
        heapq.heappush(self._queue, (handle.deadline, next(self._seq), handle))

    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if h.active)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing every timer that falls due.

        Returns the number of callbacks fired.
        """
        if seconds < 0:
            raise ValueError("cannot move the clock backwards")
        target = self._now + seconds
        fired = 0
        while self._queue and self._queue[0][0] <= target + _TOLERANCE:
            deadline, _, handle = heapq.heappop(self._queue)
            if not handle.active:
                continue
            self._now = max(self._now, deadline)
            self._fire(handle)
            fired += 1
        self._now = max(self._now, target)
        return fired

    def run_until_idle(self, limit: int = 10_000) -> int:
        """Fire timers until none are left; ``limit`` guards endless chains."""
        fired = 0
        while fired < limit:
            live = [entry for entry in self._queue if entry[2].active]
            if not live:
                break
            fired += self.advance(max(0.0, min(e[0] for e in live) - self._now))
        return fired


# ---------------------------------------------------------------------------
# Event loop clock
# ---------------------------------------------------------------------------

class AsyncioScheduler(Scheduler):
    """Timers on an asyncio loop.  Must be used from the loop's thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self._loop.time()

    def timestamp(self) -> datetime:
        return datetime.now(timezone.utc)

    def _arm(self, handle: TimerHandle, delay: float) -> None:
        handle._native = self._loop.call_later(delay, self._fire, handle)

    def _disarm(self, handle: TimerHandle) -> None:
        if handle._native is not None:
            handle._native.cancel()
            handle._native = None
