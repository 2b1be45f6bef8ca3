"""Timer scheduling used by bucket flushes and the persistence debounce.

Components never call ``asyncio`` timers directly; they receive a
``Scheduler`` so tests can drive time with ``VirtualScheduler``::

    sched = VirtualScheduler()
    handle = sched.schedule(5.0, flush)
    sched.advance(5.0)  # flush() runs here
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import Callable
from typing import Protocol

logger: logging.Logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    """Minimal timer interface: ``schedule(delay, fn)`` plus a clock."""

    def schedule(self, delay: float, fn: Callable[[], None]) -> TimerHandle: ...

    def now(self) -> float: ...


# ──────────────────────────────────────────────────────────────────────
# asyncio-backed scheduler
# ──────────────────────────────────────────────────────────────────────


class _AsyncioTimer:
    __slots__ = ("_handle",)

    def __init__(self, handle: asyncio.TimerHandle) -> None:
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self._handle.cancelled()


class AsyncioScheduler:
    """Schedules callbacks on a running event loop via ``call_later``.

    Callback exceptions are logged and swallowed so a failing flush never
    tears down the loop.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(self, delay: float, fn: Callable[[], None]) -> _AsyncioTimer:
        if delay < 0.0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        return _AsyncioTimer(self._get_loop().call_later(delay, _run_guarded, fn))

    def now(self) -> float:
        return time.time()


def _run_guarded(fn: Callable[[], None]) -> None:
    try:
        fn()
    except Exception:
        logger.exception("Scheduled callback %r failed", fn)


# ──────────────────────────────────────────────────────────────────────
# Virtual clock scheduler
# ──────────────────────────────────────────────────────────────────────


class VirtualTimer:
    __slots__ = ("due", "seq", "fn", "_cancelled")

    def __init__(self, due: float, seq: int, fn: Callable[[], None]) -> None:
        self.due = due
        self.seq = seq
        self.fn = fn
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __lt__(self, other: VirtualTimer) -> bool:
        return (self.due, self.seq) < (other.due, other.seq)


class VirtualScheduler:
    """Deterministic scheduler driven by ``advance()``.

    Timers fire in (due time, registration order). Callbacks scheduled by a
    firing callback run in the same ``advance`` call when they fall due
    within the advanced span.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._queue: list[VirtualTimer] = []
        self._seq = itertools.count()

    def schedule(self, delay: float, fn: Callable[[], None]) -> VirtualTimer:
        if delay < 0.0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        timer = VirtualTimer(self._now + delay, next(self._seq), fn)
        heapq.heappush(self._queue, timer)
        return timer

    def now(self) -> float:
        return self._now

    @property
    def pending(self) -> int:
        """Number of timers that are scheduled and not cancelled."""
        return sum(1 for t in self._queue if not t.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward and run every timer that falls due.

        Args:
            seconds: Non-negative span to advance.

        Returns:
            Number of callbacks executed.
        """
        if seconds < 0.0:
            raise ValueError(f"cannot advance by a negative span ({seconds})")
        target = self._now + seconds
        fired = 0
        while self._queue and self._queue[0].due <= target:
            timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = timer.due
            timer.fn()
            fired += 1
        self._now = target
        return fired
