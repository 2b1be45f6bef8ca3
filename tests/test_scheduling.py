"""Tests for the virtual and asyncio schedulers."""
from __future__ import annotations

import asyncio

import pytest

from str_aux.scheduling import AsyncioScheduler, VirtualScheduler


def test_virtual_timers_fire_in_due_then_registration_order() -> None:
    """Equal due times keep registration order."""
    sched = VirtualScheduler(start=10.0)
    fired: list[str] = []
    sched.schedule(2.0, lambda: fired.append("b"))
    sched.schedule(1.0, lambda: fired.append("a"))
    sched.schedule(2.0, lambda: fired.append("c"))

    assert sched.advance(1.5) == 1
    assert sched.now() == 11.5
    assert sched.advance(1.0) == 2
    assert fired == ["a", "b", "c"]
    assert sched.now() == 12.5


def test_cancelled_timers_do_not_fire() -> None:
    """Cancelled handles are skipped and not counted as pending."""
    sched = VirtualScheduler()
    fired: list[int] = []
    handle = sched.schedule(1.0, lambda: fired.append(1))
    handle.cancel()
    assert handle.cancelled
    assert sched.pending == 0
    assert sched.advance(5.0) == 0
    assert fired == []


def test_callbacks_can_schedule_within_the_same_advance() -> None:
    """A timer armed by a firing callback runs if it falls due in the span."""
    sched = VirtualScheduler()
    fired: list[float] = []

    def first() -> None:
        fired.append(sched.now())
        sched.schedule(1.0, lambda: fired.append(sched.now()))

    sched.schedule(1.0, first)
    assert sched.advance(3.0) == 2
    assert fired == [1.0, 2.0]


def test_negative_spans_rejected() -> None:
    """Negative delays and advances are errors."""
    sched = VirtualScheduler()
    with pytest.raises(ValueError):
        sched.schedule(-1.0, lambda: None)
    with pytest.raises(ValueError):
        sched.advance(-1.0)


@pytest.mark.asyncio
async def test_asyncio_scheduler_runs_and_guards_callbacks() -> None:
    """call_later callbacks run; a raising callback is logged, not propagated."""
    sched = AsyncioScheduler()
    done = asyncio.Event()

    def boom() -> None:
        raise RuntimeError("boom")

    sched.schedule(0.0, boom)
    sched.schedule(0.01, done.set)
    await asyncio.wait_for(done.wait(), timeout=1.0)

    handle = sched.schedule(10.0, lambda: None)
    handle.cancel()
    assert handle.cancelled
    assert sched.now() > 0.0
