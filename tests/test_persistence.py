"""Tests for the debounced point persistence scheduler."""
from __future__ import annotations

import pytest

from str_aux.sampling.persistence import PersistenceScheduler
from str_aux.sampling.types import SamplingPoint
from str_aux.scheduling import VirtualScheduler


def _point(symbol: str, bucket_end: float, mid: float = 100.0) -> SamplingPoint:
    return SamplingPoint(
        symbol=symbol,
        ts=bucket_end,
        mid=mid,
        best_bid=mid - 1.0,
        best_ask=mid + 1.0,
        spread=2.0,
        bid_volume=1.0,
        ask_volume=1.0,
        bucket_start=bucket_end - 5000.0,
        bucket_end=bucket_end,
    )


class RecordingWriter:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.written: list[SamplingPoint] = []
        self.fail_for = fail_for or set()

    async def persist(self, point: SamplingPoint) -> None:
        if point.symbol in self.fail_for:
            raise RuntimeError(f"cannot write {point.symbol}")
        self.written.append(point)


def test_enqueue_arms_a_single_timer() -> None:
    """Repeated enqueues share one debounce timer."""
    sched = VirtualScheduler()
    persistence = PersistenceScheduler(RecordingWriter(), sched, delay=5.0)
    persistence.enqueue(_point("BTCUSDT", 5000.0))
    persistence(_point("ETHUSDT", 5000.0))
    assert persistence.armed
    assert sched.pending == 1
    assert persistence.pending == 2


def test_negative_delay_rejected() -> None:
    """The debounce delay cannot be negative."""
    with pytest.raises(ValueError, match="delay"):
        PersistenceScheduler(RecordingWriter(), VirtualScheduler(), delay=-1.0)


@pytest.mark.asyncio
async def test_last_write_wins_per_bucket() -> None:
    """A second point for the same (symbol, bucket_end) replaces the first."""
    writer = RecordingWriter()
    persistence = PersistenceScheduler(writer, VirtualScheduler(), delay=5.0)
    persistence.enqueue(_point("BTCUSDT", 5000.0, mid=100.0))
    persistence.enqueue(_point("BTCUSDT", 5000.0, mid=101.0))

    assert await persistence.flush() == 1
    assert [p.mid for p in writer.written] == [101.0]
    assert not persistence.armed
    assert persistence.pending == 0


@pytest.mark.asyncio
async def test_timer_triggers_flush_on_running_loop() -> None:
    """Advancing past the delay schedules a flush task on the loop."""
    sched = VirtualScheduler()
    writer = RecordingWriter()
    persistence = PersistenceScheduler(writer, sched, delay=5.0)
    persistence.enqueue(_point("BTCUSDT", 5000.0))

    assert sched.advance(5.0) == 1
    await persistence.wait_idle()
    assert len(writer.written) == 1
    assert persistence.persisted_total == 1

    persistence.enqueue(_point("BTCUSDT", 10_000.0))
    assert persistence.armed


@pytest.mark.asyncio
async def test_one_failing_entry_does_not_abort_batch() -> None:
    """Write errors are counted and the rest of the batch is persisted."""
    writer = RecordingWriter(fail_for={"BADUSDT"})
    persistence = PersistenceScheduler(writer, VirtualScheduler(), delay=5.0)
    persistence.enqueue(_point("BADUSDT", 5000.0))
    persistence.enqueue(_point("BTCUSDT", 5000.0))
    persistence.enqueue(_point("ETHUSDT", 5000.0))

    assert await persistence.flush() == 2
    assert persistence.failed_total == 1
    assert {p.symbol for p in writer.written} == {"BTCUSDT", "ETHUSDT"}


@pytest.mark.asyncio
async def test_close_drains_pending_entries() -> None:
    """close() writes whatever is still pending and disarms the timer."""
    sched = VirtualScheduler()
    writer = RecordingWriter()
    persistence = PersistenceScheduler(writer, sched, delay=5.0)
    persistence.enqueue(_point("BTCUSDT", 5000.0))

    assert await persistence.close() == 1
    assert sched.pending == 0
    assert await persistence.close() == 0


def test_timer_outside_loop_keeps_entries_pending() -> None:
    """Without a running loop the fired timer leaves the batch queued."""
    sched = VirtualScheduler()
    persistence = PersistenceScheduler(RecordingWriter(), sched, delay=1.0)
    persistence.enqueue(_point("BTCUSDT", 5000.0))
    sched.advance(1.0)
    assert persistence.pending == 1
    assert not persistence.armed
