"""Fixed-width time bucketing of order-book ticks into ``SamplingPoint``s.

Each symbol owns at most one open bucket. A tick whose window key
``floor(ts / step) * step`` differs from the open bucket's key closes that
bucket first (``flush``) and only then opens the next one (``open``); the
two phases never interleave, so bucket N is always delivered to the sinks
before bucket N + 1 of the same symbol exists.

Buckets are created only by ticks. A symbol that goes silent keeps its last
bucket until a flush timer, ``flush_due`` or ``flush_all`` closes it, and no
empty buckets are synthesized for the silent windows that follow.
"""
from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from ..scheduling import Scheduler, TimerHandle
from .types import (
    FLAG_EMPTY_BOOK,
    FLAG_EMPTY_BUCKET,
    FLAG_IRREGULAR_SPACING,
    FLAG_LOW_SAMPLES,
    BucketMeta,
    Level,
    OrderBook,
    SamplingPoint,
    Tick,
    parse_levels,
    to_float,
)

logger: logging.Logger = logging.getLogger(__name__)

PointSink = Callable[[SamplingPoint], None]


@dataclass(frozen=True)
class BucketConfig:
    """Bucketing parameters. Times are in milliseconds."""

    step_ms: float = 5_000.0
    poll_interval_ms: float = 1_000.0
    min_snapshots: int = 2
    top_levels: int = 5

    @property
    def gap_warn_ms(self) -> float:
        """Inter-tick gap above which a bucket is flagged irregular."""
        return 2.0 * self.poll_interval_ms

    def validate(self) -> None:
        if not (self.step_ms > 0.0 and math.isfinite(self.step_ms)):
            raise ValueError(f"step_ms must be finite and > 0, got {self.step_ms}")
        if not (self.poll_interval_ms > 0.0 and math.isfinite(self.poll_interval_ms)):
            raise ValueError(
                f"poll_interval_ms must be finite and > 0, got {self.poll_interval_ms}"
            )
        if self.min_snapshots < 1:
            raise ValueError(f"min_snapshots must be >= 1, got {self.min_snapshots}")
        if self.top_levels < 1:
            raise ValueError(f"top_levels must be >= 1, got {self.top_levels}")


@dataclass(frozen=True)
class _Snapshot:
    ts: float
    bids: tuple[Level, ...]
    asks: tuple[Level, ...]
    mid: float
    best_bid: float
    best_ask: float


class _Bucket:
    __slots__ = ("symbol", "start", "end", "snapshots", "timer")

    def __init__(self, symbol: str, start: float, end: float) -> None:
        self.symbol = symbol
        self.start = start
        self.end = end
        self.snapshots: list[_Snapshot] = []
        self.timer: TimerHandle | None = None


# ──────────────────────────────────────────────────────────────────────
# Snapshot construction
# ──────────────────────────────────────────────────────────────────────


def _snapshot_from_tick(tick: Tick) -> _Snapshot:
    bids = tuple(sorted(tick.bids, key=lambda lvl: lvl[0], reverse=True))
    asks = tuple(sorted(tick.asks, key=lambda lvl: lvl[0]))
    best_bid = tick.best_bid if tick.best_bid is not None else (bids[0][0] if bids else 0.0)
    best_ask = tick.best_ask if tick.best_ask is not None else (asks[0][0] if asks else 0.0)
    return _Snapshot(
        ts=tick.ts,
        bids=bids,
        asks=asks,
        mid=tick.mid if tick.mid is not None else estimate_mid(bids, asks),
        best_bid=best_bid,
        best_ask=best_ask,
    )


def estimate_mid(bids: Sequence[Level], asks: Sequence[Level]) -> float:
    """Mid from the best levels; one side alone if the other is empty, else 0."""
    bid = max((p for p, _ in bids), default=0.0)
    ask = min((p for p, _ in asks), default=0.0)
    if bid > 0.0 and ask > 0.0:
        return (bid + ask) / 2.0
    if bid > 0.0:
        return bid
    if ask > 0.0:
        return ask
    return 0.0


# ──────────────────────────────────────────────────────────────────────
# Flush aggregation
# ──────────────────────────────────────────────────────────────────────


def _aggregate_levels(snapshots: Iterable[_Snapshot], side: str) -> tuple[Level, ...]:
    totals: dict[float, float] = {}
    for snap in snapshots:
        for price, qty in (snap.bids if side == "bids" else snap.asks):
            totals[price] = totals.get(price, 0.0) + qty
    return tuple(sorted(totals.items(), key=lambda lvl: lvl[0], reverse=(side == "bids")))


def _min_max_avg(values: Sequence[float]) -> tuple[float | None, float | None, float | None]:
    if not values:
        return None, None, None
    return min(values), max(values), sum(values) / len(values)


def _tick_gaps(snapshots: Sequence[_Snapshot]) -> list[float]:
    stamps = sorted(s.ts for s in snapshots)
    return [b - a for a, b in zip(stamps, stamps[1:]) if b - a >= 0.0]


def aggregate_bucket(
    symbol: str,
    start: float,
    end: float,
    snapshots: Sequence[_Snapshot],
    config: BucketConfig,
) -> SamplingPoint:
    """Collapse a bucket's snapshots into one ``SamplingPoint``."""
    count = len(snapshots)
    last = snapshots[-1] if snapshots else None

    bids = _aggregate_levels(snapshots, "bids")
    asks = _aggregate_levels(snapshots, "asks")
    top_bid = sum(q for _, q in bids[: config.top_levels])
    top_ask = sum(q for _, q in asks[: config.top_levels])
    top_total = top_bid + top_ask

    gaps = _tick_gaps(snapshots)
    gap_min, gap_max, gap_avg = _min_max_avg(gaps)
    if gap_avg is not None:
        gap_avg = float(math.floor(gap_avg + 0.5))
    spread_min, spread_max, spread_avg = _min_max_avg(
        [max(0.0, s.best_ask - s.best_bid) for s in snapshots]
    )
    mids = [s.mid for s in snapshots if math.isfinite(s.mid) and s.mid > 0.0]

    flags: list[str] = []
    if count == 0:
        flags.append(FLAG_EMPTY_BUCKET)
    elif count < config.min_snapshots:
        flags.append(FLAG_LOW_SAMPLES)
    if not bids or not asks:
        flags.append(FLAG_EMPTY_BOOK)
    if gap_max is not None and gap_max > config.gap_warn_ms:
        flags.append(FLAG_IRREGULAR_SPACING)

    meta = BucketMeta(
        bucket_count=count,
        tick_gap_min=gap_min,
        tick_gap_max=gap_max,
        tick_gap_avg=gap_avg,
        spread_min=spread_min,
        spread_max=spread_max,
        spread_avg=spread_avg,
        mid_min=min(mids) if mids else None,
        mid_max=max(mids) if mids else None,
        top_bid_vol=top_bid,
        top_ask_vol=top_ask,
        liquidity_imbalance=(top_bid - top_ask) / top_total if top_total > 0.0 else None,
        quality_flags=tuple(flags),
    )
    best_bid = last.best_bid if last is not None else 0.0
    best_ask = last.best_ask if last is not None else 0.0
    return SamplingPoint(
        symbol=symbol,
        ts=end,
        mid=sum(mids) / len(mids) if mids else 0.0,
        best_bid=best_bid,
        best_ask=best_ask,
        spread=abs(best_ask - best_bid),
        bid_volume=sum(q for _, q in bids),
        ask_volume=sum(q for _, q in asks),
        bucket_start=start,
        bucket_end=end,
        book=OrderBook(bids=bids, asks=asks),
        meta=meta,
    )


# ──────────────────────────────────────────────────────────────────────
# Aggregator
# ──────────────────────────────────────────────────────────────────────


class BucketAggregator:
    """Per-symbol bucket state machine.

    Args:
        config: Bucketing parameters (validated on construction).
        sinks: Callables receiving every flushed point, in order. They run
            under the aggregator's (re-entrant) lock, so per-symbol
            delivery order matches flush order across threads.
        scheduler: Optional timer source. When given, every opened bucket
            arms a timer for its window end so silent symbols still close
            their last bucket. Scheduler time is in seconds; tick
            timestamps are in milliseconds on the same epoch.
    """

    def __init__(
        self,
        config: BucketConfig | None = None,
        sinks: Iterable[PointSink] = (),
        scheduler: Scheduler | None = None,
    ) -> None:
        self.config = config or BucketConfig()
        self.config.validate()
        self._sinks: list[PointSink] = list(sinks)
        self._scheduler = scheduler
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.RLock()

    def add_sink(self, sink: PointSink) -> None:
        self._sinks.append(sink)

    def window_key(self, ts: float) -> float:
        step = self.config.step_ms
        return math.floor(ts / step) * step

    @property
    def active_symbols(self) -> list[str]:
        with self._lock:
            return sorted(self._buckets)

    def open_window(self, symbol: str) -> tuple[float, float] | None:
        """``(start, end)`` of the symbol's open bucket, if any."""
        with self._lock:
            bucket = self._buckets.get(symbol)
            return (bucket.start, bucket.end) if bucket is not None else None

    # ── ingestion ──

    def ingest_tick(
        self,
        symbol: str,
        ts: float,
        bids: Iterable[object] | None,
        asks: Iterable[object] | None,
        mid: float | None = None,
        best_bid: float | None = None,
        best_ask: float | None = None,
    ) -> SamplingPoint | None:
        """Parse raw levels and ingest one snapshot.

        Returns:
            The point flushed because this tick crossed a window boundary,
            or ``None``.
        """
        ts_value = to_float(ts)
        symbol_key = symbol.strip().upper() if isinstance(symbol, str) else ""
        if ts_value is None or not symbol_key:
            logger.debug("Dropping tick with invalid symbol/ts: %r @ %r", symbol, ts)
            return None

        def _opt(raw: float | None) -> float | None:
            value = to_float(raw)
            return value if value is not None and value > 0.0 else None

        return self.ingest(
            Tick(
                symbol=symbol_key,
                ts=ts_value,
                bids=parse_levels(bids),
                asks=parse_levels(asks),
                mid=_opt(mid),
                best_bid=_opt(best_bid),
                best_ask=_opt(best_ask),
            )
        )

    def ingest(self, tick: Tick) -> SamplingPoint | None:
        """Add a validated tick to its symbol's bucket."""
        key = self.window_key(tick.ts)
        flushed: SamplingPoint | None = None
        with self._lock:
            bucket = self._buckets.get(tick.symbol)
            if bucket is not None and bucket.start != key:
                flushed = self._flush_locked(tick.symbol)
                bucket = None
            if bucket is None:
                bucket = self._open_locked(tick.symbol, key)
            bucket.snapshots.append(_snapshot_from_tick(tick))
            if flushed is not None:
                self._emit(flushed)
        return flushed

    # ── two-phase flush/open ──

    def flush(self, symbol: str) -> SamplingPoint | None:
        """Close the symbol's open bucket and deliver it to the sinks."""
        with self._lock:
            point = self._flush_locked(symbol)
            if point is not None:
                self._emit(point)
        return point

    def open(self, symbol: str, window_start: float) -> None:
        """Open a bucket for ``window_start``; the previous one must be flushed."""
        with self._lock:
            if symbol in self._buckets:
                raise RuntimeError(f"bucket for {symbol} is still open; flush it first")
            self._open_locked(symbol, self.window_key(window_start))

    def flush_due(self, now_ms: float) -> list[SamplingPoint]:
        """Close every bucket whose window ended at or before ``now_ms``."""
        with self._lock:
            due = [s for s, b in self._buckets.items() if b.end <= now_ms]
            points = [p for p in (self._flush_locked(s) for s in sorted(due)) if p is not None]
            for point in points:
                self._emit(point)
        return points

    def flush_all(self) -> list[SamplingPoint]:
        """Close every open bucket regardless of its window (shutdown path)."""
        with self._lock:
            points = [
                p for p in (self._flush_locked(s) for s in sorted(self._buckets)) if p is not None
            ]
            for point in points:
                self._emit(point)
        return points

    # ── internals ──

    def _open_locked(self, symbol: str, start: float) -> _Bucket:
        bucket = _Bucket(symbol, start, start + self.config.step_ms)
        self._buckets[symbol] = bucket
        if self._scheduler is not None:
            delay = max(0.0, bucket.end / 1000.0 - self._scheduler.now())
            bucket.timer = self._scheduler.schedule(
                delay, lambda s=symbol, k=start: self._on_timer(s, k)
            )
        return bucket

    def _flush_locked(self, symbol: str) -> SamplingPoint | None:
        bucket = self._buckets.pop(symbol, None)
        if bucket is None:
            return None
        if bucket.timer is not None:
            bucket.timer.cancel()
        point = aggregate_bucket(
            bucket.symbol, bucket.start, bucket.end, bucket.snapshots, self.config
        )
        logger.debug(
            "Flushed %s bucket [%s, %s) with %d snapshots flags=%s",
            symbol, bucket.start, bucket.end, len(bucket.snapshots), point.quality_flags,
        )
        return point

    def _on_timer(self, symbol: str, start: float) -> None:
        with self._lock:
            bucket = self._buckets.get(symbol)
            if bucket is None or bucket.start != start:
                return
            point = self._flush_locked(symbol)
            if point is not None:
                self._emit(point)

    def _emit(self, point: SamplingPoint) -> None:
        for sink in self._sinks:
            try:
                sink(point)
            except Exception:
                logger.exception("Point sink %r failed for %s", sink, point.symbol)
