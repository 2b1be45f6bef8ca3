"""Rolling per-symbol window of closed ``SamplingPoint``s.

The store is an explicit handle: the aggregator appends to it through its
sink interface and the stats service reads from it. Writers hold the lock
only to append and evict; readers get immutable tuples and compute without
holding anything.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any

import pandas as pd

from .types import ERROR_FLAGS, WARN_FLAGS, SamplingPoint

logger: logging.Logger = logging.getLogger(__name__)

WINDOW_DURATIONS_MS: dict[str, float] = {
    "30m": 30 * 60 * 1_000.0,
    "1h": 60 * 60 * 1_000.0,
    "3h": 3 * 60 * 60 * 1_000.0,
}
"""Supported window keys, shortest first."""

DEFAULT_WINDOW: str = "30m"


def parse_window_key(raw: str | None) -> str:
    """Normalize a window key, falling back to ``30m`` for unknown input."""
    key = (raw or "").strip().lower()
    return key if key in WINDOW_DURATIONS_MS else DEFAULT_WINDOW


def point_health(point: SamplingPoint) -> str:
    """``error`` / ``warn`` / ``ok`` from the point's quality flags."""
    flags = set(point.quality_flags)
    if flags & ERROR_FLAGS:
        return "error"
    if flags & WARN_FLAGS:
        return "warn"
    return "ok"


@dataclass(frozen=True)
class SamplingDigest:
    """Lightweight description of a symbol's window for API responses."""

    window: str
    size: int
    capacity: int
    first_ts: float | None
    last_ts: float | None
    last_point: SamplingPoint | None
    status_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "window": self.window,
            "size": self.size,
            "capacity": self.capacity,
            "first_ts": self.first_ts,
            "last_ts": self.last_ts,
            "last_point": self.last_point.to_dict() if self.last_point is not None else None,
            "status_counts": dict(self.status_counts),
        }


class PointWindowStore:
    """Bounded, time-ordered point history per symbol.

    Args:
        step_ms: Nominal bucket width; sizes the per-window capacity.
        capacity: Hard cap on retained points per symbol. Defaults to the
            longest window's duration divided by ``step_ms``.
    """

    def __init__(self, step_ms: float = 5_000.0, capacity: int | None = None) -> None:
        if step_ms <= 0.0:
            raise ValueError(f"step_ms must be > 0, got {step_ms}")
        self.step_ms = step_ms
        self._max_span_ms = max(WINDOW_DURATIONS_MS.values())
        self.capacity = capacity if capacity is not None else int(self._max_span_ms // step_ms)
        if self.capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {self.capacity}")
        self._points: dict[str, deque[SamplingPoint]] = {}
        self._lock = threading.Lock()

    def window_capacity(self, window: str) -> int:
        return min(self.capacity, int(WINDOW_DURATIONS_MS[parse_window_key(window)] // self.step_ms))

    def append(self, point: SamplingPoint) -> SamplingPoint:
        """Store a closed point; returns the stored (possibly re-stamped) point.

        Timestamps are kept strictly increasing per symbol: a point that is
        not after the last one is stored with ``last.ts + 1``.
        """
        with self._lock:
            history = self._points.setdefault(point.symbol, deque())
            if history and point.ts <= history[-1].ts:
                point = replace(point, ts=history[-1].ts + 1)
            history.append(point)
            horizon = point.ts - self._max_span_ms
            while history and (len(history) > self.capacity or history[0].ts < horizon):
                history.popleft()
        return point

    # Sink adapter for BucketAggregator.
    __call__ = append

    def symbols(self) -> list[str]:
        with self._lock:
            return sorted(self._points)

    def size(self, symbol: str) -> int:
        with self._lock:
            return len(self._points.get(symbol, ()))

    def points(self, symbol: str, window: str = DEFAULT_WINDOW) -> tuple[SamplingPoint, ...]:
        """Snapshot of the points inside ``window`` ending at the latest point."""
        key = parse_window_key(window)
        with self._lock:
            history = tuple(self._points.get(symbol, ()))
        if not history:
            return ()
        horizon = history[-1].ts - WINDOW_DURATIONS_MS[key]
        selected = tuple(p for p in history if p.ts > horizon)
        return selected[-self.window_capacity(key):]

    def last_point(self, symbol: str) -> SamplingPoint | None:
        with self._lock:
            history = self._points.get(symbol)
            return history[-1] if history else None

    def digest(self, symbol: str, window: str = DEFAULT_WINDOW) -> SamplingDigest:
        key = parse_window_key(window)
        pts = self.points(symbol, key)
        counts = {"ok": 0, "warn": 0, "error": 0}
        for p in pts:
            counts[point_health(p)] += 1
        return SamplingDigest(
            window=key,
            size=len(pts),
            capacity=self.window_capacity(key),
            first_ts=pts[0].ts if pts else None,
            last_ts=pts[-1].ts if pts else None,
            last_point=pts[-1] if pts else None,
            status_counts=counts,
        )

    def to_frame(self, symbol: str, window: str = DEFAULT_WINDOW) -> pd.DataFrame:
        """Window as a DataFrame with one row per point (book omitted)."""
        rows = []
        for p in self.points(symbol, window):
            row = {k: v for k, v in p.to_dict().items() if k not in ("book", "meta")}
            row["quality_flags"] = ",".join(p.quality_flags)
            rows.append(row)
        columns = [
            "symbol", "ts", "mid", "best_bid", "best_ask", "spread",
            "bid_volume", "ask_volume", "bucket_start", "bucket_end", "quality_flags",
        ]
        return pd.DataFrame(rows, columns=columns)
