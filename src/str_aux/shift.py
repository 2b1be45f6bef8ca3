"""Per-(session, symbol) floating-mode shift tracking and scalar streams.

A *shift* is declared when the bounded floating mode (``bfm01``) has stayed
at least ``epsilon_pct`` percentage points away from its reference for
``k`` consecutive cycles. A single outlier cycle resets the streak. On a
shift the reference jumps to the current value, ``shifts`` and
``ui_epoch`` increase and a stamp is recorded.

State lives in an explicit ``ShiftStateStore``; entries are created on
first access and live for the process lifetime. Each key has its own lock
so one slow symbol never serialises another::

    store = ShiftStateStore()
    outcome = store.update("ui", "BTCUSDT", lambda st: apply_bfm_shift(st, 0.61))
    snap = store.snapshot("ui", "BTCUSDT")
"""
from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .robust import is_finite

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_EPSILON_PCT: float = 0.35
DEFAULT_SHIFT_K: int = 5
DEFAULT_REF_BFM01: float = 0.5
DEFAULT_MAX_STAMPS: int = 64
DEFAULT_HISTORY_LIMIT: int = 256

STREAM_NAMES: tuple[str, ...] = (
    "benchmark",
    "pct24h",
    "pct_drv",
    "inertia",
    "amp",
    "volt",
    "efficiency",
    "disruption",
    "v_inner",
    "v_outer",
    "v_tendency",
    "v_swap",
)


# ──────────────────────────────────────────────────────────────────────
# State types
# ──────────────────────────────────────────────────────────────────────


@dataclass
class StreamScalar:
    """``prev``/``cur`` of a scalar stream plus its running max magnitude."""

    prev: float | None = None
    cur: float | None = None
    greatest: float | None = None

    def to_dict(self) -> dict[str, float | None]:
        return {"prev": self.prev, "cur": self.cur, "greatest": self.greatest}


@dataclass
class ShiftStamp:
    ts: float
    price: float | None
    bfm01: float
    delta_pct: float

    def to_dict(self) -> dict[str, float | None]:
        return {"ts": self.ts, "price": self.price, "bfm01": self.bfm01, "delta_pct": self.delta_pct}


@dataclass
class ShiftWindow:
    """Exceedance marks of the last ``k`` cycles and the running streak."""

    exceed: list[bool] = field(default_factory=list)
    streak: int = 0
    shifts: int = 0
    total_cycles: int = 0
    last_delta_pct: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "exceed": list(self.exceed),
            "streak": self.streak,
            "shifts": self.shifts,
            "total_cycles": self.total_cycles,
            "last_delta_pct": self.last_delta_pct,
        }


@dataclass
class ShiftState:
    ref_gfm01: float = DEFAULT_REF_BFM01
    window: ShiftWindow = field(default_factory=ShiftWindow)
    streams: dict[str, StreamScalar] = field(default_factory=dict)
    stamps: list[ShiftStamp] = field(default_factory=list)
    ui_epoch: int = 0
    shifts: int = 0
    last_shift_ts: float | None = None
    history_inner: list[float] = field(default_factory=list)
    history_outer: list[float] = field(default_factory=list)
    history_tendency: list[float] = field(default_factory=list)
    tendency_state: str | None = None

    def push_history(
        self,
        inner: float,
        outer: float,
        tendency: float,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        """Append one cycle's vector readings, keeping the newest ``limit`` of each.

        Non-finite readings are skipped per series.
        """
        for series, value in (
            (self.history_inner, inner),
            (self.history_outer, outer),
            (self.history_tendency, tendency),
        ):
            if is_finite(value):
                series.append(float(value))
                del series[:-limit]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref_gfm01": self.ref_gfm01,
            "window": self.window.to_dict(),
            "streams": {name: s.to_dict() for name, s in self.streams.items()},
            "stamps": [s.to_dict() for s in self.stamps],
            "ui_epoch": self.ui_epoch,
            "shifts": self.shifts,
            "last_shift_ts": self.last_shift_ts,
        }


@dataclass(frozen=True)
class ShiftOutcome:
    is_shift: bool
    exceeded: bool
    delta_pct: float | None


# ──────────────────────────────────────────────────────────────────────
# Transitions
# ──────────────────────────────────────────────────────────────────────


def update_stream_scalar(row: StreamScalar | None, value: float | None) -> StreamScalar | None:
    """Advance a stream by one value; non-finite input leaves it untouched."""
    if not is_finite(value):
        return row
    prev_cur = row.cur if row is not None and is_finite(row.cur) else None
    prev_greatest = abs(row.greatest) if row is not None and is_finite(row.greatest) else 0.0
    greatest = max(prev_greatest, abs(float(value)))
    return StreamScalar(prev=prev_cur, cur=float(value), greatest=greatest if greatest > 0.0 else None)


def update_streams(state: ShiftState, values: dict[str, float | None]) -> None:
    for name, value in values.items():
        row = update_stream_scalar(state.streams.get(name), value)
        if row is not None:
            state.streams[name] = row


def apply_bfm_shift(
    state: ShiftState,
    bfm01: float,
    epsilon_pct: float = DEFAULT_EPSILON_PCT,
    k: int = DEFAULT_SHIFT_K,
    now_ts: float | None = None,
    price: float | None = None,
    max_stamps: int = DEFAULT_MAX_STAMPS,
) -> ShiftOutcome:
    """Record one cycle's exceedance mark and fire a shift after ``k`` in a row.

    Args:
        state: Mutable state of one (session, symbol); call under its lock.
        bfm01: Current bounded floating mode.
        epsilon_pct: Exceedance threshold in percentage points of the 0..1 span.
        k: Consecutive exceedances required.
        now_ts: Stamp timestamp in ms; wall clock when omitted.
        price: Last price, recorded on the stamp.
        max_stamps: Stamp history bound.

    Returns:
        ``ShiftOutcome``; ``is_shift`` is true only on the firing cycle.
    """
    k = max(1, int(k))
    valid = is_finite(bfm01) and is_finite(state.ref_gfm01)
    delta_pct = (float(bfm01) - state.ref_gfm01) * 100.0 if valid else None
    exceeded = delta_pct is not None and abs(delta_pct) >= epsilon_pct

    win = state.window
    win.exceed = (win.exceed + [exceeded])[-k:]
    win.streak = win.streak + 1 if exceeded else 0
    win.total_cycles += 1
    if delta_pct is not None:
        win.last_delta_pct = delta_pct

    if win.streak < k:
        return ShiftOutcome(is_shift=False, exceeded=exceeded, delta_pct=delta_pct)

    ts = now_ts if now_ts is not None else time.time() * 1000.0
    win.streak = 0
    win.shifts += 1
    state.stamps = (state.stamps + [ShiftStamp(
        ts=ts,
        price=float(price) if is_finite(price) else None,
        bfm01=float(bfm01),
        delta_pct=float(delta_pct),
    )])[-max_stamps:]
    state.last_shift_ts = ts
    state.ref_gfm01 = float(bfm01)
    state.shifts += 1
    state.ui_epoch += 1
    logger.info(
        "Floating-mode shift #%d (bfm01=%.4f, delta=%.3f%%)",
        state.shifts, bfm01, delta_pct,
    )
    return ShiftOutcome(is_shift=True, exceeded=True, delta_pct=delta_pct)


# ──────────────────────────────────────────────────────────────────────
# Keyed store
# ──────────────────────────────────────────────────────────────────────


class ShiftStateStore:
    """Thread-safe ``(session_id, symbol) -> ShiftState`` registry."""

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if history_limit < 1:
            raise ValueError(f"history_limit must be >= 1, got {history_limit}")
        self.history_limit = history_limit
        self._states: dict[tuple[str, str], ShiftState] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    @staticmethod
    def _key(session_id: str, symbol: str) -> tuple[str, str]:
        return session_id, symbol.upper()

    def _entry(self, key: tuple[str, str]) -> tuple[ShiftState, threading.Lock]:
        with self._guard:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = ShiftState()
                self._locks[key] = threading.Lock()
            return state, self._locks[key]

    def get(self, session_id: str, symbol: str) -> ShiftState:
        """Live state for a key, created on first access."""
        return self._entry(self._key(session_id, symbol))[0]

    def update(self, session_id: str, symbol: str, fn: Callable[[ShiftState], T]) -> T:
        """Apply ``fn`` to the key's state while holding that key's lock."""
        state, lock = self._entry(self._key(session_id, symbol))
        with lock:
            return fn(state)

    def snapshot(self, session_id: str, symbol: str) -> ShiftState:
        """Deep copy of a key's state, safe to read without locking."""
        state, lock = self._entry(self._key(session_id, symbol))
        with lock:
            return copy.deepcopy(state)

    def keys(self) -> list[tuple[str, str]]:
        with self._guard:
            return sorted(self._states)

    def __len__(self) -> int:
        with self._guard:
            return len(self._states)
