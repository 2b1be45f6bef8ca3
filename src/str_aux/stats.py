"""Per-symbol statistics and vector queries over the rolling point windows.

``StatsService`` ties the engines together for one request cycle::

    points (PointWindowStore) -> IDHR + floating modes -> vector summary
        -> intrinsic metrics -> shift tracker + streams (ShiftStateStore)

Every symbol is computed independently. Missing or short windows produce a
typed ``StatsFailure`` instead of raising, and an unexpected exception in
one symbol of a batch is reported as ``internal_error`` for that symbol
only.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .config import StrAuxSettings
from .idhr import (
    FloatingMode,
    IdhrBins,
    IdhrConfig,
    compute_fm,
    densest_bins,
    derive_idhr_ranges,
    filter_by_idhr_ranges,
)
from .metrics import IntrinsicMetrics, compute_intrinsic_metrics
from .robust import is_finite
from .sampling.store import DEFAULT_WINDOW, PointWindowStore, SamplingDigest, parse_window_key
from .sampling.types import SamplingPoint
from .shift import STREAM_NAMES, ShiftState, ShiftStateStore, apply_bfm_shift, update_streams
from .tendency import SwapQuartiles, TendencyDecision, TendencyMetrics, TendencyTracker
from .vectors import VectorPoint, VectorSummary, compute_vector_summary, neutral_summary

logger: logging.Logger = logging.getLogger(__name__)

ERROR_NO_POINTS: str = "no_points"
ERROR_INSUFFICIENT_WINDOW: str = "insufficient_window"
ERROR_INTERNAL: str = "internal_error"

CollectHook = Callable[[str], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────────────
# Result types
# ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StatsFailure:
    symbol: str
    error: str
    window: str
    bins: int
    sampling: SamplingDigest | None = None
    ok: bool = field(default=False, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": False,
            "symbol": self.symbol,
            "error": self.error,
            "window": self.window,
            "bins": self.bins,
            "sampling": self.sampling.to_dict() if self.sampling is not None else None,
        }


@dataclass(frozen=True)
class StatsSuccess:
    symbol: str
    window: str
    n: int
    stats: dict[str, Any]
    histogram: IdhrBins
    fm: FloatingMode
    vectors: VectorSummary
    metrics: IntrinsicMetrics | None
    decision: TendencyDecision
    streams: dict[str, Any]
    shift: dict[str, Any]
    extrema: dict[str, float]
    meta: dict[str, Any]
    sampling: SamplingDigest
    ok: bool = field(default=True, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "symbol": self.symbol,
            "window": self.window,
            "n": self.n,
            "stats": self.stats,
            "histogram": self.histogram.to_dict(),
            "nuclei": [nu.to_dict() for nu in self.fm.nuclei],
            "vectors": self.vectors.to_dict(),
            "metrics": self.metrics.to_dict() if self.metrics is not None else None,
            "decision": self.decision.to_dict(),
            "streams": self.streams,
            "shift": self.shift,
            "extrema": self.extrema,
            "meta": self.meta,
            "sampling": self.sampling.to_dict(),
        }


StatsResult = StatsSuccess | StatsFailure


@dataclass(frozen=True)
class VectorReport:
    symbol: str
    v_inner: float
    v_outer: float
    spread: float
    v_tendency: TendencyMetrics
    v_swap: SwapQuartiles
    samples: int
    summary: VectorSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "v_inner": self.v_inner,
            "v_outer": self.v_outer,
            "spread": self.spread,
            "v_tendency": self.v_tendency.to_dict(),
            "v_swap": self.v_swap.to_dict(),
            "samples": self.samples,
            "summary": self.summary.to_dict(),
        }


# ──────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────


def _usable(points: Iterable[SamplingPoint]) -> list[SamplingPoint]:
    return [p for p in points if is_finite(p.mid) and p.mid > 0.0]


def _vector_points(points: Sequence[SamplingPoint]) -> list[VectorPoint]:
    return [
        VectorPoint(price=p.mid, volume=max(0.0, p.bid_volume + p.ask_volume))
        for p in points
    ]


def _finite_or_none(value: Any) -> float | None:
    return float(value) if is_finite(value) else None


def pct_drv(prev: float, last: float) -> float | None:
    """Percent change of the latest point over the previous one."""
    if not (is_finite(prev) and is_finite(last)) or prev == 0.0:
        return None
    return 100.0 * (last / prev - 1.0)


def gfm_block(gfm_abs: float, reference: float, epsilon_pct: float) -> dict[str, Any]:
    valid = is_finite(gfm_abs) and is_finite(reference)
    delta_abs = gfm_abs - reference if valid else None
    delta_pct = (gfm_abs / reference - 1.0) * 100.0 if valid and reference > 0.0 else None
    return {
        "absolute": _finite_or_none(gfm_abs),
        "reference": _finite_or_none(reference),
        "delta_abs": delta_abs,
        "delta_pct": delta_pct,
        "shifted": delta_pct is not None and abs(delta_pct) >= epsilon_pct,
    }


def bfm_block(bfm01: float, reference: float, epsilon_pct: float) -> dict[str, Any]:
    delta = bfm01 - reference if is_finite(bfm01) and is_finite(reference) else None
    delta_pct = delta * 100.0 if delta is not None else None
    return {
        "value": _finite_or_none(bfm01),
        "reference": _finite_or_none(reference),
        "delta": delta,
        "delta_pct": delta_pct,
        "shifted": delta_pct is not None and abs(delta_pct) >= epsilon_pct,
    }


def dispersion(prices: Sequence[float]) -> tuple[float, float]:
    """Population stdev of prices and the mean absolute z-score against it."""
    arr = np.asarray(prices, dtype=np.float64)
    if arr.size == 0:
        return 0.0, 0.0
    sigma = float(arr.std())
    if not sigma > 0.0:
        return sigma, 0.0
    return sigma, float(np.mean(np.abs((arr - arr.mean()) / sigma)))


# ──────────────────────────────────────────────────────────────────────
# Service
# ──────────────────────────────────────────────────────────────────────


class StatsService:
    """Stats and vector queries over a point store and a shift-state store.

    Args:
        store: Rolling point windows fed by the bucket aggregator.
        shifts: Per-(session, symbol) shift state.
        settings: Thresholds and defaults (epsilon, k, bins, top-K,
            minimum window size, history bound).
    """

    def __init__(
        self,
        store: PointWindowStore,
        shifts: ShiftStateStore | None = None,
        settings: StrAuxSettings | None = None,
    ) -> None:
        self.settings = settings or StrAuxSettings()
        self.store = store
        self.shifts = shifts or ShiftStateStore(history_limit=self.settings.history_limit)

    async def compute_stats(
        self,
        symbol: str,
        window: str | None = DEFAULT_WINDOW,
        bins: int | None = None,
        session_id: str | None = None,
        pct24h: float | None = None,
        collect: CollectHook | None = None,
    ) -> StatsResult:
        """Full statistics for one symbol's window.

        Args:
            symbol: Symbol to read.
            window: Window key (``30m``, ``1h``, ``3h``); unknown keys fall
                back to ``30m``.
            bins: Total histogram bins; defaults to ``settings.default_bins``.
            session_id: Shift-state session; defaults to ``settings.session_id``.
            pct24h: Optional external 24h percent change fed to its stream.
            collect: Optional hook awaited first to refresh the window. Its
                failure is logged and the current window is used.

        Returns:
            ``StatsSuccess`` or ``StatsFailure`` (``no_points`` /
            ``insufficient_window``).
        """
        symbol = symbol.upper()
        window_key = parse_window_key(window)
        n_bins = max(1, int(bins or self.settings.default_bins))
        session = session_id or self.settings.session_id

        if collect is not None:
            try:
                await collect(symbol)
            except Exception as exc:
                logger.warning("Collect hook failed for %s (%s: %s)", symbol, type(exc).__name__, exc)

        sampling = self.store.digest(symbol, window_key)
        series = _usable(self.store.points(symbol, window_key))
        if not series:
            return StatsFailure(symbol, ERROR_NO_POINTS, window_key, n_bins, sampling)
        if len(series) < self.settings.min_points:
            return StatsFailure(symbol, ERROR_INSUFFICIENT_WINDOW, window_key, n_bins, sampling)

        prices = [p.mid for p in series]
        opening = prices[0]
        last = prices[-1]
        prev = prices[-2] if len(prices) >= 2 else last
        last_ts = series[-1].ts

        histogram, fm = compute_fm(
            prices,
            opening,
            IdhrConfig(total_bins=n_bins),
            top_k=self.settings.top_k,
        )
        sigma, z_abs = dispersion(prices)
        eps = self.settings.epsilon_pct
        vector_points = _vector_points(series)
        idhr_ranges = derive_idhr_ranges(histogram)
        nuclei_points = filter_by_idhr_ranges(vector_points, opening, idhr_ranges)

        def cycle(state: ShiftState) -> dict[str, Any]:
            vectors = compute_vector_summary(
                vector_points,
                bins=histogram.bins,
                history_inner=state.history_inner,
                history_outer=state.history_outer,
                history_tendency=state.history_tendency,
                nuclei_points=nuclei_points,
            )
            tracker = TendencyTracker(last_state=state.tendency_state or "indeterminate")
            decision = tracker.update(
                state.history_inner + [vectors.inner.scaled],
                state.history_outer + [vectors.outer],
            )
            state.tendency_state = decision.state

            tm = vectors.tendency.metrics
            metrics = compute_intrinsic_metrics(prices, tm.direction, tm.strength)

            bfm = bfm_block(fm.bfm01, state.ref_gfm01, eps)
            outcome = apply_bfm_shift(
                state, fm.bfm01,
                epsilon_pct=eps, k=self.settings.shift_k,
                now_ts=last_ts, price=last,
            )
            update_streams(state, {
                "benchmark": last,
                "pct24h": pct24h,
                "pct_drv": pct_drv(prev, last) if len(prices) > 1 else None,
                "inertia": metrics.inertia.total if metrics else None,
                "amp": metrics.amp if metrics else None,
                "volt": metrics.volt if metrics else None,
                "efficiency": metrics.efficiency if metrics else None,
                "disruption": metrics.disruption if metrics else None,
                "v_inner": vectors.inner.scaled,
                "v_outer": vectors.outer,
                "v_tendency": tm.score,
                "v_swap": vectors.swap.score if vectors.swap is not None else None,
            })
            state.push_history(
                vectors.inner.scaled,
                vectors.outer,
                tm.score,
                self.shifts.history_limit,
            )
            return {
                "vectors": vectors,
                "decision": decision,
                "metrics": metrics,
                "bfm": bfm,
                "outcome": outcome,
                "streams": {
                    name: state.streams[name].to_dict()
                    for name in STREAM_NAMES
                    if name in state.streams
                },
                "window": state.window.to_dict(),
                "shifts": state.shifts,
                "ui_epoch": state.ui_epoch,
                "stamps": [s.to_dict() for s in state.stamps],
            }

        res = self.shifts.update(session, symbol, cycle)
        vectors: VectorSummary = res["vectors"]
        metrics: IntrinsicMetrics | None = res["metrics"]
        gfm = gfm_block(fm.gfm, opening, eps)

        stats = {
            "sigma": sigma,
            "z_abs": z_abs,
            "gfm": gfm,
            "bfm": res["bfm"],
            "confidence": fm.confidence,
            "r_center": fm.r_center,
            "sigma_r": fm.sigma,
            "z_mean_abs": fm.z_mean_abs,
            "inertia_r": fm.inertia,
            "disruption": fm.disruption,
            "v_inner": vectors.inner.scaled,
            "v_outer": vectors.outer,
            "tendency": vectors.tendency.metrics.to_dict(),
            "v_swap": vectors.swap.to_dict() if vectors.swap is not None else None,
            "inertia": metrics.inertia.to_dict() if metrics else None,
            "amp": metrics.amp if metrics else None,
            "volt": metrics.volt if metrics else None,
            "efficiency": metrics.efficiency if metrics else None,
            "disruption_instant": metrics.disruption if metrics else None,
            "idhr_ranges": [{"min": rng.min, "max": rng.max} for rng in idhr_ranges],
            "opening": opening,
            "last": last,
            "prev": prev,
            "pct24h": _finite_or_none(pct24h),
            "pct_drv": pct_drv(prev, last) if len(prices) > 1 else None,
            "densest": [i for i, _ in densest_bins(histogram, self.settings.top_k)],
        }
        bench = [100.0 * (p / opening - 1.0) for p in prices]
        extrema = {
            "price_min": min(prices),
            "price_max": max(prices),
            "bench_pct_min": min(bench),
            "bench_pct_max": max(bench),
        }
        outcome = res["outcome"]
        return StatsSuccess(
            symbol=symbol,
            window=window_key,
            n=len(series),
            stats=stats,
            histogram=histogram,
            fm=fm,
            vectors=vectors,
            metrics=metrics,
            decision=res["decision"],
            streams=res["streams"],
            shift={
                "is_shift": outcome.is_shift,
                "exceeded": outcome.exceeded,
                "delta_pct": outcome.delta_pct,
                "shifts": res["shifts"],
                "window": res["window"],
                "stamps": res["stamps"],
            },
            extrema=extrema,
            meta={
                "ui_epoch": res["ui_epoch"],
                "epsilon_pct": eps,
                "k_cycles": self.settings.shift_k,
                "bins": histogram.bins,
                "last_update_ts": last_ts,
                "session_id": session,
            },
            sampling=sampling,
        )

    async def compute_stats_batch(
        self,
        symbols: Iterable[str],
        window: str | None = DEFAULT_WINDOW,
        bins: int | None = None,
        session_id: str | None = None,
        pct24h: dict[str, float] | None = None,
        collect: CollectHook | None = None,
    ) -> dict[str, StatsResult]:
        """``compute_stats`` per symbol; one symbol failing never affects another."""
        window_key = parse_window_key(window)
        n_bins = max(1, int(bins or self.settings.default_bins))
        out: dict[str, StatsResult] = {}
        for raw in symbols:
            symbol = raw.strip().upper()
            if not symbol or symbol in out:
                continue
            try:
                out[symbol] = await self.compute_stats(
                    symbol, window_key, n_bins, session_id,
                    pct24h=(pct24h or {}).get(symbol),
                    collect=collect,
                )
            except Exception:
                logger.exception("Stats computation failed for %s", symbol)
                out[symbol] = StatsFailure(
                    symbol, ERROR_INTERNAL, window_key, n_bins,
                    self.store.digest(symbol, window_key),
                )
        return out

    def compute_vectors(
        self,
        symbols: Iterable[str],
        window: str | None = DEFAULT_WINDOW,
        bins: int = 128,
        scale: float = 100.0,
        tendency_window: int = 30,
        normalizer: str = "mad",
        swap_alpha: float = 1.2,
    ) -> dict[str, VectorReport]:
        """Stateless vector read-out per symbol; empty windows give a neutral summary.

        Raises:
            ValueError: If ``normalizer`` is not ``"mad"`` or ``"stdev"``.
        """
        if normalizer not in ("mad", "stdev"):
            raise ValueError(f"normalizer must be 'mad' or 'stdev', got {normalizer!r}")
        window_key = parse_window_key(window)
        out: dict[str, VectorReport] = {}
        for raw in symbols:
            symbol = raw.strip().upper()
            if not symbol or symbol in out:
                continue
            series = _usable(self.store.points(symbol, window_key))
            if not series:
                summary = neutral_summary(bins, scale)
            else:
                summary = compute_vector_summary(
                    _vector_points(series),
                    bins=bins,
                    scale=scale,
                    tendency_window=tendency_window,
                    normalizer=normalizer,
                    swap_alpha=swap_alpha,
                )
            v_inner = summary.inner.scaled
            v_outer = summary.outer
            out[symbol] = VectorReport(
                symbol=symbol,
                v_inner=v_inner,
                v_outer=v_outer,
                spread=v_outer - v_inner if math.isfinite(v_outer - v_inner) else 0.0,
                v_tendency=summary.tendency.metrics,
                v_swap=summary.swap or SwapQuartiles(),
                samples=summary.samples,
                summary=summary,
            )
        return out
