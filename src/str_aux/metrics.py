"""Intrinsic metrics over a window of consecutive log-returns.

Strengths live in ``[0, 100]``, directional scores in ``[-100, 100]``:

    inertia     static (flat, quiet) vs growth (steady median move)
    amp         swing size times sign-flip rate
    volt        step noise relative to the envelope
    efficiency  trend x strength penalised by volt and artificiality
    disruption  instant move of the latest return out of its window
"""
from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from .robust import EPS, clamp, is_finite, mad, median

DEFAULT_WINDOW: int = 30
MIN_RETURNS: int = 3


@dataclass(frozen=True)
class Inertia:
    static: float = 0.0
    growth: float = 0.0
    total: float = 0.0
    face: str = "static"

    def to_dict(self) -> dict[str, float | str]:
        return {"static": self.static, "growth": self.growth, "total": self.total, "face": self.face}


@dataclass(frozen=True)
class IntrinsicMetrics:
    inertia: Inertia
    amp: float
    volt: float
    efficiency: float
    disruption: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "inertia": self.inertia.to_dict(),
            "amp": self.amp,
            "volt": self.volt,
            "efficiency": self.efficiency,
            "disruption": self.disruption,
        }


def consecutive_log_returns(prices: Sequence[float]) -> list[float]:
    """``ln(p[i] / p[i-1])``; a non-positive neighbour contributes 0."""
    out: list[float] = []
    for a, b in zip(prices, prices[1:]):
        out.append(math.log(b / a) if a > 0.0 and b > 0.0 else 0.0)
    return out


def _tail(values: Sequence[float], window: int | None) -> list[float]:
    w = max(5, int(window if window is not None else min(DEFAULT_WINDOW, len(values))))
    return [float(v) for v in values[-w:]]


def _diffs(values: Sequence[float]) -> list[float]:
    return np.diff(np.asarray(values, dtype=np.float64)).tolist()


def _frac_flips(values: Sequence[float]) -> float:
    flips = 0
    valid = 0
    prev = 0
    for v in values:
        s = (v > 0) - (v < 0)
        if s == 0:
            continue
        if prev == 0:
            prev = s
            continue
        valid += 1
        if s != prev:
            flips += 1
            prev = s
    return flips / valid if valid else 0.0


def inertia_from_returns(returns: Sequence[float], window: int | None = None, tau0: float = 0.01) -> Inertia:
    """Static vs growth inertia; zeros with ``face="static"`` below 3 returns."""
    if len(returns) < MIN_RETURNS:
        return Inertia()
    y = _tail(returns, window)
    mu = median(y)
    spread = mad(_diffs(y))
    static_u = math.tanh(1.0 / (1.0 + spread)) * math.tanh(tau0 / (abs(mu) + EPS))
    growth_u = math.tanh(abs(mu) / (spread + EPS))
    s = 100.0 * clamp(static_u, 0.0, 1.0)
    g = 100.0 * clamp(growth_u, 0.0, 1.0)
    return Inertia(static=s, growth=g, total=max(s, g), face="growth" if g > s else "static")


def amp_from_series(values: Sequence[float], window: int | None = None, scale: float = 100.0) -> float:
    if len(values) < MIN_RETURNS:
        return 0.0
    y = _tail(values, window)
    u = math.tanh(mad(y) / (scale or 100.0)) * math.tanh(_frac_flips(y))
    return 100.0 * clamp(u, 0.0, 1.0)


def volt_from_series(
    values: Sequence[float],
    window: int | None = None,
    lam: float = 1.0,
    scale: float = 100.0,
) -> float:
    if len(values) < MIN_RETURNS:
        return 0.0
    y = _tail(values, window)
    return 100.0 * math.tanh(lam * mad(_diffs(y)) / scale)


def efficiency_score(
    direction: float,
    strength: float,
    volt01: float = 0.0,
    artificiality01: float = 0.0,
    w_trend: float = 0.6,
    w_volt: float = 0.2,
    w_art: float = 0.2,
    alpha: float = 1.2,
    scale: float = 100.0,
) -> float:
    """Organic growth (direction x strength) minus volatility and artificiality penalties."""
    trend = clamp(direction, -1.0, 1.0) * clamp(strength, 0.0, 1.0)
    raw = (
        w_trend * trend
        - w_volt * clamp(volt01, 0.0, 1.0)
        - w_art * clamp(artificiality01, 0.0, 1.0)
    )
    return clamp(scale * math.tanh(alpha * raw), -scale, scale)


def disruption_instant(r_now: float, ref_window: Sequence[float], gamma: float = 1.0) -> float:
    """How far ``r_now`` sits from the window median in step-noise units, in ``[0, 100]``."""
    if not is_finite(r_now):
        return 0.0
    mu = median(ref_window)
    steps = _diffs(ref_window) if len(ref_window) > 1 else [0.0]
    u = math.tanh(gamma * abs(r_now - mu) / (mad(steps) + EPS))
    return 100.0 * clamp(u, 0.0, 1.0)


def compute_intrinsic_metrics(
    prices: Sequence[float],
    direction: float,
    strength: float,
    window: int = DEFAULT_WINDOW,
) -> IntrinsicMetrics | None:
    """All intrinsic metrics for a price window; ``None`` below 3 returns."""
    w = max(5, int(window))
    returns = consecutive_log_returns([float(p) for p in prices if is_finite(p)])[-w:]
    if len(returns) < MIN_RETURNS:
        return None
    volt = volt_from_series(returns, window=w)
    return IntrinsicMetrics(
        inertia=inertia_from_returns(returns, window=w),
        amp=amp_from_series(returns, window=w),
        volt=volt,
        efficiency=efficiency_score(direction, strength, volt01=volt / 100.0),
        disruption=disruption_instant(returns[-1], returns[:-1]),
    )
