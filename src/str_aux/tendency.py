"""Tendency vectors and the hysteresis decision engine.

Scale convention: every public score lives in ``[-scale, scale]``
(default 100). Unitless intermediates live in ``[-1, 1]``.

    vInner    skew of one nucleus around its centre, robustly standardised.
    vOuter    weight-composed inner scores across nuclei.
    vTendency trend of a series: OLS slope over a window, normalised by
              the dispersion of first differences.
    vSwap     coherence between the average inner score and the trend sign.

``decide_tendency`` maps a pair of (inner, outer) readings onto
growth / collapse / shift / maintenance / indeterminate with a deadzone
and enter/stay hysteresis.
"""
from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from .robust import EPS, clamp, is_finite, mad, mean_or_zero, quantile, robust_sigma, sample_stdev, weighted_mean

DEFAULT_SCALE: float = 100.0

SWAP_SOFTNESS: float = 0.25
"""Coherence divisor inside ``tanh`` for ``v_swap``."""

SWAP_MIN_SAMPLES: int = 4
"""Paired samples ``v_swap_quartiles`` needs before it reports anything."""

STATE_GROWTH: str = "growth"
STATE_COLLAPSE: str = "collapse"
STATE_SHIFT: str = "shift"
STATE_MAINTENANCE: str = "maintenance"
STATE_INDETERMINATE: str = "indeterminate"

MIN_DECISION_SAMPLES: int = 3
CONFIDENCE_CAP: float = 3.0


@dataclass(frozen=True)
class SampleNucleus:
    """Weighted sample partition fed to the vector engine.

    Per-sample weight resolution: ``weights[i]`` when finite and positive,
    else ``volumes[i]`` when finite and positive, else 1.
    """

    values: tuple[float, ...]
    weights: tuple[float, ...] | None = None
    volumes: tuple[float, ...] | None = None
    center: float | None = None

    def resolved_weights(self) -> list[float]:
        out: list[float] = []
        for i in range(len(self.values)):
            w = self.weights[i] if self.weights is not None and i < len(self.weights) else None
            if is_finite(w) and w > 0.0:
                out.append(float(w))
                continue
            v = self.volumes[i] if self.volumes is not None and i < len(self.volumes) else None
            out.append(float(v) if is_finite(v) and v > 0.0 else 1.0)
        return out

    @property
    def weight_sum(self) -> float:
        return float(sum(self.resolved_weights()))


@dataclass(frozen=True)
class TendencyMetrics:
    direction: float = 0.0
    strength: float = 0.0
    slope: float = 0.0
    r: float = 0.0
    score: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "direction": self.direction,
            "strength": self.strength,
            "slope": self.slope,
            "r": self.r,
            "score": self.score,
        }


@dataclass(frozen=True)
class SwapQuartiles:
    q: float = 0.0
    score: float = 0.0
    q1: float = 0.0
    q3: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"q": self.q, "score": self.score, "q1": self.q1, "q3": self.q3}


def _bound(value: float, scale: float, gain: float = 1.0) -> float:
    return clamp(scale * math.tanh(gain * value), -abs(scale), abs(scale))


# ──────────────────────────────────────────────────────────────────────
# vInner / vOuter
# ──────────────────────────────────────────────────────────────────────


def inner_unitless(nucleus: SampleNucleus) -> float:
    """Weighted mean of ``tanh((x - c) / sigma)``; ``0.0`` for an empty nucleus."""
    pairs = [(float(x), w) for x, w in zip(nucleus.values, nucleus.resolved_weights()) if is_finite(x)]
    if not pairs:
        return 0.0
    xs = [x for x, _ in pairs]
    ws = [w for _, w in pairs]
    center = nucleus.center if is_finite(nucleus.center) else weighted_mean(xs, ws)
    residuals = [x - center for x in xs]
    sigma = max(robust_sigma(residuals), EPS)
    total = sum(ws)
    acc = sum(w * math.tanh(r / sigma) for r, w in zip(residuals, ws))
    return clamp(acc / total, -1.0, 1.0) if total > 0.0 else 0.0


def v_inner(nucleus: SampleNucleus, scale: float | None = None, gain: float = 1.0) -> float:
    """Inner skew of one nucleus.

    Args:
        nucleus: Samples with optional weights/volumes and centre.
        scale: When given, the unitless value is re-bounded as
            ``scale * tanh(gain * x)``.
        gain: Sensitivity before the re-bounding ``tanh``.
    """
    unit = inner_unitless(nucleus)
    return unit if scale is None else _bound(unit, scale, gain)


def _gammas(count: int, weights: Sequence[float] | None) -> list[float]:
    if weights is None or len(weights) != count:
        return [1.0] * count
    return [float(w) if is_finite(w) else 1.0 for w in weights]


def outer_unitless(
    nuclei: Sequence[SampleNucleus],
    weights: Sequence[float] | None = None,
    normalize: bool = True,
) -> float:
    if not nuclei:
        return 0.0
    inners = [inner_unitless(nu) for nu in nuclei]
    gammas = _gammas(len(inners), weights)
    agg = sum(g * v for g, v in zip(gammas, inners))
    if not normalize:
        return agg
    denom = sum(gammas) or len(inners)
    return agg / denom if denom else 0.0


def v_outer(
    nuclei: Sequence[SampleNucleus],
    weights: Sequence[float] | None = None,
    scale: float = DEFAULT_SCALE,
    gain: float = 1.0,
    normalize: bool = True,
) -> float:
    """Weighted composition of per-nucleus inner scores, in ``[-scale, scale]``."""
    return _bound(outer_unitless(nuclei, weights, normalize), scale, gain)


def aggregate_inner(
    nuclei: Sequence[SampleNucleus],
    weights: Sequence[float] | None = None,
    scale: float = DEFAULT_SCALE,
) -> tuple[float, float]:
    """``(unitless, scaled)`` weight-averaged inner score without re-bounding."""
    if not nuclei:
        return 0.0, 0.0
    inners = [inner_unitless(nu) for nu in nuclei]
    gammas = _gammas(len(inners), weights)
    denom = sum(gammas) or len(inners) or 1
    unit = sum(g * v for g, v in zip(gammas, inners)) / denom
    return unit, clamp(scale * unit, -abs(scale), abs(scale))


# ──────────────────────────────────────────────────────────────────────
# vTendency
# ──────────────────────────────────────────────────────────────────────


def _linreg(y: np.ndarray) -> tuple[float, float]:
    m = y.size
    if m < 2:
        return 0.0, 0.0
    x = np.arange(m, dtype=np.float64)
    sx, sy = x.sum(), y.sum()
    sxx, sxy, syy = (x * x).sum(), (x * y).sum(), (y * y).sum()
    num = m * sxy - sx * sy
    den = m * sxx - sx * sx
    slope = num / den if den != 0.0 else 0.0
    rden_sq = (m * sxx - sx * sx) * (m * syy - sy * sy)
    r = num / math.sqrt(rden_sq) if rden_sq > 0.0 else 0.0
    return float(slope), float(r)


def v_tendency(
    series: Sequence[float],
    window: int = 30,
    scale: float = DEFAULT_SCALE,
    k: float = 1.1,
    normalizer: str = "mad",
) -> TendencyMetrics:
    """Trend score of the last ``window`` values of ``series``.

    Raises:
        ValueError: If ``normalizer`` is not ``"mad"`` or ``"stdev"``.
    """
    if normalizer not in ("mad", "stdev"):
        raise ValueError(f"normalizer must be 'mad' or 'stdev', got {normalizer!r}")
    values = [float(v) for v in series if is_finite(v)]
    if len(values) < 2:
        return TendencyMetrics()
    w = max(3, int(window))
    y = np.asarray(values[-w:], dtype=np.float64)
    slope, r = _linreg(y)

    diffs = np.diff(y)
    dispersion = mad(diffs) if normalizer == "mad" else sample_stdev(diffs)
    z = slope / dispersion if dispersion > 0.0 else 0.0

    direction = math.tanh(k * z)
    return TendencyMetrics(
        direction=direction,
        strength=clamp(abs(r), 0.0, 1.0),
        slope=slope,
        r=r,
        score=clamp(direction * scale, -abs(scale), abs(scale)),
    )


# ──────────────────────────────────────────────────────────────────────
# vSwap
# ──────────────────────────────────────────────────────────────────────


def v_swap(
    nuclei: Sequence[SampleNucleus],
    tendency_score: float,
    weights: Sequence[float] | None = None,
    scale: float = DEFAULT_SCALE,
) -> float:
    """Agreement of the average inner score with the trend direction."""
    if not nuclei:
        return 0.0
    avg_inner, _ = aggregate_inner(nuclei, weights, scale)
    sign = math.copysign(1.0, tendency_score) if is_finite(tendency_score) and tendency_score != 0.0 else 0.0
    return _bound(avg_inner * sign / SWAP_SOFTNESS, scale)


def v_swap_quartiles(
    inner_hist: Sequence[float],
    tendency_hist: Sequence[float],
    scale: float = DEFAULT_SCALE,
    alpha: float = 1.2,
) -> SwapQuartiles:
    """Mean inner score in the top vs bottom tendency quartile.

    Needs at least 4 paired samples; otherwise returns zeros.
    """
    n = min(len(inner_hist), len(tendency_hist))
    if n < SWAP_MIN_SAMPLES:
        return SwapQuartiles()
    inner = [v / scale if scale else v for v in inner_hist[-n:]]
    trend = [v / scale if scale else v for v in tendency_hist[-n:]]
    ordered = sorted(trend)
    q1 = quantile(ordered, 0.25)
    q3 = quantile(ordered, 0.75)
    bottom = [i for i, t in zip(inner, trend) if t <= q1]
    top = [i for i, t in zip(inner, trend) if t > q1 and t >= q3]
    q = clamp((mean_or_zero(top) - mean_or_zero(bottom)) / 2.0, -1.0, 1.0)
    return SwapQuartiles(q=q, score=_bound(q, scale, alpha), q1=q1, q3=q3)


# ──────────────────────────────────────────────────────────────────────
# Decision engine
# ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DecideConfig:
    """Deadzone and hysteresis thresholds for ``decide_tendency``."""

    deadzone: float = 0.4
    enter: float = 0.5
    stay: float = 0.35

    def validate(self) -> None:
        if self.deadzone < 0.0:
            raise ValueError(f"deadzone must be >= 0, got {self.deadzone}")
        if self.enter <= 0.0 or self.stay <= 0.0:
            raise ValueError("enter/stay thresholds must be > 0")
        if self.stay > self.enter:
            raise ValueError(
                f"stay threshold ({self.stay}) must not exceed enter threshold ({self.enter})"
            )


@dataclass(frozen=True)
class TendencyDecision:
    state: str = STATE_INDETERMINATE
    confidence: float = 0.0
    v_i_hat: float = 0.0
    v_o_hat: float = 0.0

    def to_dict(self) -> dict[str, float | str]:
        return {
            "state": self.state,
            "confidence": self.confidence,
            "v_i_hat": self.v_i_hat,
            "v_o_hat": self.v_o_hat,
        }


def decide_tendency(
    v_i: float,
    v_o: float,
    sigma_i: float,
    sigma_o: float,
    config: DecideConfig | None = None,
    last_state: str | None = None,
    samples: int | None = None,
) -> TendencyDecision:
    """Classify an (inner, outer) reading.

    Args:
        v_i: Inner reading.
        v_o: Outer reading.
        sigma_i: Robust scale of recent inner readings.
        sigma_o: Robust scale of recent outer readings.
        config: Thresholds.
        last_state: Previous decision; anything but ``indeterminate``
            switches the threshold from ``enter`` to ``stay``.
        samples: Number of readings behind the sigmas. Fewer than 3 gives
            a neutral ``indeterminate`` result.

    Returns:
        ``TendencyDecision`` with confidence capped at 3.
    """
    config = config or DecideConfig()
    if samples is not None and samples < MIN_DECISION_SAMPLES:
        return TendencyDecision()
    if not all(is_finite(x) for x in (v_i, v_o, sigma_i, sigma_o)):
        return TendencyDecision()

    vi_hat = v_i / (abs(sigma_i) + EPS)
    vo_hat = v_o / (abs(sigma_o) + EPS)
    gi = 0.0 if abs(vi_hat) < config.deadzone else vi_hat
    go = 0.0 if abs(vo_hat) < config.deadzone else vo_hat

    mag_i, mag_o = abs(gi), abs(go)
    mag = min(mag_i, mag_o)
    balance = mag / (max(mag_i, mag_o) + EPS)
    conf = mag * (0.5 + 0.5 * balance)

    threshold = config.stay if last_state not in (None, STATE_INDETERMINATE) else config.enter

    state = STATE_INDETERMINATE
    if conf >= threshold:
        if gi > 0.0 and go > 0.0:
            state = STATE_GROWTH
        elif gi < 0.0 and go < 0.0:
            state = STATE_COLLAPSE
        elif gi > 0.0 and go < 0.0:
            state = STATE_SHIFT
        elif gi < 0.0 and go > 0.0:
            state = STATE_MAINTENANCE
    elif abs(go) < config.deadzone and gi < 0.0:
        state = STATE_MAINTENANCE

    return TendencyDecision(
        state=state,
        confidence=min(conf, CONFIDENCE_CAP),
        v_i_hat=vi_hat,
        v_o_hat=vo_hat,
    )


@dataclass
class TendencyTracker:
    """Remembers the last decision so hysteresis applies across calls."""

    config: DecideConfig = field(default_factory=DecideConfig)
    last_state: str = STATE_INDETERMINATE

    def __post_init__(self) -> None:
        self.config.validate()

    def update(self, inner_hist: Sequence[float], outer_hist: Sequence[float]) -> TendencyDecision:
        """Decide on the latest readings using the histories' robust scales."""
        inner = [float(v) for v in inner_hist if is_finite(v)]
        outer = [float(v) for v in outer_hist if is_finite(v)]
        samples = min(len(inner), len(outer))
        if samples < MIN_DECISION_SAMPLES:
            decision = TendencyDecision()
        else:
            decision = decide_tendency(
                inner[-1],
                outer[-1],
                robust_sigma(inner),
                robust_sigma(outer),
                self.config,
                last_state=self.last_state,
                samples=samples,
            )
        self.last_state = decision.state
        return decision
