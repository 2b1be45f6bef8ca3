"""Vector summary: sample nuclei -> inner / outer / tendency / swap.

Prices of a window are normalised to ``[0, 1]`` across the window's own
span and bucketed into ``bins`` nuclei by ``round(norm * (bins - 1))``.
Each nucleus is weighted by the sum of its sample weights; the weights
drive both the aggregate inner score and the outer composition.

Tendency and swap read the window itself first:

    tendency  trend of the cumulative log-return path (percent) when the
              window has at least 2 returns, else of the outer history
              plus the current outer score.
    swap      quartile swap of scaled price level vs scaled return when
              the window has at least 4 returns, else of the inner and
              tendency-score histories, else the nuclei coherence swap.

Usage::

    summary = compute_vector_summary(points, bins=128)
    summary.inner.scaled, summary.outer.scaled, summary.tendency.metrics.score
"""
from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .robust import EPS, clamp, is_finite
from .tendency import (
    DEFAULT_SCALE,
    SWAP_MIN_SAMPLES,
    SampleNucleus,
    SwapQuartiles,
    TendencyMetrics,
    aggregate_inner,
    v_inner,
    v_outer,
    v_swap,
    v_swap_quartiles,
    v_tendency,
)

MIN_PATH_RETURNS: int = 2

SOURCE_RETURNS: str = "returns"
SOURCE_HISTORY: str = "history"
SOURCE_NUCLEI: str = "nuclei"


@dataclass(frozen=True)
class VectorPoint:
    price: float
    weight: float | None = None
    volume: float | None = None

    def sample_weight(self) -> float:
        if is_finite(self.weight) and self.weight > 0.0:
            return float(self.weight)
        if is_finite(self.volume) and self.volume > 0.0:
            return float(self.volume)
        return 1.0


@dataclass(frozen=True)
class VectorBin:
    index: int
    scaled: float
    unitless: float
    gamma: float
    share: float
    samples: int

    def to_dict(self) -> dict[str, float]:
        return {
            "index": self.index,
            "scaled": self.scaled,
            "unitless": self.unitless,
            "gamma": self.gamma,
            "share": self.share,
            "samples": self.samples,
        }


@dataclass(frozen=True)
class InnerSummary:
    scaled: float = 0.0
    unitless: float = 0.0
    weight_sum: float = 0.0
    per_bin: tuple[VectorBin, ...] = ()


@dataclass(frozen=True)
class TendencySummary:
    window: int = 30
    normalizer: str = "mad"
    series: tuple[float, ...] = ()
    metrics: TendencyMetrics = field(default_factory=TendencyMetrics)
    source: str = SOURCE_HISTORY


@dataclass(frozen=True)
class VectorSummary:
    scale: float
    bins: int
    samples: int
    inner: InnerSummary
    outer: float
    tendency: TendencySummary
    swap: SwapQuartiles | None = None
    swap_source: str = SOURCE_NUCLEI

    @property
    def spread(self) -> float:
        return self.outer - self.inner.scaled

    def to_dict(self) -> dict[str, Any]:
        return {
            "scale": self.scale,
            "bins": self.bins,
            "samples": self.samples,
            "inner": {
                "scaled": self.inner.scaled,
                "unitless": self.inner.unitless,
                "weight_sum": self.inner.weight_sum,
                "per_bin": [b.to_dict() for b in self.inner.per_bin],
            },
            "outer": {"scaled": self.outer},
            "tendency": {
                "window": self.tendency.window,
                "normalizer": self.tendency.normalizer,
                "source": self.tendency.source,
                "series": list(self.tendency.series),
                "metrics": self.tendency.metrics.to_dict(),
            },
            "swap": self.swap.to_dict() if self.swap is not None else None,
            "swap_source": self.swap_source,
        }


def _field(raw: Any, *names: str) -> Any:
    for name in names:
        value = raw.get(name) if isinstance(raw, Mapping) else getattr(raw, name, None)
        if value is not None:
            return value
    return None


def to_vector_points(points: Iterable[Any]) -> list[VectorPoint]:
    """Coerce floats, mappings or records (``price``/``mid``) into ``VectorPoint``s."""
    out: list[VectorPoint] = []
    for raw in points:
        if isinstance(raw, VectorPoint):
            out.append(raw)
            continue
        price = raw if is_finite(raw) else _field(raw, "price", "mid")
        if not is_finite(price):
            continue
        weight = _field(raw, "weight", "w") if not is_finite(raw) else None
        volume = _field(raw, "volume") if not is_finite(raw) else None
        out.append(VectorPoint(
            price=float(price),
            weight=float(weight) if is_finite(weight) else None,
            volume=float(volume) if is_finite(volume) else None,
        ))
    return out


def build_vector_nuclei(points: Sequence[VectorPoint], bins: int) -> list[SampleNucleus]:
    """One nucleus per bin (empty bins included) of span-normalised prices."""
    bins = max(1, int(bins))
    if not points:
        return [SampleNucleus(values=(), weights=()) for _ in range(bins)]

    prices = [p.price for p in points]
    p_min = min(prices)
    span = max(EPS, max(prices) - p_min)

    values: list[list[float]] = [[] for _ in range(bins)]
    weights: list[list[float]] = [[] for _ in range(bins)]
    for point in points:
        norm = clamp((point.price - p_min) / span, 0.0, 1.0)
        # half-up rounding
        index = int(clamp(math.floor(norm * (bins - 1) + 0.5), 0, bins - 1))
        values[index].append(norm)
        weights[index].append(point.sample_weight())
    return [SampleNucleus(values=tuple(v), weights=tuple(w)) for v, w in zip(values, weights)]


def nucleus_weight(nucleus: SampleNucleus) -> float:
    if nucleus.weights:
        return float(sum(w for w in nucleus.weights if is_finite(w) and w > 0.0))
    return float(len(nucleus.values))


def price_returns_pct(prices: Sequence[float]) -> list[float]:
    """``100 * ln(p[i] / p[i-1])``; pairs with a non-positive price are skipped."""
    out: list[float] = []
    for a, b in zip(prices, prices[1:]):
        if a > 0.0 and b > 0.0:
            out.append(100.0 * math.log(b / a))
    return out


def return_path(returns: Sequence[float]) -> list[float]:
    """Cumulative return path, starting at 0."""
    path = [0.0]
    for r in returns:
        path.append(path[-1] + r)
    return path


def scaled_price_levels(prices: Sequence[float], scale: float) -> list[float]:
    """Population z-score of each price times ``scale``, clipped to ``[-scale, scale]``."""
    if not prices:
        return []
    arr = np.asarray(prices, dtype=np.float64)
    sigma = math.sqrt(max(float(arr.var()), EPS))
    mean = float(arr.mean())
    return [clamp((float(p) - mean) / sigma * scale, -abs(scale), abs(scale)) for p in arr]


def _finite(values: Sequence[float] | None) -> list[float]:
    return [float(v) for v in (values or ()) if is_finite(v)]


def neutral_summary(bins: int = 128, scale: float = DEFAULT_SCALE) -> VectorSummary:
    """Renderable all-zero summary for an empty window."""
    return VectorSummary(
        scale=scale,
        bins=max(1, int(bins)),
        samples=0,
        inner=InnerSummary(),
        outer=0.0,
        tendency=TendencySummary(),
        swap=SwapQuartiles(),
    )


def compute_vector_summary(
    points: Iterable[Any],
    bins: int,
    scale: float = DEFAULT_SCALE,
    history_inner: Sequence[float] | None = None,
    history_outer: Sequence[float] | None = None,
    history_tendency: Sequence[float] | None = None,
    tendency_window: int = 30,
    normalizer: str = "mad",
    swap_alpha: float = 1.2,
    nuclei_points: Iterable[Any] | None = None,
) -> VectorSummary:
    """Vector read-out of a window.

    Args:
        points: Prices or price-bearing records, oldest first.
        bins: Number of nuclei.
        scale: Score envelope; non-finite or zero falls back to 100.
        history_inner: Previous aggregate inner scores of this series.
        history_outer: Previous outer scores; used for the trend fit when
            the window has fewer than 2 returns.
        history_tendency: Previous tendency scores; paired with
            ``history_inner`` for the quartile swap when the window has
            fewer than 4 returns.
        tendency_window: Trend window (at least 3).
        normalizer: ``"mad"`` or ``"stdev"``.
        swap_alpha: Gain of the quartile swap score.
        nuclei_points: Subset of ``points`` to build the nuclei from (for
            example the points inside the retained IDHR ranges). All of
            ``points`` when omitted or empty.

    Returns:
        ``VectorSummary`` with a swap always present.

    Raises:
        ValueError: If ``normalizer`` is not ``"mad"`` or ``"stdev"``.
    """
    scale = float(scale) if is_finite(scale) and scale else DEFAULT_SCALE
    bins = max(1, int(bins))
    vector_points = to_vector_points(points)
    prices = [p.price for p in vector_points]
    returns = price_returns_pct(prices)

    nucleus_source = to_vector_points(nuclei_points) if nuclei_points is not None else []
    nuclei = build_vector_nuclei(nucleus_source or vector_points, bins)
    gammas = [nucleus_weight(nu) for nu in nuclei]
    weight_sum = sum(max(0.0, g) for g in gammas)

    inner_unit, inner_scaled = aggregate_inner(nuclei, gammas, scale)
    outer_scaled = v_outer(nuclei, gammas, scale=scale)

    window = max(3, int(tendency_window))
    if len(returns) >= MIN_PATH_RETURNS:
        series = return_path(returns)
        series_source = SOURCE_RETURNS
    else:
        series = _finite(history_outer) + [outer_scaled]
        series_source = SOURCE_HISTORY
    metrics = v_tendency(series, window=window, scale=scale, normalizer=normalizer)

    if len(returns) >= SWAP_MIN_SAMPLES:
        swap_inner = scaled_price_levels(prices, scale)[-len(returns):]
        swap_trend = [clamp(r, -scale, scale) for r in returns]
        swap_source = SOURCE_RETURNS
    else:
        swap_inner = _finite(history_inner) + [inner_scaled]
        swap_trend = _finite(history_tendency) + [metrics.score]
        swap_source = SOURCE_HISTORY

    if min(len(swap_inner), len(swap_trend)) >= SWAP_MIN_SAMPLES:
        swap = v_swap_quartiles(swap_inner, swap_trend, scale=scale, alpha=swap_alpha)
    else:
        score = v_swap(nuclei, metrics.score, gammas, scale=scale)
        swap = SwapQuartiles(q=score / scale, score=score, q1=0.0, q3=0.0)
        swap_source = SOURCE_NUCLEI

    per_bin = []
    for index, (nucleus, gamma) in enumerate(zip(nuclei, gammas)):
        scaled = v_inner(nucleus, scale=scale)
        gamma = max(0.0, gamma)
        per_bin.append(VectorBin(
            index=index,
            scaled=scaled,
            unitless=scaled / scale,
            gamma=gamma,
            share=gamma / weight_sum if weight_sum > 0.0 else 1.0 / len(nuclei),
            samples=len(nucleus.values),
        ))

    return VectorSummary(
        scale=scale,
        bins=bins,
        samples=len(vector_points),
        inner=InnerSummary(
            scaled=inner_scaled,
            unitless=inner_unit,
            weight_sum=weight_sum,
            per_bin=tuple(per_bin),
        ),
        outer=outer_scaled,
        tendency=TendencySummary(
            window=window,
            normalizer=normalizer,
            series=tuple(series),
            metrics=metrics,
            source=series_source,
        ),
        swap=swap,
        swap_source=swap_source,
    )
