"""IDHR: Inertial Density Histogram with Retention.

Two-level histogram over log-returns ``ln(price / opening)``:

    1. The return span is split into ``primary * secondary`` equal sub-bins.
    2. Sub-bins are ranked by occupancy (ties -> lower index) and the top
       ``retained_bins`` are selected.
    3. Retention is promoted to the primary level: every sub-bin of a
       primary bin that holds at least one selected sub-bin survives, all
       other sub-bins are masked to zero. Dense regions therefore stay
       contiguous instead of being reduced to isolated spikes.
    4. Probabilities and the inlier mean / robust sigma are recomputed from
       the surviving sub-bins only.

On top of the histogram this module derives the floating modes (GFM in
price space, BFM as a 0..1 position in the span), the confidence score,
density nuclei and primary-aligned retained return ranges.

Every entry point is total: empty or degenerate input yields a zeroed,
well-formed result instead of raising.
"""
from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .robust import EPS, clamp, is_finite, robust_sigma

# ──────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────

SPAN_NUDGE: float = 1e-6
"""Half-width added to a span that is still degenerate after synthesis."""

NUCLEI_SMOOTH_WINDOW: int = 5
"""Moving-average window applied to masked counts before peak search."""

DEFAULT_TOP_K: int = 8
"""Number of densest bins blended into the floating-mode centre."""

DEFAULT_TOP_NUCLEI: int = 3

NEUTRAL_BFM01: float = 0.5
"""Bounded floating mode reported when the edge span is degenerate."""


@dataclass(frozen=True)
class IdhrConfig:
    """Histogram shape and robustness parameters.

    ``total_bins`` overrides the factorisation: ``primary`` becomes
    ``floor(total / secondary)`` and ``secondary`` is then rebalanced to
    ``floor(total / primary)``.
    """

    primary_bins: int = 16
    secondary_bins: int = 16
    total_bins: int | None = None
    alpha: float = 2.5
    sigma_min: float = 1e-6
    retained_bins: int = 16

    def validate(self) -> None:
        if self.primary_bins < 1 or self.secondary_bins < 1:
            raise ValueError(
                f"primary_bins/secondary_bins must be >= 1, got "
                f"{self.primary_bins}/{self.secondary_bins}"
            )
        if self.total_bins is not None and self.total_bins < 1:
            raise ValueError(f"total_bins must be >= 1 when set, got {self.total_bins}")
        if not (self.alpha > 0.0 and math.isfinite(self.alpha)):
            raise ValueError(f"alpha must be finite and > 0, got {self.alpha}")
        if not (self.sigma_min > 0.0 and math.isfinite(self.sigma_min)):
            raise ValueError(f"sigma_min must be finite and > 0, got {self.sigma_min}")
        if self.retained_bins < 1:
            raise ValueError(f"retained_bins must be >= 1, got {self.retained_bins}")

    def shape(self) -> tuple[int, int]:
        """Resolved ``(primary, secondary)`` after the ``total_bins`` override."""
        primary = max(1, int(self.primary_bins))
        secondary = max(1, int(self.secondary_bins))
        if self.total_bins:
            total = max(1, int(self.total_bins))
            primary = max(1, total // secondary)
            secondary = max(1, total // primary)
        return primary, secondary


@dataclass(frozen=True)
class IdhrBins:
    """Masked histogram snapshot. Recomputed per request, never mutated."""

    edges: tuple[float, ...]
    counts: tuple[int, ...]
    raw_counts: tuple[int, ...]
    probs: tuple[float, ...]
    mu: float
    sigma: float
    selected_sub_bins: tuple[int, ...]
    selected_primaries: tuple[int, ...]
    primary_bins: int
    secondary_bins: int
    bin_width: float
    range_min: float
    range_max: float
    returns: tuple[float, ...] = ()

    @property
    def bins(self) -> int:
        return self.primary_bins * self.secondary_bins

    @property
    def total(self) -> int:
        """Masked count total."""
        return int(sum(self.counts))

    def to_dict(self) -> dict[str, Any]:
        return {
            "edges": list(self.edges),
            "counts": list(self.counts),
            "probs": list(self.probs),
            "mu": self.mu,
            "sigma": self.sigma,
            "selected_sub_bins": list(self.selected_sub_bins),
            "selected_primaries": list(self.selected_primaries),
            "primary_bins": self.primary_bins,
            "secondary_bins": self.secondary_bins,
            "bin_width": self.bin_width,
            "range": {"min": self.range_min, "max": self.range_max},
            "total": self.total,
        }


@dataclass(frozen=True)
class Nucleus:
    """A local density peak of the smoothed masked histogram."""

    bin_index: int
    density: float
    first_degree: float
    second_degree: float

    def to_dict(self) -> dict[str, float]:
        return {
            "bin_index": self.bin_index,
            "density": self.density,
            "first_degree": self.first_degree,
            "second_degree": self.second_degree,
        }


@dataclass(frozen=True)
class FloatingMode:
    """Floating-mode read-out of one histogram."""

    gfm: float
    bfm01: float
    r_center: float
    sigma: float
    z_mean_abs: float
    confidence: float
    inertia: float
    disruption: float
    nuclei: tuple[Nucleus, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ReturnRange:
    min: float
    max: float


# ──────────────────────────────────────────────────────────────────────
# Inputs
# ──────────────────────────────────────────────────────────────────────


def _price_of(point: Any) -> Any:
    if isinstance(point, Mapping):
        return point.get("price", point.get("mid"))
    for attr in ("price", "mid"):
        if hasattr(point, attr):
            return getattr(point, attr)
    return point


def log_returns(points: Iterable[Any], opening: float) -> np.ndarray:
    """``ln(price / opening)`` for every finite, positive price.

    ``points`` may hold bare prices, mappings with ``price``/``mid`` or
    objects exposing one of those attributes.
    """
    if not (is_finite(opening) and opening > 0.0):
        return np.empty(0, dtype=np.float64)
    prices = [float(p) for p in map(_price_of, points) if is_finite(p) and p > 0.0]
    if not prices:
        return np.empty(0, dtype=np.float64)
    return np.log(np.asarray(prices, dtype=np.float64) / float(opening))


# ──────────────────────────────────────────────────────────────────────
# Histogram
# ──────────────────────────────────────────────────────────────────────


def _empty_bins(primary: int, secondary: int, sigma_min: float) -> IdhrBins:
    n = primary * secondary
    return IdhrBins(
        edges=(0.0,) * n,
        counts=(0,) * n,
        raw_counts=(0,) * n,
        probs=(0.0,) * n,
        mu=0.0,
        sigma=sigma_min,
        selected_sub_bins=(),
        selected_primaries=(),
        primary_bins=primary,
        secondary_bins=secondary,
        bin_width=0.0,
        range_min=0.0,
        range_max=0.0,
    )


def _span(returns: np.ndarray, config: IdhrConfig) -> tuple[float, float]:
    lo = float(returns.min())
    hi = float(returns.max())
    if not hi > lo:
        sd = max(robust_sigma(returns), config.sigma_min)
        center = float(returns.mean())
        half = sd * config.alpha
        lo, hi = center - half, center + half
    if not hi > lo:
        lo -= SPAN_NUDGE
        hi += SPAN_NUDGE
    return lo, hi


def _sub_bin_index(returns: np.ndarray, lo: float, hi: float, width: float, n: int) -> np.ndarray:
    idx = np.floor((returns - lo) / width).astype(np.int64)
    idx = np.clip(idx, 0, n - 1)
    idx[returns <= lo] = 0
    idx[returns >= hi] = n - 1
    return idx


def compute_idhr_bins(
    points: Iterable[Any],
    opening: float,
    config: IdhrConfig | None = None,
) -> IdhrBins:
    """Build the masked two-level histogram for a window of points.

    Args:
        points: Prices (or price-bearing records) of the window.
        opening: Reference price; returns are ``ln(price / opening)``.
        config: Histogram parameters; defaults to 16 x 16, T = 16.

    Returns:
        ``IdhrBins``. Empty input gives all-zero arrays with ``bin_width``
        0 and ``sigma == sigma_min``.

    Raises:
        ValueError: If ``config`` is invalid.
    """
    config = config or IdhrConfig()
    config.validate()
    primary, secondary = config.shape()
    n = primary * secondary
    retained = max(1, min(config.retained_bins, n))

    returns = log_returns(points, opening)
    if returns.size == 0:
        return _empty_bins(primary, secondary, config.sigma_min)

    lo, hi = _span(returns, config)
    width = (hi - lo) / n
    edges = lo + (np.arange(n, dtype=np.float64) + 0.5) * width

    assignments = _sub_bin_index(returns, lo, hi, width, n)
    counts = np.bincount(assignments, minlength=n)

    # Stable sort on -count keeps lower indices first among ties.
    ranked = np.argsort(-counts, kind="stable")[:retained]
    primaries = sorted({int(i) // secondary for i in ranked})
    active = np.zeros(n, dtype=bool)
    for p in primaries:
        active[p * secondary:(p + 1) * secondary] = True

    masked = np.where(active, counts, 0)
    total = int(masked.sum())
    probs = masked / total if total > 0 else np.zeros(n, dtype=np.float64)

    inliers = returns[active[assignments]]
    if inliers.size == 0:
        inliers = returns

    return IdhrBins(
        edges=tuple(float(e) for e in edges),
        counts=tuple(int(c) for c in masked),
        raw_counts=tuple(int(c) for c in counts),
        probs=tuple(float(p) for p in probs),
        mu=float(inliers.mean()),
        sigma=robust_sigma(inliers, floor=config.sigma_min),
        selected_sub_bins=tuple(int(i) for i in ranked),
        selected_primaries=tuple(primaries),
        primary_bins=primary,
        secondary_bins=secondary,
        bin_width=float(width),
        range_min=lo,
        range_max=hi,
        returns=tuple(float(r) for r in returns),
    )


# ──────────────────────────────────────────────────────────────────────
# Derived read-outs
# ──────────────────────────────────────────────────────────────────────


def densest_bins(bins: IdhrBins, k: int = DEFAULT_TOP_K) -> list[tuple[int, int]]:
    """Top-``k`` ``(index, masked_count)`` pairs, count desc then index asc."""
    n = len(bins.counts)
    if n == 0:
        return []
    k = max(1, min(int(k), n))
    order = sorted(range(n), key=lambda i: (-bins.counts[i], i))
    return [(i, bins.counts[i]) for i in order[:k]]


def weighted_top_k_return(bins: IdhrBins, k: int = DEFAULT_TOP_K) -> float:
    """Centre of the top-``k`` bins weighted by their normalised masked counts."""
    top = densest_bins(bins, k)
    mass = sum(c for _, c in top) or 1
    return float(sum(bins.edges[i] * (c / mass) for i, c in top))


def gfm_price(bins: IdhrBins, opening: float, k: int = DEFAULT_TOP_K) -> float:
    """General floating mode in price space: ``opening * exp(r_center)``."""
    if not (is_finite(opening) and opening > 0.0):
        return math.nan
    return float(opening) * math.exp(weighted_top_k_return(bins, k))


def bfm_position(bins: IdhrBins, r_center: float) -> float:
    """Bounded floating mode: ``r_center`` as a 0..1 position across the edges.

    A single bin or a collapsed edge span has no position and reads as the
    neutral ``0.5``.
    """
    if not bins.edges or not is_finite(r_center):
        return NEUTRAL_BFM01
    lo = bins.edges[0]
    hi = bins.edges[-1]
    if not hi - lo > EPS:
        return NEUTRAL_BFM01
    return clamp((r_center - lo) / (hi - lo), 0.0, 1.0)


def mean_abs_z(bins: IdhrBins, returns: Sequence[float] | None = None) -> float:
    values = bins.returns if returns is None else returns
    if len(values) == 0:
        return 0.0
    sigma = bins.sigma if bins.sigma > 0.0 else 1.0
    arr = np.asarray(values, dtype=np.float64)
    return float(np.mean(np.abs((arr - bins.mu) / sigma)))


def confidence(bins: IdhrBins, returns: Sequence[float] | None = None) -> float:
    """``1 / (1 + mean|z|)`` of the returns against the histogram mu/sigma."""
    return 1.0 / (1.0 + mean_abs_z(bins, returns))


def smooth_counts(counts: Sequence[float], window: int = NUCLEI_SMOOTH_WINDOW) -> np.ndarray:
    """Centred moving average, truncated at the edges."""
    arr = np.asarray(counts, dtype=np.float64)
    n = arr.size
    if n == 0 or window <= 1:
        return arr.copy()
    half = window // 2
    csum = np.concatenate(([0.0], np.cumsum(arr)))
    idx = np.arange(n)
    lo = np.clip(idx - half, 0, n)
    hi = np.clip(idx + half + 1, 0, n)
    return (csum[hi] - csum[lo]) / (hi - lo)


def extract_nuclei(bins: IdhrBins, top_n: int = DEFAULT_TOP_NUCLEI) -> list[Nucleus]:
    """Strict local maxima of the smoothed masked counts, highest first."""
    sm = smooth_counts(bins.counts)
    n = sm.size
    peaks = [
        (i, float(sm[i]))
        for i in range(1, n - 1)
        if sm[i] > sm[i - 1] and sm[i] > sm[i + 1]
    ]
    peaks.sort(key=lambda peak: (-peak[1], peak[0]))
    total = bins.total or 1
    return [
        Nucleus(
            bin_index=i,
            density=v / total,
            first_degree=float((sm[i + 1] - sm[i - 1]) / 2.0),
            second_degree=float(sm[i + 1] - 2.0 * sm[i] + sm[i - 1]),
        )
        for i, v in peaks[: max(1, top_n)]
    ]


def disruption_from_counts(counts: Sequence[float]) -> float | None:
    """Mean absolute step between neighbouring counts; ``None`` when empty."""
    if len(counts) == 0:
        return None
    arr = np.asarray(counts, dtype=np.float64)
    return float(np.abs(np.diff(arr)).sum() / arr.size)


def compute_fm(
    points: Iterable[Any],
    opening: float,
    config: IdhrConfig | None = None,
    top_k: int = DEFAULT_TOP_K,
    top_nuclei: int = DEFAULT_TOP_NUCLEI,
) -> tuple[IdhrBins, FloatingMode]:
    """Histogram plus its floating-mode read-out in one pass."""
    bins = compute_idhr_bins(points, opening, config)
    r_center = weighted_top_k_return(bins, top_k)
    z = mean_abs_z(bins)
    returns = np.asarray(bins.returns, dtype=np.float64)
    inertia = float(np.mean((returns - bins.mu) ** 2)) if returns.size else 0.0
    fm = FloatingMode(
        gfm=gfm_price(bins, opening, top_k),
        bfm01=bfm_position(bins, r_center),
        r_center=r_center,
        sigma=bins.sigma,
        z_mean_abs=z,
        confidence=1.0 / (1.0 + z),
        inertia=inertia,
        disruption=disruption_from_counts(bins.counts) or 0.0,
        nuclei=tuple(extract_nuclei(bins, top_nuclei)),
    )
    return bins, fm


# ──────────────────────────────────────────────────────────────────────
# Retained ranges
# ──────────────────────────────────────────────────────────────────────


def derive_idhr_ranges(bins: IdhrBins) -> list[ReturnRange]:
    """Return-space ranges covered by each retained primary bin."""
    ranges: list[ReturnRange] = []
    n = len(bins.edges)
    if bins.bin_width <= 0.0:
        return ranges
    half = bins.bin_width / 2.0
    for primary in bins.selected_primaries:
        start = primary * bins.secondary_bins
        end = min(n - 1, start + bins.secondary_bins - 1)
        if start < 0 or start >= n:
            continue
        ranges.append(ReturnRange(min=bins.edges[start] - half, max=bins.edges[end] + half))
    return ranges


def filter_by_idhr_ranges(
    points: Sequence[Any],
    opening: float,
    ranges: Sequence[ReturnRange],
) -> list[Any]:
    """Keep points whose return falls in a retained range.

    Falls back to the unfiltered input when nothing would survive or when
    there is nothing to filter against.
    """
    if not ranges or not (is_finite(opening) and opening > 0.0):
        return list(points)
    kept = []
    for point in points:
        price = _price_of(point)
        if not (is_finite(price) and price > 0.0):
            continue
        r = math.log(price / opening)
        if any(rng.min <= r <= rng.max for rng in ranges):
            kept.append(point)
    return kept if kept else list(points)
