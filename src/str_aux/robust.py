"""Robust statistics shared by the histogram, vector and metric engines.

All helpers accept any float sequence, ignore nothing and never raise on
empty input (they return ``0.0`` instead). Callers filter non-finite values
before calling.
"""
from __future__ import annotations

import math
import numbers
from collections.abc import Sequence

import numpy as np

MAD_TO_SIGMA: float = 1.4826
"""Scale factor turning a median absolute deviation into a normal-consistent sigma."""

EPS: float = 1e-9


def median(values: Sequence[float]) -> float:
    """Median with the usual even-length midpoint convention."""
    if len(values) == 0:
        return 0.0
    return float(np.median(np.asarray(values, dtype=np.float64)))


def mad(values: Sequence[float]) -> float:
    """Median absolute deviation around the median (unscaled)."""
    if len(values) == 0:
        return 0.0
    arr = np.asarray(values, dtype=np.float64)
    return float(np.median(np.abs(arr - np.median(arr))))


def robust_sigma(values: Sequence[float], floor: float = 0.0) -> float:
    """MAD x 1.4826, floored at ``floor``.

    Args:
        values: Sample values.
        floor: Lower bound applied to the result.

    Returns:
        Outlier-resistant dispersion estimate.
    """
    return max(MAD_TO_SIGMA * mad(values), floor)


def sample_stdev(values: Sequence[float]) -> float:
    """Sample standard deviation (n - 1); ``0.0`` for fewer than 2 values."""
    if len(values) < 2:
        return 0.0
    return float(np.std(np.asarray(values, dtype=np.float64), ddof=1))


def weighted_mean(values: Sequence[float], weights: Sequence[float], fallback: float = 0.0) -> float:
    """Mean of ``values`` weighted by the positive entries of ``weights``."""
    total = 0.0
    acc = 0.0
    for value, weight in zip(values, weights):
        if weight > 0.0:
            total += weight
            acc += weight * value
    return acc / total if total > 0.0 else fallback


def mean_or_zero(values: Sequence[float]) -> float:
    return float(sum(values)) / len(values) if len(values) else 0.0


def quantile(sorted_values: Sequence[float], p: float) -> float:
    """Linear-interpolated quantile of an already sorted sequence."""
    if len(sorted_values) == 0:
        return 0.0
    idx = (len(sorted_values) - 1) * p
    lo = math.floor(idx)
    hi = math.ceil(idx)
    if lo == hi:
        return float(sorted_values[lo])
    a = float(sorted_values[lo])
    b = float(sorted_values[hi])
    return a + (b - a) * (idx - lo)


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def is_finite(value: object) -> bool:
    """True for real numbers that are neither NaN nor infinite (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return False
    return math.isfinite(float(value))
