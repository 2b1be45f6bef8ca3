"""Tests for the IDHR histogram, floating modes, nuclei and retained ranges.

The five-point fixture ``[100, 101, 99, 105, 102]`` against an opening of
100 with a 2 x 2 layout is small enough to verify by hand:

    returns  = [0, 0.00995033, -0.01005034, 0.04879016, 0.01980263]
    span     = [-0.01005034, 0.04879016], width = 0.014710125
    sub-bins = [0, 1, 0, 3, 2] -> counts [2, 1, 1, 1]
"""
from __future__ import annotations

import math

import numpy as np
import pytest

from str_aux.idhr import (
    NEUTRAL_BFM01,
    IdhrBins,
    IdhrConfig,
    bfm_position,
    compute_fm,
    compute_idhr_bins,
    confidence,
    densest_bins,
    derive_idhr_ranges,
    disruption_from_counts,
    extract_nuclei,
    filter_by_idhr_ranges,
    gfm_price,
    log_returns,
    smooth_counts,
    weighted_top_k_return,
)

PRICES: list[float] = [100.0, 101.0, 99.0, 105.0, 102.0]
OPENING: float = 100.0
SMALL: IdhrConfig = IdhrConfig(primary_bins=2, secondary_bins=2)

LO: float = math.log(0.99)
HI: float = math.log(1.05)
WIDTH: float = (HI - LO) / 4


# ---------------------------------------------------------------------------
# Histogram
# ---------------------------------------------------------------------------

def test_log_returns_accepts_prices_mappings_and_records() -> None:
    """Returns are ln(price / opening); invalid prices are skipped."""
    r = log_returns([100.0, {"price": 110.0}, {"mid": 90.0}, -1.0, float("nan")], OPENING)
    assert r.tolist() == pytest.approx([0.0, math.log(1.1), math.log(0.9)])
    assert log_returns([100.0], 0.0).size == 0


def test_fixture_counts_edges_and_probs() -> None:
    """Hand-computed counts, centres and probabilities for the 2 x 2 fixture."""
    bins = compute_idhr_bins(PRICES, OPENING, SMALL)

    assert bins.raw_counts == (2, 1, 1, 1)
    assert bins.counts == (2, 1, 1, 1)
    assert bins.probs == pytest.approx((0.4, 0.2, 0.2, 0.2))
    assert bins.bin_width == pytest.approx(WIDTH)
    assert bins.range_min == pytest.approx(LO)
    assert bins.range_max == pytest.approx(HI)
    assert bins.edges == pytest.approx(
        [-0.00269528, 0.01201484, 0.02672497, 0.04143509], abs=1e-8,
    )
    assert bins.selected_sub_bins == (0, 1, 2, 3)
    assert bins.selected_primaries == (0, 1)
    assert bins.total == 5


def test_retention_promotes_whole_primary_bin() -> None:
    """Keeping only the densest sub-bin keeps every sub-bin of its primary."""
    config = IdhrConfig(primary_bins=2, secondary_bins=2, retained_bins=1)
    bins = compute_idhr_bins(PRICES, OPENING, config)

    assert bins.selected_sub_bins == (0,)
    assert bins.selected_primaries == (0,)
    assert bins.counts == (2, 1, 0, 0)
    assert bins.raw_counts == (2, 1, 1, 1)
    assert bins.probs == pytest.approx((2 / 3, 1 / 3, 0.0, 0.0))

    inliers = [0.0, math.log(1.01), math.log(0.99)]
    assert bins.mu == pytest.approx(sum(inliers) / 3)
    assert bins.sigma == pytest.approx(1.4826 * math.log(1.01))


def test_ties_rank_lower_index_first() -> None:
    """Equal counts are ranked by ascending sub-bin index."""
    config = IdhrConfig(primary_bins=4, secondary_bins=1, retained_bins=2)
    bins = compute_idhr_bins([100.0, 101.0, 102.0, 103.0], OPENING, config)
    assert bins.raw_counts == (1, 1, 1, 1)
    assert bins.selected_sub_bins == (0, 1)
    assert bins.counts == (1, 1, 0, 0)


def test_empty_input_is_zeroed() -> None:
    """No usable prices gives a well-formed zero histogram."""
    config = IdhrConfig(primary_bins=2, secondary_bins=3)
    bins = compute_idhr_bins([], OPENING, config)
    assert bins.counts == (0,) * 6
    assert bins.probs == (0.0,) * 6
    assert bins.bin_width == 0.0
    assert bins.sigma == config.sigma_min
    assert bins.total == 0


def test_constant_prices_get_a_synthetic_span() -> None:
    """A zero-width return span is widened so every point lands in a bin."""
    bins = compute_idhr_bins([100.0] * 6, OPENING, SMALL)
    assert bins.bin_width > 0.0
    assert bins.total == 6
    assert sum(bins.probs) == pytest.approx(1.0, abs=1e-9)


@pytest.mark.parametrize("seed", [0, 1, 2])
def test_histogram_invariants_on_random_walks(seed: int) -> None:
    """Masked total never exceeds the input size and probs sum to one."""
    rng = np.random.default_rng(seed)
    prices = 100.0 * np.exp(np.cumsum(rng.normal(0.0, 0.002, size=400)))
    config = IdhrConfig(primary_bins=16, secondary_bins=16, retained_bins=8)
    bins = compute_idhr_bins(prices.tolist(), OPENING, config)

    assert len(bins.counts) == 256
    assert bins.bin_width > 0.0
    assert bins.total <= len(prices)
    assert sum(bins.probs) == pytest.approx(1.0, abs=1e-9)
    assert all(c <= r for c, r in zip(bins.counts, bins.raw_counts))
    assert sum(bins.raw_counts) == len(prices)


def test_total_bins_override_rebalances_shape() -> None:
    """total_bins fixes the product while keeping the secondary split."""
    assert IdhrConfig(total_bins=256).shape() == (16, 16)
    assert IdhrConfig(total_bins=10).shape() == (1, 10)
    assert IdhrConfig(total_bins=64, secondary_bins=8).shape() == (8, 8)


def test_invalid_config_raises() -> None:
    """validate() rejects non-positive parameters."""
    with pytest.raises(ValueError, match="alpha"):
        IdhrConfig(alpha=0.0).validate()
    with pytest.raises(ValueError, match="retained_bins"):
        IdhrConfig(retained_bins=0).validate()
    with pytest.raises(ValueError, match="primary_bins"):
        compute_idhr_bins(PRICES, OPENING, IdhrConfig(primary_bins=0))


# ---------------------------------------------------------------------------
# Floating modes and confidence
# ---------------------------------------------------------------------------

def test_weighted_center_gfm_and_bfm_on_fixture() -> None:
    """GFM blends bin centres by count; BFM is its position across the edges."""
    bins = compute_idhr_bins(PRICES, OPENING, SMALL)

    top = densest_bins(bins, 8)
    assert [i for i, _ in top] == [0, 1, 2, 3]

    r_center = weighted_top_k_return(bins, 8)
    expected = sum(e * c for e, c in zip(bins.edges, (2, 1, 1, 1))) / 5
    assert r_center == pytest.approx(expected)
    assert gfm_price(bins, OPENING, 8) == pytest.approx(OPENING * math.exp(expected))
    # mean index 1.2 over 3 centre gaps
    assert bfm_position(bins, r_center) == pytest.approx(0.4)


def test_gfm_invalid_opening_is_nan() -> None:
    """A non-positive opening has no price-space mode."""
    bins = compute_idhr_bins(PRICES, OPENING, SMALL)
    assert math.isnan(gfm_price(bins, 0.0))


def test_confidence_in_unit_interval() -> None:
    """confidence = 1 / (1 + mean|z|) stays in (0, 1]."""
    bins = compute_idhr_bins(PRICES, OPENING, SMALL)
    c = confidence(bins)
    assert 0.0 < c <= 1.0
    z = np.abs((np.asarray(bins.returns) - bins.mu) / bins.sigma).mean()
    assert c == pytest.approx(1.0 / (1.0 + z))


def test_compute_fm_bundles_readouts() -> None:
    """compute_fm returns the histogram and a consistent floating-mode record."""
    bins, fm = compute_fm(PRICES, OPENING, SMALL, top_k=8)
    assert fm.gfm == pytest.approx(gfm_price(bins, OPENING, 8))
    assert fm.bfm01 == pytest.approx(0.4)
    assert fm.confidence == pytest.approx(confidence(bins))
    assert fm.sigma == bins.sigma
    assert fm.disruption == pytest.approx(disruption_from_counts(bins.counts))


def test_compute_fm_on_empty_window() -> None:
    """An empty window still yields finite read-outs."""
    bins, fm = compute_fm([], OPENING, SMALL)
    assert bins.total == 0
    assert fm.confidence == 1.0
    assert fm.nuclei == ()
    assert math.isfinite(fm.bfm01)


def test_degenerate_span_reads_neutral_bfm() -> None:
    """One bin or a collapsed span has no position; outliers are clamped."""
    _, fm = compute_fm([100.0, 101.0, 102.0], OPENING, IdhrConfig(total_bins=1))
    assert fm.bfm01 == NEUTRAL_BFM01 == 0.5

    bins = compute_idhr_bins(PRICES, OPENING, SMALL)
    assert bfm_position(bins, float("nan")) == 0.5
    assert bfm_position(bins, 1.0) == 1.0
    assert bfm_position(bins, -1.0) == 0.0


# ---------------------------------------------------------------------------
# Nuclei, disruption, ranges
# ---------------------------------------------------------------------------

def test_smooth_counts_truncates_at_edges() -> None:
    """Edge bins average over the neighbours that exist."""
    sm = smooth_counts([0, 0, 10, 0, 0], window=3)
    assert sm.tolist() == pytest.approx([0.0, 10 / 3, 10 / 3, 10 / 3, 0.0])
    sm5 = smooth_counts([5, 0, 0, 0, 0], window=5)
    assert sm5[0] == pytest.approx(5 / 3)


def _bins_from_counts(counts: list[int]) -> IdhrBins:
    n = len(counts)
    return IdhrBins(
        edges=tuple(float(i) for i in range(n)),
        counts=tuple(counts),
        raw_counts=tuple(counts),
        probs=tuple(c / sum(counts) for c in counts),
        mu=0.0,
        sigma=1.0,
        selected_sub_bins=(),
        selected_primaries=(),
        primary_bins=1,
        secondary_bins=n,
        bin_width=1.0,
        range_min=-0.5,
        range_max=n - 0.5,
    )


def test_nuclei_are_local_peaks_sorted_by_density() -> None:
    """Two separated clusters yield two nuclei, densest first."""
    counts = [0] * 24
    counts[3:8] = [1, 5, 20, 5, 1]
    counts[15:20] = [1, 3, 8, 3, 1]
    nuclei = extract_nuclei(_bins_from_counts(counts), top_n=3)

    assert [nu.bin_index for nu in nuclei] == [5, 17]
    assert nuclei[0].density == pytest.approx(6.4 / 48)
    assert nuclei[1].density == pytest.approx(3.2 / 48)
    assert nuclei[0].first_degree == pytest.approx(0.0)
    assert nuclei[0].second_degree == pytest.approx(-0.4)


def test_single_spike_has_no_strict_peak() -> None:
    """A lone spike smooths into a plateau, which is not a nucleus."""
    counts = [0] * 12
    counts[6] = 10
    assert extract_nuclei(_bins_from_counts(counts)) == []


def test_disruption_from_counts() -> None:
    """Mean absolute neighbour step; None for an empty histogram."""
    assert disruption_from_counts([]) is None
    assert disruption_from_counts([0, 4, 0, 0]) == pytest.approx(8 / 4)


def test_derive_ranges_cover_retained_primaries() -> None:
    """Each retained primary maps to one contiguous return range."""
    config = IdhrConfig(primary_bins=2, secondary_bins=2, retained_bins=1)
    bins = compute_idhr_bins(PRICES, OPENING, config)
    ranges = derive_idhr_ranges(bins)

    assert len(ranges) == 1
    assert ranges[0].min == pytest.approx(LO)
    assert ranges[0].max == pytest.approx(LO + 2 * WIDTH)


def test_filter_by_ranges_keeps_inliers_and_falls_back() -> None:
    """Points outside every retained range are dropped unless nothing survives."""
    config = IdhrConfig(primary_bins=2, secondary_bins=2, retained_bins=1)
    ranges = derive_idhr_ranges(compute_idhr_bins(PRICES, OPENING, config))

    kept = filter_by_idhr_ranges(PRICES, OPENING, ranges)
    assert 100.0 in kept and 101.0 in kept
    assert 105.0 not in kept and 102.0 not in kept

    assert filter_by_idhr_ranges([150.0], OPENING, ranges) == [150.0]
    assert filter_by_idhr_ranges(PRICES, OPENING, []) == PRICES
