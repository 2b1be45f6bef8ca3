"""Tests for the tendency vectors and the hysteresis decision engine."""
from __future__ import annotations

import math

import pytest

from str_aux.tendency import (
    STATE_COLLAPSE,
    STATE_GROWTH,
    STATE_INDETERMINATE,
    STATE_MAINTENANCE,
    STATE_SHIFT,
    DecideConfig,
    SampleNucleus,
    TendencyTracker,
    aggregate_inner,
    decide_tendency,
    inner_unitless,
    v_inner,
    v_outer,
    v_swap,
    v_swap_quartiles,
    v_tendency,
)

SYMMETRIC = SampleNucleus(values=(1.0, 2.0, 3.0))
SKEWED = SampleNucleus(values=(0.0, 0.0, 0.0, 1.0), center=0.0)

# diffs 1,3,2,0,4,1,2,3,1 -> MAD 1
RISING: list[float] = [0.0, 1.0, 4.0, 6.0, 6.0, 10.0, 11.0, 13.0, 16.0, 17.0]


# ---------------------------------------------------------------------------
# vInner / vOuter
# ---------------------------------------------------------------------------

def test_weight_resolution_prefers_weight_then_volume() -> None:
    """Invalid weights fall back to volume, then to one."""
    nucleus = SampleNucleus(
        values=(1.0, 2.0, 3.0),
        weights=(2.0, float("nan"), -1.0),
        volumes=(5.0, 4.0, None),
    )
    assert nucleus.resolved_weights() == [2.0, 4.0, 1.0]
    assert nucleus.weight_sum == 7.0


def test_inner_is_zero_for_symmetric_and_empty_nuclei() -> None:
    """Balanced residuals cancel; an empty nucleus is neutral."""
    assert inner_unitless(SYMMETRIC) == pytest.approx(0.0)
    assert inner_unitless(SampleNucleus(values=())) == 0.0


def test_inner_skew_with_explicit_center() -> None:
    """One positive residual over a zero MAD saturates its tanh term."""
    assert inner_unitless(SKEWED) == pytest.approx(0.25)
    assert v_inner(SKEWED) == pytest.approx(0.25)
    assert v_inner(SKEWED, scale=100.0) == pytest.approx(100.0 * math.tanh(0.25))


def test_outer_composes_inner_scores() -> None:
    """vOuter averages inner scores by weight, optionally unnormalised."""
    nuclei = [SKEWED, SYMMETRIC]
    assert v_outer(nuclei) == pytest.approx(100.0 * math.tanh(0.125))
    assert v_outer(nuclei, normalize=False) == pytest.approx(100.0 * math.tanh(0.25))
    assert v_outer(nuclei, weights=[3.0, 1.0]) == pytest.approx(100.0 * math.tanh(0.75 / 4.0))
    assert v_outer([]) == 0.0


def test_aggregate_inner_is_linear_in_scale() -> None:
    """The aggregate is scaled without a tanh re-bound."""
    unit, scaled = aggregate_inner([SKEWED, SYMMETRIC], scale=100.0)
    assert unit == pytest.approx(0.125)
    assert scaled == pytest.approx(12.5)
    assert aggregate_inner([]) == (0.0, 0.0)


# ---------------------------------------------------------------------------
# vTendency / vSwap
# ---------------------------------------------------------------------------

def test_v_tendency_direction_follows_trend() -> None:
    """A rising series scores positive and its mirror negative."""
    up = v_tendency(RISING)
    down = v_tendency([-v for v in RISING])

    assert up.direction > 0.9
    assert down.direction == pytest.approx(-up.direction)
    assert 0.0 <= up.strength <= 1.0
    assert up.score == pytest.approx(up.direction * 100.0)
    assert up.slope > 0.0 and up.r > 0.9


def test_v_tendency_short_and_flat_series_are_neutral() -> None:
    """Fewer than two values or zero dispersion give no direction."""
    assert v_tendency([1.0]).score == 0.0
    flat = v_tendency([5.0] * 10)
    assert flat.direction == 0.0
    assert flat.slope == 0.0


def test_v_tendency_stdev_normalizer_and_bad_name() -> None:
    """stdev normalises by sample deviation; unknown names are rejected."""
    assert v_tendency(RISING, normalizer="stdev").direction > 0.0
    with pytest.raises(ValueError, match="normalizer"):
        v_tendency(RISING, normalizer="zscore")


def test_v_swap_sign_tracks_tendency() -> None:
    """Agreement flips with the trend sign and vanishes for a zero trend."""
    assert v_swap([SKEWED], 50.0) == pytest.approx(100.0 * math.tanh(1.0))
    assert v_swap([SKEWED], -50.0) == pytest.approx(-100.0 * math.tanh(1.0))
    assert v_swap([SKEWED], 0.0) == 0.0
    assert v_swap([], 50.0) == 0.0


def test_v_swap_quartiles() -> None:
    """Top-quartile trend with high inner against bottom-quartile with low inner."""
    result = v_swap_quartiles([-50.0, -20.0, 20.0, 50.0], [-40.0, -10.0, 10.0, 40.0])
    assert result.q1 == pytest.approx(-0.175)
    assert result.q3 == pytest.approx(0.175)
    assert result.q == pytest.approx(0.5)
    assert result.score == pytest.approx(100.0 * math.tanh(1.2 * 0.5))
    assert v_swap_quartiles([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]).score == 0.0


# ---------------------------------------------------------------------------
# Decision engine
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "v_i, v_o, state",
    [
        (2.0, 2.0, STATE_GROWTH),
        (-2.0, -2.0, STATE_COLLAPSE),
        (2.0, -2.0, STATE_SHIFT),
        (-2.0, 2.0, STATE_MAINTENANCE),
        (0.1, 0.1, STATE_INDETERMINATE),
        (-2.0, 0.1, STATE_MAINTENANCE),
    ],
)
def test_decide_quadrants(v_i: float, v_o: float, state: str) -> None:
    """Signs of the standardised readings pick the quadrant."""
    decision = decide_tendency(v_i, v_o, 1.0, 1.0)
    assert decision.state == state


def test_decide_hysteresis_uses_stay_threshold() -> None:
    """A reading between stay and enter only holds an existing state."""
    fresh = decide_tendency(0.45, 0.45, 1.0, 1.0)
    held = decide_tendency(0.45, 0.45, 1.0, 1.0, last_state=STATE_GROWTH)
    assert fresh.state == STATE_INDETERMINATE
    assert held.state == STATE_GROWTH
    assert held.confidence == pytest.approx(0.45, rel=1e-6)


def test_decide_guards() -> None:
    """Too few samples or non-finite input is neutral; confidence is capped."""
    assert decide_tendency(2.0, 2.0, 1.0, 1.0, samples=2).state == STATE_INDETERMINATE
    assert decide_tendency(float("nan"), 2.0, 1.0, 1.0).confidence == 0.0
    assert decide_tendency(100.0, 100.0, 1.0, 1.0).confidence == 3.0


def test_decide_config_validation() -> None:
    """stay must not exceed enter."""
    with pytest.raises(ValueError, match="stay"):
        DecideConfig(enter=0.5, stay=0.6).validate()
    with pytest.raises(ValueError, match="deadzone"):
        TendencyTracker(config=DecideConfig(deadzone=-1.0))


def test_tracker_needs_three_samples_and_keeps_state() -> None:
    """The tracker is indeterminate until three readings, then remembers."""
    tracker = TendencyTracker()
    assert tracker.update([1.0, 2.0], [1.0, 2.0]).state == STATE_INDETERMINATE

    decision = tracker.update([1.0, 2.0, 3.0], [1.0, 2.0, 3.0])
    assert decision.state == STATE_GROWTH
    assert decision.v_i_hat == pytest.approx(3.0 / 1.4826, rel=1e-6)
    assert tracker.last_state == STATE_GROWTH
