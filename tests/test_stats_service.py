"""Tests for the stats service cycle, batch isolation and vector queries."""
from __future__ import annotations

import math

import pytest

from str_aux.config import StrAuxSettings
from str_aux.sampling.store import PointWindowStore
from str_aux.sampling.types import SamplingPoint
from str_aux.stats import (
    ERROR_INSUFFICIENT_WINDOW,
    ERROR_INTERNAL,
    ERROR_NO_POINTS,
    StatsFailure,
    StatsService,
    StatsSuccess,
    bfm_block,
    dispersion,
    gfm_block,
    pct_drv,
)

WAVE: list[float] = [100.0 + 2.0 * math.sin(i / 4.0) + 0.03 * i for i in range(40)]


def _point(symbol: str, ts: float, mid: float) -> SamplingPoint:
    return SamplingPoint(
        symbol=symbol,
        ts=ts,
        mid=mid,
        best_bid=mid - 0.5,
        best_ask=mid + 0.5,
        spread=1.0,
        bid_volume=1.0,
        ask_volume=2.0,
        bucket_start=ts - 5000.0,
        bucket_end=ts,
    )


def _fill(store: PointWindowStore, symbol: str, prices: list[float], start: int = 1) -> None:
    for i, price in enumerate(prices, start=start):
        store.append(_point(symbol, i * 5000.0, price))


@pytest.fixture
def store() -> PointWindowStore:
    store = PointWindowStore(step_ms=5000.0)
    _fill(store, "BTCUSDT", WAVE)
    return store


@pytest.fixture
def service(store: PointWindowStore) -> StatsService:
    return StatsService(store, settings=StrAuxSettings(shift_k=2))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_block_helpers() -> None:
    """Percent deltas, shift flags and dispersion edge cases."""
    assert pct_drv(100.0, 101.0) == pytest.approx(1.0)
    assert pct_drv(0.0, 1.0) is None

    gfm = gfm_block(101.0, 100.0, 0.35)
    assert gfm["delta_abs"] == pytest.approx(1.0)
    assert gfm["delta_pct"] == pytest.approx(1.0)
    assert gfm["shifted"] is True

    bfm = bfm_block(float("nan"), 0.5, 0.35)
    assert bfm["value"] is None and bfm["shifted"] is False
    assert bfm_block(0.502, 0.5, 0.35)["shifted"] is False

    assert dispersion([]) == (0.0, 0.0)
    assert dispersion([1.0, 1.0]) == (0.0, 0.0)
    assert dispersion([1.0, 3.0]) == pytest.approx((1.0, 1.0))


# ---------------------------------------------------------------------------
# compute_stats
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_compute_stats_success_payload(service: StatsService) -> None:
    """A full window yields a complete, JSON-ready payload."""
    result = await service.compute_stats("btcusdt")
    assert isinstance(result, StatsSuccess)
    assert result.ok
    assert result.symbol == "BTCUSDT"
    assert result.window == "30m"
    assert result.n == 40

    stats = result.stats
    assert stats["opening"] == WAVE[0]
    assert stats["last"] == WAVE[-1]
    assert stats["prev"] == WAVE[-2]
    assert stats["pct_drv"] == pytest.approx(100.0 * (WAVE[-1] / WAVE[-2] - 1.0))
    assert stats["bfm"]["reference"] == 0.5
    assert 0.0 < stats["confidence"] <= 1.0
    assert abs(stats["v_inner"]) <= 100.0 and abs(stats["v_outer"]) <= 100.0
    assert stats["inertia"] is not None
    assert len(stats["densest"]) == 8

    assert result.histogram.bins == 256
    assert result.meta["bins"] == 256
    assert result.meta["session_id"] == "ui"
    assert result.meta["last_update_ts"] == 40 * 5000.0
    assert result.extrema["price_min"] == min(WAVE)
    assert result.extrema["bench_pct_min"] <= 0.0 <= result.extrema["bench_pct_max"]
    assert result.sampling.size == 40

    payload = result.to_dict()
    assert payload["ok"] is True
    assert set(payload["streams"]) >= {"benchmark", "v_inner", "v_outer", "v_tendency"}
    assert payload["streams"]["benchmark"]["cur"] == WAVE[-1]


@pytest.mark.asyncio
async def test_missing_and_short_windows_are_typed_failures(store: PointWindowStore) -> None:
    """No points and too few points are reported, never raised."""
    _fill(store, "ETHUSDT", [10.0, 11.0])
    service = StatsService(store)

    missing = await service.compute_stats("SOLUSDT", window="bogus", bins=64)
    assert isinstance(missing, StatsFailure)
    assert missing.error == ERROR_NO_POINTS
    assert missing.window == "30m"
    assert missing.bins == 64
    assert missing.to_dict()["ok"] is False

    short = await service.compute_stats("ETHUSDT")
    assert isinstance(short, StatsFailure)
    assert short.error == ERROR_INSUFFICIENT_WINDOW
    assert short.sampling is not None and short.sampling.size == 2


@pytest.mark.asyncio
async def test_cycles_accumulate_history_and_streams(service: StatsService) -> None:
    """Each cycle pushes vector history and advances the streams."""
    first = await service.compute_stats("BTCUSDT")
    second = await service.compute_stats("BTCUSDT")
    assert first.ok and second.ok

    state = service.shifts.get("ui", "BTCUSDT")
    assert state.history_inner == pytest.approx([first.vectors.inner.scaled, second.vectors.inner.scaled])
    assert state.history_outer == pytest.approx([first.vectors.outer, second.vectors.outer])
    assert state.history_tendency == pytest.approx([
        first.vectors.tendency.metrics.score,
        second.vectors.tendency.metrics.score,
    ])
    assert state.window.total_cycles == 2
    assert state.streams["benchmark"].prev == WAVE[-1]
    assert second.meta["ui_epoch"] >= first.meta["ui_epoch"]
    assert second.vectors.tendency.source == "returns"
    assert second.vectors.swap is not None
    assert second.stats["disruption_instant"] is not None
    assert second.stats["idhr_ranges"]
    assert list(second.streams)[:2] == ["benchmark", "pct_drv"]

    other = await service.compute_stats("BTCUSDT", session_id="desk")
    assert other.ok
    assert service.shifts.get("desk", "BTCUSDT").window.total_cycles == 1


@pytest.mark.asyncio
async def test_flat_window_never_shifts() -> None:
    """A single-bin flat market reads the neutral bfm and fires no shift."""
    store = PointWindowStore(step_ms=5000.0)
    _fill(store, "BTCUSDT", [100.0] * 4)
    service = StatsService(store, settings=StrAuxSettings(shift_k=2))
    for _ in range(4):
        result = await service.compute_stats("BTCUSDT", bins=1)
        assert result.ok
        assert result.fm.bfm01 == 0.5
        assert result.shift["is_shift"] is False
        assert result.shift["shifts"] == 0
    assert service.shifts.get("ui", "BTCUSDT").ref_gfm01 == 0.5


@pytest.mark.asyncio
async def test_persistent_bfm_move_shifts_reference(store: PointWindowStore) -> None:
    """With k = 1 every exceeding cycle moves the reference to the reading."""
    service = StatsService(store, settings=StrAuxSettings(shift_k=1, epsilon_pct=0.01))
    result = await service.compute_stats("BTCUSDT")
    bfm01 = result.fm.bfm01
    if abs(bfm01 - 0.5) * 100.0 >= 0.01:
        assert result.shift["is_shift"] is True
        assert service.shifts.get("ui", "BTCUSDT").ref_gfm01 == pytest.approx(bfm01)
        assert result.meta["ui_epoch"] == 1

    again = await service.compute_stats("BTCUSDT")
    assert again.stats["bfm"]["reference"] == pytest.approx(
        service.shifts.get("ui", "BTCUSDT").ref_gfm01
    )
    assert again.shift["is_shift"] is False


@pytest.mark.asyncio
async def test_collect_hook_runs_first_and_failures_are_tolerated(store: PointWindowStore) -> None:
    """The hook can fill the window; a raising hook does not abort the cycle."""
    service = StatsService(store)
    calls: list[str] = []

    async def collect(symbol: str) -> None:
        calls.append(symbol)
        _fill(store, symbol, [20.0, 21.0, 22.0, 21.5])

    result = await service.compute_stats("xrpusdt", collect=collect)
    assert calls == ["XRPUSDT"]
    assert result.ok and result.n == 4

    async def broken(symbol: str) -> None:
        raise RuntimeError("upstream down")

    assert (await service.compute_stats("BTCUSDT", collect=broken)).ok


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

class _FlakyService(StatsService):
    async def compute_stats(self, symbol, *args, **kwargs):
        if symbol == "BADUSDT":
            raise RuntimeError("boom")
        return await super().compute_stats(symbol, *args, **kwargs)


@pytest.mark.asyncio
async def test_batch_isolates_failures(store: PointWindowStore) -> None:
    """One symbol raising becomes internal_error; the others still compute."""
    service = _FlakyService(store)
    results = await service.compute_stats_batch(
        ["btcusdt", "BADUSDT", "BTCUSDT", " ", "NONEUSDT"],
        window="1h",
        pct24h={"BTCUSDT": 2.5},
    )
    assert list(results) == ["BTCUSDT", "BADUSDT", "NONEUSDT"]
    assert results["BTCUSDT"].ok
    assert results["BTCUSDT"].window == "1h"
    assert results["BTCUSDT"].stats["pct24h"] == 2.5
    assert results["BADUSDT"].error == ERROR_INTERNAL
    assert results["NONEUSDT"].error == ERROR_NO_POINTS


# ---------------------------------------------------------------------------
# Vectors
# ---------------------------------------------------------------------------

def test_compute_vectors_reports_and_neutral_fallback(service: StatsService) -> None:
    """Known symbols get a summary; unknown ones a renderable neutral one."""
    reports = service.compute_vectors(["BTCUSDT", "nope"], bins=32)
    btc = reports["BTCUSDT"]
    assert btc.samples == 40
    assert btc.spread == pytest.approx(btc.v_outer - btc.v_inner)
    assert abs(btc.v_tendency.score) <= 100.0

    empty = reports["NOPE"]
    assert empty.samples == 0
    assert empty.v_inner == empty.v_outer == 0.0
    assert empty.summary.bins == 32
    assert empty.to_dict()["v_swap"] == {"q": 0.0, "score": 0.0, "q1": 0.0, "q3": 0.0}


def test_compute_vectors_follow_window_direction() -> None:
    """Stateless vectors score a rising window up and a falling one down."""
    store = PointWindowStore(step_ms=5000.0)
    _fill(store, "UPUSDT", [100.0 + 0.5 * i + 0.1 * (-1) ** i for i in range(40)])
    _fill(store, "DOWNUSDT", [100.0 - 0.5 * i + 0.1 * (-1) ** i for i in range(40)])
    reports = StatsService(store).compute_vectors(["UPUSDT", "DOWNUSDT"], bins=32)
    assert reports["UPUSDT"].v_tendency.score > 0.0
    assert reports["DOWNUSDT"].v_tendency.score < 0.0
    assert reports["UPUSDT"].to_dict()["summary"]["swap_source"] == "returns"


def test_compute_vectors_rejects_unknown_normalizer(service: StatsService) -> None:
    """The normalizer name is validated before any work."""
    with pytest.raises(ValueError, match="normalizer"):
        service.compute_vectors(["BTCUSDT"], normalizer="iqr")
