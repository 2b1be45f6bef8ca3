"""Value types and ingestion-boundary parsing for the sampling pipeline.

Raw ticks arrive as loosely shaped mappings (exchange JSON, test fixtures,
HTTP bodies). ``parse_tick`` validates them once and returns a tagged
``Valid`` / ``Invalid`` result; everything downstream works with the typed
``Tick`` only.
"""
from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")

Level = tuple[float, float]
"""An order-book level as ``(price, qty)``."""

# ──────────────────────────────────────────────────────────────────────
# Quality flags
# ──────────────────────────────────────────────────────────────────────

FLAG_EMPTY_BUCKET: str = "empty_bucket"
FLAG_LOW_SAMPLES: str = "low_samples"
FLAG_EMPTY_BOOK: str = "empty_book"
FLAG_IRREGULAR_SPACING: str = "irregular_spacing"

ERROR_FLAGS: frozenset[str] = frozenset({FLAG_EMPTY_BUCKET, FLAG_EMPTY_BOOK})
"""Flags that mark a point as unusable for health reporting."""

WARN_FLAGS: frozenset[str] = frozenset({FLAG_LOW_SAMPLES, FLAG_IRREGULAR_SPACING})


# ──────────────────────────────────────────────────────────────────────
# Tagged parse results
# ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Valid(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    reason: str

    @property
    def ok(self) -> bool:
        return False


ParseResult = Union[Valid[T], Invalid]


# ──────────────────────────────────────────────────────────────────────
# Domain types
# ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Tick:
    """One validated order-book snapshot. Levels are already filtered."""

    symbol: str
    ts: float
    bids: tuple[Level, ...]
    asks: tuple[Level, ...]
    mid: float | None = None
    best_bid: float | None = None
    best_ask: float | None = None


@dataclass(frozen=True)
class BucketMeta:
    """Per-bucket diagnostics computed at flush time."""

    bucket_count: int
    tick_gap_min: float | None
    tick_gap_max: float | None
    tick_gap_avg: float | None
    spread_min: float | None
    spread_max: float | None
    spread_avg: float | None
    mid_min: float | None
    mid_max: float | None
    top_bid_vol: float
    top_ask_vol: float
    liquidity_imbalance: float | None
    quality_flags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["quality_flags"] = list(self.quality_flags)
        return out


@dataclass(frozen=True)
class OrderBook:
    bids: tuple[Level, ...] = ()
    asks: tuple[Level, ...] = ()

    def to_dict(self) -> dict[str, list[list[float]]]:
        return {
            "bids": [[p, q] for p, q in self.bids],
            "asks": [[p, q] for p, q in self.asks],
        }


@dataclass(frozen=True)
class SamplingPoint:
    """Aggregate of one closed time bucket for one symbol.

    ``ts`` equals ``bucket_end``. Instances are immutable once flushed.
    """

    symbol: str
    ts: float
    mid: float
    best_bid: float
    best_ask: float
    spread: float
    bid_volume: float
    ask_volume: float
    bucket_start: float
    bucket_end: float
    book: OrderBook = field(default_factory=OrderBook)
    meta: BucketMeta | None = None

    @property
    def quality_flags(self) -> tuple[str, ...]:
        return self.meta.quality_flags if self.meta is not None else ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "ts": self.ts,
            "mid": self.mid,
            "best_bid": self.best_bid,
            "best_ask": self.best_ask,
            "spread": self.spread,
            "bid_volume": self.bid_volume,
            "ask_volume": self.ask_volume,
            "bucket_start": self.bucket_start,
            "bucket_end": self.bucket_end,
            "book": self.book.to_dict(),
            "meta": self.meta.to_dict() if self.meta is not None else None,
        }


# ──────────────────────────────────────────────────────────────────────
# Parsing
# ──────────────────────────────────────────────────────────────────────


def to_float(raw: Any) -> float | None:
    """Coerce numbers and numeric strings to ``float``; ``None`` otherwise."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    else:
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return None
    return value if math.isfinite(value) else None


def _positive(raw: Any) -> float | None:
    value = to_float(raw)
    return value if value is not None and value > 0.0 else None


def parse_level(raw: Any) -> ParseResult[Level]:
    """Parse ``[price, qty]`` / ``(price, qty)`` / ``{"price", "qty"}``."""
    if isinstance(raw, Mapping):
        price_raw = raw.get("price", raw.get("p"))
        qty_raw = raw.get("qty", raw.get("quantity", raw.get("q")))
    elif isinstance(raw, (list, tuple)) and len(raw) >= 2:
        price_raw, qty_raw = raw[0], raw[1]
    else:
        return Invalid("level must be a [price, qty] pair")

    price = _positive(price_raw)
    if price is None:
        return Invalid(f"non-finite or non-positive price: {price_raw!r}")
    qty = _positive(qty_raw)
    if qty is None:
        return Invalid(f"non-finite or non-positive qty: {qty_raw!r}")
    return Valid((price, qty))


def parse_levels(raw: Iterable[Any] | None) -> tuple[Level, ...]:
    """Keep the valid levels of a side; malformed ones are dropped silently."""
    if raw is None or isinstance(raw, (str, bytes, Mapping)):
        return ()
    levels: list[Level] = []
    for item in raw:
        result = parse_level(item)
        if isinstance(result, Valid):
            levels.append(result.value)
    return tuple(levels)


def parse_tick(raw: Mapping[str, Any]) -> ParseResult[Tick]:
    """Validate a raw tick mapping.

    Accepts ``bestBid``/``best_bid`` style keys. Only a missing symbol or a
    non-finite timestamp invalidates the whole tick; bad levels are dropped
    and bad optional prices become ``None``.
    """
    if not isinstance(raw, Mapping):
        return Invalid(f"tick must be a mapping, got {type(raw).__name__}")

    symbol_raw = raw.get("symbol")
    if not isinstance(symbol_raw, str) or not symbol_raw.strip():
        return Invalid("missing symbol")
    ts = to_float(raw.get("ts"))
    if ts is None:
        return Invalid(f"non-finite timestamp: {raw.get('ts')!r}")

    return Valid(
        Tick(
            symbol=symbol_raw.strip().upper(),
            ts=ts,
            bids=parse_levels(raw.get("bids")),
            asks=parse_levels(raw.get("asks")),
            mid=_positive(raw.get("mid")),
            best_bid=_positive(raw.get("best_bid", raw.get("bestBid"))),
            best_ask=_positive(raw.get("best_ask", raw.get("bestAsk"))),
        )
    )
