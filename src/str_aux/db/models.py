"""ORM models for persisted sampling points and stats snapshots.

``sampling_point`` holds one row per closed bucket, unique on
``(symbol, bucket_end)`` so re-persisting a bucket overwrites it.
Timestamps that come from the market are epoch milliseconds (floats);
bookkeeping timestamps are timezone-aware UTC.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SamplingPointRow(Base):
    """One closed bucket: density columns, bucket stats and the aggregated book."""

    __tablename__ = "sampling_point"
    __table_args__ = (
        UniqueConstraint("symbol", "bucket_end", name="uq_sampling_point_symbol_end"),
        Index("ix_sampling_point_symbol_ts", "symbol", "ts"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    ts: Mapped[float] = mapped_column(Float, nullable=False)
    bucket_start: Mapped[float] = mapped_column(Float, nullable=False)
    bucket_end: Mapped[float] = mapped_column(Float, nullable=False)

    # density
    mid: Mapped[float] = mapped_column(Float, nullable=False)
    best_bid: Mapped[float] = mapped_column(Float, nullable=False)
    best_ask: Mapped[float] = mapped_column(Float, nullable=False)
    spread: Mapped[float] = mapped_column(Float, nullable=False)
    bid_volume: Mapped[float] = mapped_column(Float, nullable=False)
    ask_volume: Mapped[float] = mapped_column(Float, nullable=False)

    # bucket stats
    bucket_count: Mapped[int] = mapped_column(Integer, default=0)
    tick_gap_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    tick_gap_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    tick_gap_avg: Mapped[float | None] = mapped_column(Float, nullable=True)
    spread_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    spread_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    spread_avg: Mapped[float | None] = mapped_column(Float, nullable=True)
    mid_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    mid_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    top_bid_vol: Mapped[float] = mapped_column(Float, default=0.0)
    top_ask_vol: Mapped[float] = mapped_column(Float, default=0.0)
    liquidity_imbalance: Mapped[float | None] = mapped_column(Float, nullable=True)
    quality_flags: Mapped[list[str]] = mapped_column(JSON, default=list)

    book: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=_utcnow, nullable=True,
    )


class StatsSnapshotRow(Base):
    """Stats blob of one request cycle for one (session, symbol)."""

    __tablename__ = "stats_snapshot"
    __table_args__ = (
        Index("ix_stats_snapshot_symbol_ts", "symbol", "ts"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    window: Mapped[str] = mapped_column(String(8), nullable=False)
    ts: Mapped[float] = mapped_column(Float, nullable=False)
    gfm: Mapped[float | None] = mapped_column(Float, nullable=True)
    bfm01: Mapped[float | None] = mapped_column(Float, nullable=True)
    v_inner: Mapped[float | None] = mapped_column(Float, nullable=True)
    v_outer: Mapped[float | None] = mapped_column(Float, nullable=True)
    v_tendency: Mapped[float | None] = mapped_column(Float, nullable=True)
    shifts: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
