"""Async repositories for sampling points and stats snapshots.

Repositories are stateless and operate on an ``AsyncSession`` passed by
the caller (typically from ``session_scope()``), so transaction boundaries
stay explicit and the same code runs against Postgres and test SQLite.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..sampling.types import BucketMeta, OrderBook, SamplingPoint
from .models import SamplingPointRow, StatsSnapshotRow

_META_COLUMNS: tuple[str, ...] = (
    "bucket_count",
    "tick_gap_min",
    "tick_gap_max",
    "tick_gap_avg",
    "spread_min",
    "spread_max",
    "spread_avg",
    "mid_min",
    "mid_max",
    "top_bid_vol",
    "top_ask_vol",
    "liquidity_imbalance",
)


def _point_columns(point: SamplingPoint) -> dict[str, Any]:
    columns: dict[str, Any] = {
        "ts": point.ts,
        "bucket_start": point.bucket_start,
        "mid": point.mid,
        "best_bid": point.best_bid,
        "best_ask": point.best_ask,
        "spread": point.spread,
        "bid_volume": point.bid_volume,
        "ask_volume": point.ask_volume,
        "book": point.book.to_dict(),
        "quality_flags": list(point.quality_flags),
    }
    if point.meta is not None:
        for name in _META_COLUMNS:
            columns[name] = getattr(point.meta, name)
    return columns


def row_to_point(row: SamplingPointRow) -> SamplingPoint:
    """Rebuild the immutable ``SamplingPoint`` a row was written from."""
    book = row.book or {}
    meta = BucketMeta(
        **{name: getattr(row, name) for name in _META_COLUMNS},
        quality_flags=tuple(row.quality_flags or ()),
    )
    return SamplingPoint(
        symbol=row.symbol,
        ts=row.ts,
        mid=row.mid,
        best_bid=row.best_bid,
        best_ask=row.best_ask,
        spread=row.spread,
        bid_volume=row.bid_volume,
        ask_volume=row.ask_volume,
        bucket_start=row.bucket_start,
        bucket_end=row.bucket_end,
        book=OrderBook(
            bids=tuple((float(p), float(q)) for p, q in book.get("bids", [])),
            asks=tuple((float(p), float(q)) for p, q in book.get("asks", [])),
        ),
        meta=meta,
    )


class SamplingRepository:
    """Upsert and range reads for ``sampling_point``."""

    @staticmethod
    async def upsert_point(session: AsyncSession, *, point: SamplingPoint) -> SamplingPointRow:
        """Insert a closed bucket or overwrite the row with the same ``(symbol, bucket_end)``.

        Args:
            session: Active async session.
            point: Closed sampling point.

        Returns:
            The inserted or updated ``SamplingPointRow``.
        """
        result = await session.execute(
            select(SamplingPointRow).where(
                SamplingPointRow.symbol == point.symbol,
                SamplingPointRow.bucket_end == point.bucket_end,
            )
        )
        row = result.scalar_one_or_none()
        columns = _point_columns(point)
        if row is None:
            row = SamplingPointRow(symbol=point.symbol, bucket_end=point.bucket_end, **columns)
            session.add(row)
        else:
            for name, value in columns.items():
                setattr(row, name, value)
        await session.flush()
        return row

    @staticmethod
    async def list_points(
        session: AsyncSession,
        *,
        symbol: str,
        since_ts: float | None = None,
        limit: int | None = None,
    ) -> list[SamplingPointRow]:
        """Rows for ``symbol`` in ascending ``bucket_end`` order.

        Args:
            session: Active async session.
            symbol: Symbol to read.
            since_ts: Only rows with ``bucket_end`` strictly after this.
            limit: Keep only the newest ``limit`` rows.
        """
        stmt = select(SamplingPointRow).where(SamplingPointRow.symbol == symbol)
        if since_ts is not None:
            stmt = stmt.where(SamplingPointRow.bucket_end > since_ts)
        if limit is not None:
            stmt = stmt.order_by(SamplingPointRow.bucket_end.desc()).limit(limit)
            result = await session.execute(stmt)
            return list(reversed(result.scalars().all()))
        result = await session.execute(stmt.order_by(SamplingPointRow.bucket_end))
        return list(result.scalars().all())


class StatsSnapshotRepository:
    """Append-only per-cycle stats snapshots."""

    @staticmethod
    async def record(
        session: AsyncSession,
        *,
        session_id: str,
        symbol: str,
        window: str,
        ts: float,
        payload: dict[str, Any],
    ) -> StatsSnapshotRow:
        """Store one stats blob; headline scalars are lifted into columns."""
        stats = payload.get("stats") or {}
        row = StatsSnapshotRow(
            session_id=session_id,
            symbol=symbol,
            window=window,
            ts=ts,
            gfm=(stats.get("gfm") or {}).get("absolute"),
            bfm01=(stats.get("bfm") or {}).get("value"),
            v_inner=stats.get("v_inner"),
            v_outer=stats.get("v_outer"),
            v_tendency=(stats.get("tendency") or {}).get("score"),
            shifts=int((payload.get("shift") or {}).get("shifts") or 0),
            payload=payload,
        )
        session.add(row)
        await session.flush()
        return row

    @staticmethod
    async def list_recent(
        session: AsyncSession,
        *,
        symbol: str,
        session_id: str | None = None,
        limit: int = 50,
    ) -> list[StatsSnapshotRow]:
        """Newest snapshots first."""
        stmt = select(StatsSnapshotRow).where(StatsSnapshotRow.symbol == symbol)
        if session_id is not None:
            stmt = stmt.where(StatsSnapshotRow.session_id == session_id)
        stmt = stmt.order_by(StatsSnapshotRow.ts.desc(), StatsSnapshotRow.id.desc()).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())
