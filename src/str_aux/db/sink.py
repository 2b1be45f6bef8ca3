"""Storage sink adapters used by the persistence scheduler and the API."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..sampling.types import SamplingPoint
from .engine import session_scope
from .repositories import SamplingRepository, StatsSnapshotRepository, row_to_point

logger: logging.Logger = logging.getLogger(__name__)


class DatabaseSink:
    """Writes each point in its own transaction.

    A failing point raises to the caller (the persistence scheduler logs
    and skips it); earlier points of the batch stay committed.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def persist(self, point: SamplingPoint) -> None:
        async with session_scope(self._factory) as session:
            await SamplingRepository.upsert_point(session, point=point)

    async def record_stats(
        self,
        *,
        session_id: str,
        symbol: str,
        window: str,
        ts: float,
        payload: dict[str, Any],
    ) -> None:
        async with session_scope(self._factory) as session:
            await StatsSnapshotRepository.record(
                session,
                session_id=session_id,
                symbol=symbol,
                window=window,
                ts=ts,
                payload=payload,
            )
        logger.debug("Recorded stats snapshot for %s/%s", session_id, symbol)

    async def load_points(self, symbol: str, limit: int | None = None) -> list[SamplingPoint]:
        """Stored points for ``symbol`` oldest first, the newest ``limit`` when given."""
        async with session_scope(self._factory) as session:
            rows = await SamplingRepository.list_points(session, symbol=symbol, limit=limit)
            return [row_to_point(row) for row in rows]

    async def recent_stats(
        self,
        symbol: str,
        session_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Newest recorded stats payloads first."""
        async with session_scope(self._factory) as session:
            rows = await StatsSnapshotRepository.list_recent(
                session, symbol=symbol, session_id=session_id, limit=limit,
            )
            return [
                {"session_id": row.session_id, "window": row.window, "ts": row.ts, "payload": row.payload}
                for row in rows
            ]
