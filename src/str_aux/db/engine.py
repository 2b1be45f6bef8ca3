"""Async SQLAlchemy engine and session factory for the sampling store.

The URL comes from ``StrAuxSettings.database_url`` (itself overridable by
``DATABASE_URL``). The engine is created lazily on first access and
released with ``dispose_engine()`` during application shutdown.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import DEFAULT_DATABASE_URL
from .base import Base

logger: logging.Logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine(url: str | None = None) -> AsyncEngine:
    """Return the shared async engine, creating it on first call.

    Args:
        url: Database URL used when the engine does not exist yet. Ignored
            once the engine has been created.
    """
    global _engine  # noqa: PLW0603
    if _engine is None:
        url = url or DEFAULT_DATABASE_URL
        _engine = create_async_engine(url, echo=False, pool_pre_ping=True)
        logger.info("Created async engine for %s", _redact_url(url))
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the shared session factory bound to ``get_engine()``."""
    global _session_factory  # noqa: PLW0603
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on success, roll back on error.

    Usage::

        async with session_scope() as session:
            await SamplingRepository.upsert_point(session, point=point)
    """
    session: AsyncSession = (factory or get_session_factory())()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_schema(engine: AsyncEngine | None = None) -> None:
    """Create missing tables (idempotent)."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Dispose the engine and forget the singletons; safe when none exists."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        logger.info("Disposed async engine")
    _engine = None
    _session_factory = None


def reset_engine(engine: AsyncEngine | None = None) -> None:
    """Install ``engine`` as the shared engine (tests), or clear it."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = engine
    _session_factory = None


def _redact_url(url: str) -> str:
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    return f"{scheme}://***@{rest.rsplit('@', 1)[1]}"
