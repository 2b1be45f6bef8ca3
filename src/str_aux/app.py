"""Application composition root for the str-aux REST API."""
from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api_stats import register_stats_routes
from .config import StrAuxSettings, load_settings
from .runtime import StrAuxRuntime
from .sampling.sources import TickSource
from .scheduling import Scheduler

logger: logging.Logger = logging.getLogger(__name__)


def create_app(
    settings: StrAuxSettings | None = None,
    scheduler: Scheduler | None = None,
    source: TickSource | None = None,
) -> FastAPI:
    """Create the FastAPI app.

    Args:
        settings: Runtime settings; loaded with ``load_settings()`` when omitted.
        scheduler: Timer source; an asyncio scheduler when omitted.
        source: Tick source for live polling; Binance REST when omitted.

    Raises:
        ConfigurationError: If a required identifier is missing.
    """
    settings = settings or load_settings()
    runtime = StrAuxRuntime.build(settings, scheduler=scheduler, source=source)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Attach storage and pollers on startup; drain them on shutdown."""
        await runtime.start()
        logger.info("str-aux API ready (session=%s)", settings.session_id)
        yield
        await runtime.stop()
        logger.info("str-aux API stopped")

    app = FastAPI(
        title="str-aux",
        version="0.1.0",
        description="Order-book sampling, IDHR statistics and tendency vectors",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "service": "str-aux",
            "symbols": runtime.store.symbols(),
            "open_buckets": runtime.aggregator.active_symbols,
        }

    register_stats_routes(app)
    return app
