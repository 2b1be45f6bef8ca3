"""REST routes for the stats / vectors queries and inline tick ingestion.

Endpoints:
    GET  /v1/str-aux/stats     Per-symbol IDHR, floating modes, vectors, streams
    GET  /v1/str-aux/vectors   Stateless vector read-out per symbol
    GET  /v1/str-aux/points    One symbol's window of sampling points (JSON or CSV)
    GET  /v1/str-aux/snapshots Recorded stats snapshots (needs persistence)
    POST /v1/str-aux/ticks     Ingest raw order-book ticks into the aggregator
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from .runtime import StrAuxRuntime
from .sampling.store import parse_window_key
from .sampling.types import Invalid, parse_tick

logger: logging.Logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------

class IngestTicksRequest(BaseModel):
    """Raw ticks ``{symbol, ts, bids, asks, mid?, best_bid?, best_ask?}``."""

    ticks: list[dict[str, Any]] = Field(default_factory=list)
    flush: bool = Field(
        default=False,
        description="Close every open bucket after ingesting.",
    )


class IngestTicksResponse(BaseModel):
    accepted: int
    rejected: int
    flushed: int
    reasons: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _runtime(request: Request) -> StrAuxRuntime:
    return request.app.state.runtime


def _resolve_symbols(raw: str | None, runtime: StrAuxRuntime) -> list[str]:
    if raw:
        out: list[str] = []
        for part in raw.split(","):
            sym = part.strip().upper()
            if sym and sym not in out:
                out.append(sym)
        return out
    return list(runtime.settings.symbols) or runtime.store.symbols()


# ---------------------------------------------------------------------------
# Route registration
# ---------------------------------------------------------------------------

def register_stats_routes(app: FastAPI) -> None:
    """Register the stats, vectors, points, snapshots and tick-ingestion routes on ``app``."""

    @app.get("/v1/str-aux/stats")
    async def get_stats(
        request: Request,
        symbols: str | None = Query(default=None, description="Comma-separated symbols."),
        window: str = Query(default="30m"),
        bins: int | None = Query(default=None, ge=1, le=4096),
        session_id: str | None = Query(default=None, max_length=64),
        collect: bool = Query(default=False, description="Poll one fresh snapshot per symbol first."),
    ) -> dict[str, Any]:
        runtime = _runtime(request)
        selected = _resolve_symbols(symbols, runtime)
        results = await runtime.service.compute_stats_batch(
            selected,
            window=window,
            bins=bins,
            session_id=session_id,
            collect=runtime.collect_fresh if collect else None,
        )
        out = {sym: res.to_dict() for sym, res in results.items()}

        if runtime.db_sink is not None:
            session = session_id or runtime.settings.session_id
            for sym, res in results.items():
                if not res.ok:
                    continue
                try:
                    await runtime.db_sink.record_stats(
                        session_id=session,
                        symbol=sym,
                        window=res.window,
                        ts=res.meta["last_update_ts"],
                        payload=out[sym],
                    )
                except Exception as exc:
                    logger.warning(
                        "Failed to record stats snapshot for %s (%s: %s)",
                        sym, type(exc).__name__, exc,
                    )

        first = next(iter(results.values()), None)
        return {
            "ok": True,
            "symbols": selected,
            "window": first.window if first is not None else window,
            "ts": time.time() * 1000.0,
            "out": out,
        }

    @app.get("/v1/str-aux/vectors")
    async def get_vectors(
        request: Request,
        symbols: str | None = Query(default=None, description="Comma-separated symbols."),
        window: str = Query(default="30m"),
        bins: int = Query(default=128, ge=1, le=4096),
        scale: float = Query(default=100.0, gt=0.0),
        tendency_window: int = Query(default=30, ge=3),
        normalizer: Literal["mad", "stdev"] = Query(default="mad"),
        swap_alpha: float = Query(default=1.2, gt=0.0),
    ) -> dict[str, Any]:
        runtime = _runtime(request)
        selected = _resolve_symbols(symbols, runtime)
        reports = runtime.service.compute_vectors(
            selected,
            window=window,
            bins=bins,
            scale=scale,
            tendency_window=tendency_window,
            normalizer=normalizer,
            swap_alpha=swap_alpha,
        )
        return {
            "ok": True,
            "symbols": selected,
            "ts": time.time() * 1000.0,
            "out": {sym: rep.to_dict() for sym, rep in reports.items()},
        }

    @app.get("/v1/str-aux/points", response_model=None)
    async def get_points(
        request: Request,
        symbol: str = Query(..., min_length=1),
        window: str = Query(default="30m"),
        fmt: Literal["json", "csv"] = Query(default="json", alias="format"),
    ) -> dict[str, Any] | Response:
        runtime = _runtime(request)
        symbol = symbol.strip().upper()
        window_key = parse_window_key(window)
        frame = runtime.store.to_frame(symbol, window_key)
        if fmt == "csv":
            return Response(content=frame.to_csv(index=False), media_type="text/csv")
        return {
            "ok": True,
            "symbol": symbol,
            "window": window_key,
            "points": json.loads(frame.to_json(orient="records")),
        }

    @app.get("/v1/str-aux/snapshots")
    async def get_snapshots(
        request: Request,
        symbol: str = Query(..., min_length=1),
        session_id: str | None = Query(default=None, max_length=64),
        limit: int = Query(default=50, ge=1, le=1000),
    ) -> dict[str, Any]:
        runtime = _runtime(request)
        if runtime.db_sink is None:
            raise HTTPException(status_code=503, detail="persistence is disabled")
        symbol = symbol.strip().upper()
        snapshots = await runtime.db_sink.recent_stats(symbol, session_id=session_id, limit=limit)
        return {"ok": True, "symbol": symbol, "snapshots": snapshots}

    @app.post("/v1/str-aux/ticks", response_model=IngestTicksResponse)
    async def ingest_ticks(body: IngestTicksRequest, request: Request) -> IngestTicksResponse:
        runtime = _runtime(request)
        accepted = 0
        flushed = 0
        reasons: list[str] = []
        for raw in body.ticks:
            parsed = parse_tick(raw)
            if isinstance(parsed, Invalid):
                reasons.append(parsed.reason)
                continue
            if runtime.aggregator.ingest(parsed.value) is not None:
                flushed += 1
            accepted += 1
        if body.flush:
            flushed += len(runtime.aggregator.flush_all())
        if reasons:
            logger.debug("Rejected %d ticks: %s", len(reasons), reasons)
        return IngestTicksResponse(
            accepted=accepted,
            rejected=len(reasons),
            flushed=flushed,
            reasons=reasons,
        )
