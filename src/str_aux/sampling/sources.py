"""Order-book tick sources.

Only the boundary shape matters to the core: a source returns a raw tick
mapping ``{symbol, ts, bids, asks}`` which the poller validates with
``parse_tick``.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx

logger: logging.Logger = logging.getLogger(__name__)

DEPTH_OPTIONS: tuple[int, ...] = (5, 10, 20, 50, 100, 500, 1000)
"""Depth limits accepted by the Binance REST depth endpoint."""

DEFAULT_BASE_URL: str = "https://api.binance.com"


def snap_depth(depth: int) -> int:
    """Closest supported depth (ties go to the smaller option)."""
    return min(DEPTH_OPTIONS, key=lambda opt: (abs(opt - depth), opt))


class TickSource(Protocol):
    async def fetch_order_book(self, symbol: str, depth: int) -> dict[str, Any]: ...


class BinanceDepthSource:
    """Polls ``GET /api/v3/depth`` through a shared ``httpx.AsyncClient``.

    Args:
        base_url: REST root.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built client (tests pass one with a
            ``MockTransport``). A client created here is closed by
            ``aclose()``.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def fetch_order_book(self, symbol: str, depth: int = 50) -> dict[str, Any]:
        """Fetch one snapshot.

        Raises:
            httpx.HTTPError: On transport failures and non-2xx responses.
        """
        response = await self._client.get(
            "/api/v3/depth",
            params={"symbol": symbol.upper(), "limit": snap_depth(depth)},
        )
        response.raise_for_status()
        payload = response.json()
        return {
            "symbol": symbol.upper(),
            "ts": time.time() * 1000.0,
            "bids": payload.get("bids", []),
            "asks": payload.get("asks", []),
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
