"""Per-symbol poll loops and reconciliation against a desired symbol set.

Each ``SymbolPoller`` is a long-lived ``asyncio.Task`` that fetches a
snapshot, validates it and feeds the bucket aggregator, then waits one poll
interval. Fetch failures are logged and the loop carries on with the next
tick. ``UniverseSampler`` keeps the set of running pollers equal to the
desired symbol set, reconciling every ``refresh`` seconds::

    cancel = asyncio.Event()
    sampler = UniverseSampler(source, aggregator)
    task = asyncio.create_task(sampler.run(lambda: settings.symbols, cancel))
    # ... on shutdown ...
    cancel.set()
    await task
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable

from .buckets import BucketAggregator
from .sources import TickSource
from .types import Invalid, parse_tick

logger: logging.Logger = logging.getLogger(__name__)

SymbolProvider = Callable[[], "Iterable[str] | Awaitable[Iterable[str]]"]

DEFAULT_POLL_INTERVAL_S: float = 1.0
DEFAULT_REFRESH_S: float = 60.0


class SymbolPoller:
    """Poll loop for one symbol."""

    def __init__(
        self,
        symbol: str,
        source: TickSource,
        aggregator: BucketAggregator,
        interval: float = DEFAULT_POLL_INTERVAL_S,
        depth: int = 50,
    ) -> None:
        if interval <= 0.0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.symbol = symbol.upper()
        self._source = source
        self._aggregator = aggregator
        self.interval = interval
        self.depth = depth
        self._cancel = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.ticks_ingested = 0
        self.ticks_rejected = 0
        self.fetch_failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> bool:
        """Fetch and ingest one snapshot; ``False`` when nothing was ingested."""
        try:
            raw = await self._source.fetch_order_book(self.symbol, self.depth)
        except Exception as exc:
            self.fetch_failures += 1
            logger.warning(
                "Order book fetch failed for %s (%s: %s)",
                self.symbol, type(exc).__name__, exc,
            )
            return False

        parsed = parse_tick(raw)
        if isinstance(parsed, Invalid):
            self.ticks_rejected += 1
            logger.debug("Rejected tick for %s: %s", self.symbol, parsed.reason)
            return False
        self._aggregator.ingest(parsed.value)
        self.ticks_ingested += 1
        return True

    async def _run(self) -> None:
        logger.info("Poller started for %s (interval=%.2fs)", self.symbol, self.interval)
        while not self._cancel.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Unexpected error polling %s", self.symbol)
            try:
                await asyncio.wait_for(self._cancel.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Poller stopped for %s", self.symbol)

    def start(self) -> asyncio.Task[None]:
        if self.running:
            raise RuntimeError(f"poller for {self.symbol} already running")
        self._cancel.clear()
        self._task = asyncio.create_task(self._run(), name=f"poll-{self.symbol}")
        return self._task

    async def stop(self) -> None:
        """Stop polling. The symbol's open bucket is left untouched."""
        self._cancel.set()
        task, self._task = self._task, None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=max(self.interval, 1.0) * 2)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class UniverseSampler:
    """Keeps one running ``SymbolPoller`` per desired symbol."""

    def __init__(
        self,
        source: TickSource,
        aggregator: BucketAggregator,
        interval: float = DEFAULT_POLL_INTERVAL_S,
        depth: int = 50,
    ) -> None:
        self._source = source
        self._aggregator = aggregator
        self.interval = interval
        self.depth = depth
        self._pollers: dict[str, SymbolPoller] = {}

    @property
    def symbols(self) -> list[str]:
        return sorted(self._pollers)

    def poller(self, symbol: str) -> SymbolPoller | None:
        return self._pollers.get(symbol.upper())

    async def sync(self, desired: Iterable[str]) -> tuple[list[str], list[str]]:
        """Start pollers for new symbols and stop pollers for removed ones.

        Returns:
            ``(started, stopped)`` symbol lists.
        """
        wanted = {s.strip().upper() for s in desired if s and s.strip()}
        stopped = sorted(set(self._pollers) - wanted)
        started = sorted(wanted - set(self._pollers))

        for symbol in stopped:
            await self._pollers.pop(symbol).stop()
        for symbol in started:
            poller = SymbolPoller(
                symbol, self._source, self._aggregator,
                interval=self.interval, depth=self.depth,
            )
            poller.start()
            self._pollers[symbol] = poller

        if started or stopped:
            logger.info(
                "Universe reconciled: +%s -%s (active=%d)",
                started, stopped, len(self._pollers),
            )
        return started, stopped

    async def run(
        self,
        provider: SymbolProvider,
        cancel_event: asyncio.Event,
        refresh: float = DEFAULT_REFRESH_S,
    ) -> None:
        """Reconcile every ``refresh`` seconds until ``cancel_event`` is set."""
        while not cancel_event.is_set():
            try:
                desired = provider()
                if inspect.isawaitable(desired):
                    desired = await desired
                await self.sync(desired)
            except Exception:
                logger.exception("Universe reconciliation failed")
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=refresh)
            except asyncio.TimeoutError:
                continue
        await self.stop_all()

    async def stop_all(self) -> None:
        pollers, self._pollers = self._pollers, {}
        await asyncio.gather(*(p.stop() for p in pollers.values()))
        if pollers:
            logger.info("Stopped %d pollers", len(pollers))
