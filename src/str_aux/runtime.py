"""Composition root: wires settings into the sampling pipeline and services.

All long-lived state is owned by one ``StrAuxRuntime`` instance and passed
explicitly to whoever needs it (the FastAPI app keeps it on
``app.state.runtime``)::

    runtime = StrAuxRuntime.build(settings)
    await runtime.start()
    ...
    await runtime.stop()
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .config import StrAuxSettings
from .db.engine import create_schema, dispose_engine, get_engine, get_session_factory
from .db.sink import DatabaseSink
from .sampling.buckets import BucketAggregator, BucketConfig
from .sampling.persistence import PersistenceScheduler
from .sampling.poller import SymbolPoller, UniverseSampler
from .sampling.sources import BinanceDepthSource, TickSource
from .sampling.store import PointWindowStore
from .scheduling import AsyncioScheduler, Scheduler
from .shift import ShiftStateStore
from .stats import StatsService

logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class StrAuxRuntime:
    settings: StrAuxSettings
    scheduler: Scheduler
    store: PointWindowStore
    aggregator: BucketAggregator
    shifts: ShiftStateStore
    service: StatsService
    source: TickSource | None = None
    persistence: PersistenceScheduler | None = None
    db_sink: DatabaseSink | None = None
    sampler: UniverseSampler | None = None
    _cancel: asyncio.Event = field(default_factory=asyncio.Event)
    _sampler_task: asyncio.Task[None] | None = None

    @classmethod
    def build(
        cls,
        settings: StrAuxSettings,
        scheduler: Scheduler | None = None,
        source: TickSource | None = None,
    ) -> StrAuxRuntime:
        """Assemble the in-memory pipeline; storage is attached in ``start()``.

        Raises:
            ConfigurationError: If a required identifier is missing.
        """
        settings.validate_required()
        scheduler = scheduler or AsyncioScheduler()
        store = PointWindowStore(step_ms=settings.step_ms)
        aggregator = BucketAggregator(
            BucketConfig(
                step_ms=settings.step_ms,
                poll_interval_ms=settings.poll_interval_s * 1000.0,
                min_snapshots=settings.min_bucket_snapshots,
            ),
            sinks=[store],
            scheduler=scheduler if settings.flush_timers else None,
        )
        shifts = ShiftStateStore(history_limit=settings.history_limit)
        return cls(
            settings=settings,
            scheduler=scheduler,
            store=store,
            aggregator=aggregator,
            shifts=shifts,
            service=StatsService(store, shifts, settings),
            source=source,
        )

    async def start(self) -> None:
        """Attach storage (when enabled) and start live polling (when enabled)."""
        settings = self.settings
        if settings.persistence_enabled:
            engine = get_engine(settings.database_url)
            await create_schema(engine)
            self.db_sink = DatabaseSink(get_session_factory())
            self.persistence = PersistenceScheduler(
                self.db_sink, self.scheduler, delay=settings.persist_delay_s,
            )
            self.aggregator.add_sink(self.persistence)
            logger.info("Persistence enabled (flush delay %.1fs)", settings.persist_delay_s)
            await self.warm_store()

        if settings.live_polling:
            if self.source is None:
                self.source = BinanceDepthSource(base_url=settings.binance_base_url)
            self.sampler = UniverseSampler(
                self.source,
                self.aggregator,
                interval=settings.poll_interval_s,
                depth=settings.depth,
            )
            self._cancel.clear()
            self._sampler_task = asyncio.create_task(
                self.sampler.run(lambda: self.settings.symbols, self._cancel, settings.universe_refresh_s),
                name="str-aux-universe",
            )
            logger.info("Live polling started for %d symbols", len(settings.symbols))

    async def warm_store(self) -> int:
        """Reload each configured symbol's stored points into the window store.

        A symbol whose read fails is logged and skipped.
        """
        if self.db_sink is None:
            return 0
        loaded = 0
        for symbol in self.settings.symbols:
            try:
                points = await self.db_sink.load_points(symbol, limit=self.store.capacity)
            except Exception as exc:
                logger.warning("Failed to warm %s from storage (%s: %s)", symbol, type(exc).__name__, exc)
                continue
            for point in points:
                self.store.append(point)
            loaded += len(points)
        if loaded:
            logger.info("Warmed window store with %d stored points", loaded)
        return loaded

    async def collect_fresh(self, symbol: str) -> bool:
        """Poll one snapshot for ``symbol`` now and close its bucket.

        Returns ``False`` without a tick source or when nothing was ingested.
        """
        if self.source is None:
            return False
        symbol = symbol.upper()
        poller = self.sampler.poller(symbol) if self.sampler is not None else None
        if poller is None:
            poller = SymbolPoller(
                symbol,
                self.source,
                self.aggregator,
                interval=self.settings.poll_interval_s,
                depth=self.settings.depth,
            )
        ingested = await poller.poll_once()
        self.aggregator.flush(symbol)
        return ingested

    async def stop(self) -> None:
        """Stop polling, close open buckets and drain pending writes."""
        self._cancel.set()
        task, self._sampler_task = self._sampler_task, None
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Universe sampler did not stop within 10s; cancelling")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        flushed = self.aggregator.flush_all()
        if flushed:
            logger.info("Closed %d open buckets on shutdown", len(flushed))

        if self.persistence is not None:
            await self.persistence.close()
        if isinstance(self.source, BinanceDepthSource):
            await self.source.aclose()
        if self.db_sink is not None:
            await dispose_engine()
            self.db_sink = None
