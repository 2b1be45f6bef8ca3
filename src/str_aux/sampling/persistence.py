"""Debounced batch writer for closed sampling points.

Points are keyed by ``(symbol, bucket_end)``; a later enqueue for the same
key replaces the earlier one until the batch is flushed. The first enqueue
after a flush arms a single timer; when it fires, the whole pending map is
swapped out and each entry is written on its own so one bad row never
aborts the batch.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from ..scheduling import Scheduler, TimerHandle
from .types import SamplingPoint

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_FLUSH_DELAY_S: float = 5.0

PendingKey = tuple[str, float]


class PointWriter(Protocol):
    """Storage sink for one sampling point."""

    async def persist(self, point: SamplingPoint) -> None: ...


class PersistenceScheduler:
    """Collects points and writes them after ``delay`` seconds.

    Args:
        writer: Storage sink.
        scheduler: Timer source for the debounce.
        delay: Seconds between the first enqueue and the flush.
    """

    def __init__(
        self,
        writer: PointWriter,
        scheduler: Scheduler,
        delay: float = DEFAULT_FLUSH_DELAY_S,
    ) -> None:
        if delay < 0.0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        self._writer = writer
        self._scheduler = scheduler
        self.delay = delay
        self._pending: dict[PendingKey, SamplingPoint] = {}
        self._timer: TimerHandle | None = None
        self._inflight: set[asyncio.Task[int]] = set()
        self.persisted_total = 0
        self.failed_total = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def enqueue(self, point: SamplingPoint) -> None:
        """Register ``point``; last write wins per ``(symbol, bucket_end)``."""
        self._pending[(point.symbol, point.bucket_end)] = point
        if self._timer is None:
            self._timer = self._scheduler.schedule(self.delay, self._on_timer)

    # Sink adapter for BucketAggregator.
    __call__ = enqueue

    def _on_timer(self) -> None:
        self._timer = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "Persistence timer fired outside an event loop; %d entries stay pending",
                len(self._pending),
            )
            return
        task = loop.create_task(self.flush(), name="str-aux-persist-flush")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def flush(self) -> int:
        """Drain and persist every pending entry.

        Returns:
            Number of entries written successfully.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch, self._pending = self._pending, {}
        if not batch:
            return 0

        written = 0
        for (symbol, bucket_end), point in batch.items():
            try:
                await self._writer.persist(point)
            except Exception as exc:
                self.failed_total += 1
                logger.warning(
                    "Failed to persist %s bucket ending %s (%s: %s)",
                    symbol, bucket_end, type(exc).__name__, exc,
                )
                continue
            written += 1
        self.persisted_total += written
        logger.info("Persisted %d/%d sampling points", written, len(batch))
        return written

    async def wait_idle(self) -> None:
        """Wait for timer-triggered flushes that are already running."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> int:
        """Cancel the timer, finish in-flight flushes and write the rest."""
        await self.wait_idle()
        return await self.flush()
