from __future__ import annotations

import asyncio
from time import monotonic
from typing import Optional

from loguru import logger

from ..models import Batch, LogRecord
from .queue import RecordQueue
from .retry import DeliveryAttempt
from .types import SinkStats


class Batcher:
    """Groups queued records into batches by size or age.

    A batch is sealed when it holds ``max_batch_size`` records or when
    ``max_batch_age`` seconds have passed since its first record was taken,
    whichever comes first. ``stop()`` flushes what is left instead of
    discarding it.
    """

    def __init__(
        self,
        queue: RecordQueue[LogRecord],
        channel: "asyncio.Queue[DeliveryAttempt]",
        *,
        max_batch_size: int = 500,
        max_batch_age: float = 2.0,
        poll_interval: float = 0.05,
        stats: Optional[SinkStats] = None,
    ):
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be > 0")
        if max_batch_age <= 0:
            raise ValueError("max_batch_age must be > 0")
        self._queue = queue
        self._channel = channel
        self._max_size = max_batch_size
        self._max_age = max_batch_age
        self._poll = poll_interval
        self._stats = stats or SinkStats()
        self._buf: list[LogRecord] = []
        self._sealing: Optional[DeliveryAttempt] = None
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def holding(self) -> list[LogRecord]:
        """Records taken from the queue but not yet in the channel."""
        held = list(self._buf)
        if self._sealing is not None:
            held = list(self._sealing.batch) + held
        return held

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="batcher")

    async def stop(self, timeout: float | None = None) -> None:
        """Flush remaining records and exit; cancel if ``timeout`` elapses."""
        self._stopping = True
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Batcher did not finish flushing in time; cancelling")
            await self.cancel()

    async def cancel(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            if self._stopping and self._queue.size == 0:
                break
            try:
                first = await self._queue.get(timeout=self._poll)
            except asyncio.TimeoutError:
                continue
            self._buf = [first]
            deadline = monotonic() + self._max_age
            await self._fill(deadline)
            await self._seal()
        logger.debug("Batcher exited")

    async def _fill(self, deadline: float) -> None:
        while len(self._buf) < self._max_size:
            self._buf.extend(self._queue.drain(self._max_size - len(self._buf)))
            if len(self._buf) >= self._max_size or self._stopping:
                return
            remaining = deadline - monotonic()
            if remaining <= 0:
                return
            try:
                self._buf.append(await self._queue.get(timeout=min(remaining, self._poll)))
            except asyncio.TimeoutError:
                continue

    async def _seal(self) -> None:
        attempt = DeliveryAttempt(batch=Batch(tuple(self._buf)))
        self._buf = []
        self._sealing = attempt
        await self._channel.put(attempt)
        self._sealing = None
        self._stats.batches_sealed += 1
