from __future__ import annotations

import asyncio
from typing import Callable, Generic, Optional, TypeVar

from loguru import logger

from ..errors import QueueClosedError, QueueFullError
from ..metrics import QUEUE_DEPTH

T = TypeVar("T")
WatermarkCallback = Callable[[int], None]


class RecordQueue(Generic[T]):
    """Bounded FIFO with fail-fast enqueue and high/low watermark signals.

    ``enqueue`` never blocks: at capacity it raises ``QueueFullError`` so the
    producer can shed load. Must be used from the event loop that runs the
    sink.
    """

    def __init__(
        self,
        capacity: int = 10_000,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        *,
        on_high: Optional[WatermarkCallback] = None,
        on_low: Optional[WatermarkCallback] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._q: asyncio.Queue[T] = asyncio.Queue(maxsize=capacity)
        self._high_wm = (
            high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        )
        self._low_wm = low_watermark if low_watermark is not None else int(0.5 * capacity)
        self._on_high = on_high
        self._on_low = on_low
        self._high_fired = False  # avoid duplicate signals
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return self._q.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop accepting records; already-queued ones can still be drained."""
        self._closed = True

    def enqueue(self, item: T) -> None:
        if self._closed:
            raise QueueClosedError("record queue is closed")
        try:
            self._q.put_nowait(item)
        except asyncio.QueueFull:
            raise QueueFullError(f"record queue is full ({self._capacity})") from None
        QUEUE_DEPTH.set(self.size)
        self._maybe_signal_high()

    def drain(self, max_items: int) -> list[T]:
        """Remove up to ``max_items`` records in FIFO order."""
        out: list[T] = []
        while len(out) < max_items:
            try:
                out.append(self._q.get_nowait())
            except asyncio.QueueEmpty:
                break
        if out:
            QUEUE_DEPTH.set(self.size)
            self._maybe_signal_low()
        return out

    async def get(self, timeout: float | None = None) -> T:
        """Await the next record; raises ``asyncio.TimeoutError`` on timeout."""
        if timeout is None:
            item = await self._q.get()
        else:
            item = await asyncio.wait_for(self._q.get(), timeout=timeout)
        QUEUE_DEPTH.set(self.size)
        self._maybe_signal_low()
        return item

    def _maybe_signal_high(self) -> None:
        if not self._high_fired and self.size >= self._high_wm:
            self._high_fired = True
            logger.warning(f"Record queue above high watermark: {self.size}/{self._capacity}")
            if self._on_high:
                self._on_high(self.size)

    def _maybe_signal_low(self) -> None:
        if self._high_fired and self.size <= self._low_wm:
            self._high_fired = False
            logger.info(f"Record queue recovered below low watermark: {self.size}/{self._capacity}")
            if self._on_low:
                self._on_low(self.size)
