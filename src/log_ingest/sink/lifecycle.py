from __future__ import annotations

import asyncio
from time import monotonic
from typing import Literal, Optional

from loguru import logger

from es_client import DataStreamName, ElasticsearchStore

from ..errors import BootstrapError, QueueClosedError, QueueFullError, StartupUnreachable
from ..metrics import (
    PENDING_RETRIES,
    QUEUE_DEPTH,
    RECORDS_DROPPED,
    RECORDS_ENQUEUED,
    RECORDS_REJECTED,
)
from ..models import LogRecord
from ..settings import SinkSettings
from .batcher import Batcher
from .dlq import DeadLetterQueue
from .queue import RecordQueue
from .retry import DeliveryAttempt, RetryController, RetryPolicy
from .types import ShutdownReport, SinkHealth, SinkStats, Store
from .worker import DeliveryWorker

BootstrapPolicy = Literal["fail", "continue"]


class LogSink:
    """Asynchronous delivery sink: queue -> batcher -> workers -> store.

    Owned by the application: construct it at startup, ``start()`` it (or use
    ``async with``), feed it with ``enqueue()``, and ``stop()`` it on the way
    out so buffered records are flushed.

    Example:
        store = ElasticsearchStore({"uris": ["http://es:9200"]})
        async with LogSink(store, DataStreamName()) as sink:
            sink.enqueue(record)
    """

    def __init__(
        self,
        store: Store,
        stream: DataStreamName | str | None = None,
        *,
        capacity: int = 10_000,
        max_batch_size: int = 500,
        max_batch_age: float = 2.0,
        workers: int = 2,
        retry_policy: Optional[RetryPolicy] = None,
        startup_timeout: float = 30.0,
        startup_poll_interval: float = 1.0,
        bootstrap_policy: BootstrapPolicy = "fail",
        shutdown_timeout: float = 10.0,
        dlq: Optional[DeadLetterQueue] = None,
        agent: Optional[str] = None,
        metrics_poll_sec: float = 1.0,
    ):
        if workers <= 0:
            raise ValueError("workers must be > 0")
        if bootstrap_policy not in ("fail", "continue"):
            raise ValueError(f"unknown bootstrap policy {bootstrap_policy!r}")

        self._store = store
        self._stream = stream if stream is not None else DataStreamName()
        self._startup_timeout = startup_timeout
        self._startup_poll = startup_poll_interval
        self._bootstrap_policy = bootstrap_policy
        self._shutdown_timeout = shutdown_timeout
        self._dlq = dlq
        self._metrics_poll = metrics_poll_sec

        self.stats = SinkStats()
        self.queue: RecordQueue[LogRecord] = RecordQueue(capacity)
        self._channel: asyncio.Queue[DeliveryAttempt] = asyncio.Queue(maxsize=workers * 2)
        self.controller = RetryController(
            retry_policy, self._channel.put, on_drop=self._on_drop, stats=self.stats
        )
        self.batcher = Batcher(
            self.queue,
            self._channel,
            max_batch_size=max_batch_size,
            max_batch_age=max_batch_age,
            stats=self.stats,
        )
        self._workers = [
            DeliveryWorker(
                i,
                self._channel,
                store,
                str(self._stream),
                self.controller,
                agent=agent,
                stats=self.stats,
            )
            for i in range(1, workers + 1)
        ]
        self._metrics_task: Optional[asyncio.Task] = None
        self._running = False
        self._stopped = False

    @classmethod
    def from_settings(cls, settings: SinkSettings, store: Optional[Store] = None) -> "LogSink":
        return cls(
            store or ElasticsearchStore(settings.store_config()),
            settings.data_stream,
            capacity=settings.queue_capacity,
            max_batch_size=settings.max_batch_size,
            max_batch_age=settings.max_batch_age,
            workers=settings.workers,
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries,
                base_delay=settings.base_delay,
                max_delay=settings.max_delay,
                jitter=settings.jitter,
            ),
            startup_timeout=settings.startup_timeout,
            startup_poll_interval=settings.startup_poll_interval,
            bootstrap_policy=settings.bootstrap_policy,
            shutdown_timeout=settings.shutdown_timeout,
            dlq=DeadLetterQueue(settings.dlq_path) if settings.dlq_path else None,
            agent=settings.service_name,
        )

    @property
    def stream(self) -> str:
        return str(self._stream)

    @property
    def running(self) -> bool:
        return self._running

    # --------------- context management

    async def __aenter__(self) -> "LogSink":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # --------------- startup

    async def wait_for_store(self) -> None:
        """Poll the store until it answers or ``startup_timeout`` elapses."""
        deadline = monotonic() + self._startup_timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                ok = await self._store.ping()
            except Exception as exc:
                logger.debug(f"Store ping failed: {type(exc).__name__}: {exc}")
                ok = False
            if ok:
                logger.info(f"Store reachable after {attempt} probe(s)")
                return
            remaining = deadline - monotonic()
            if remaining <= 0:
                raise StartupUnreachable(
                    f"store not reachable within {self._startup_timeout:.1f}s "
                    f"({attempt} probe(s))"
                )
            logger.info(f"Waiting for store (probe {attempt} failed)")
            await asyncio.sleep(min(self._startup_poll, remaining))

    async def bootstrap(self) -> bool:
        """Create the destination data stream if absent, per the bootstrap policy."""
        if not isinstance(self._stream, DataStreamName):
            return False
        try:
            return await self._store.ensure_data_stream(self._stream)
        except Exception as exc:
            if self._bootstrap_policy == "fail":
                raise BootstrapError(f"failed to bootstrap {self._stream}: {exc}") from exc
            logger.warning(f"Bootstrap of {self._stream} failed, continuing: {exc}")
            return False

    async def start(self) -> None:
        if self._running:
            return
        if self._stopped:
            raise RuntimeError("LogSink cannot be restarted after stop()")
        await self.wait_for_store()
        await self.bootstrap()
        self.batcher.start()
        for w in self._workers:
            w.start()
        self._metrics_task = asyncio.create_task(self._metrics_loop(), name="sink-metrics")
        self._running = True
        logger.info(
            f"Log sink started: stream={self._stream} workers={len(self._workers)} "
            f"capacity={self.queue.capacity}"
        )

    # --------------- producer side

    def enqueue(self, record: LogRecord) -> None:
        """Buffer a record for delivery. Never blocks.

        Raises:
            QueueFullError: the queue is at capacity
            QueueClosedError: the sink is shutting down
        """
        try:
            self.queue.enqueue(record)
        except QueueFullError:
            self.stats.rejected += 1
            RECORDS_REJECTED.labels(reason="queue_full").inc()
            raise
        except QueueClosedError:
            self.stats.rejected += 1
            RECORDS_REJECTED.labels(reason="closed").inc()
            raise
        self.stats.enqueued += 1
        RECORDS_ENQUEUED.inc()

    # --------------- shutdown

    async def stop(self, timeout: float | None = None) -> ShutdownReport:
        """Stop accepting, flush, and wait up to ``timeout`` for delivery.

        Records still undelivered at the deadline are abandoned and logged
        with a count and a sample.
        """
        timeout = self._shutdown_timeout if timeout is None else timeout
        self.queue.close()
        if self._stopped:
            return ShutdownReport(delivered=self.stats.delivered, dropped=self.stats.dropped)
        self._stopped = True

        if self._running:
            deadline = monotonic() + timeout
            logger.info(f"Stopping log sink, flushing {self.queue.size} queued record(s)")
            await self.batcher.stop(timeout=max(0.0, deadline - monotonic()))
            self.controller.expedite()
            try:
                await asyncio.wait_for(self._wait_idle(), timeout=max(0.0, deadline - monotonic()))
            except asyncio.TimeoutError:
                pass

        abandoned = await self._abandon()
        self._running = False

        report = ShutdownReport(
            delivered=self.stats.delivered,
            dropped=self.stats.dropped,
            abandoned=len(abandoned),
            sample=abandoned[0] if abandoned else None,
        )
        if abandoned:
            RECORDS_DROPPED.labels(reason="shutdown").inc(len(abandoned))
            logger.warning(
                f"Shutdown incomplete: {len(abandoned)} record(s) not delivered within "
                f"{timeout:.1f}s; sample: {report.sample.to_dict()}"
            )
        else:
            logger.success(f"Log sink stopped; {self.stats.delivered} record(s) delivered")
        return report

    async def _wait_idle(self) -> None:
        while self._outstanding() > 0:
            await asyncio.sleep(0.01)

    def _outstanding(self) -> int:
        return (
            self.queue.size
            + len(self.batcher.holding)
            + self._channel.qsize()
            + sum(1 for w in self._workers if w.busy)
            + len(self.controller.pending)
        )

    async def _abandon(self) -> list[LogRecord]:
        """Cancel all background work and collect every record it still held."""
        in_flight = [w.current for w in self._workers if w.current is not None]
        for w in self._workers:
            await w.stop()
        await self.batcher.cancel()
        if self._metrics_task is not None:
            self._metrics_task.cancel()
            try:
                await self._metrics_task
            except asyncio.CancelledError:
                pass
            self._metrics_task = None

        left: list[LogRecord] = list(self.batcher.holding)
        for attempt in in_flight:
            left.extend(attempt.batch)
        while True:
            try:
                left.extend(self._channel.get_nowait().batch)
            except asyncio.QueueEmpty:
                break
        for attempt in self.controller.cancel_all():
            left.extend(attempt.batch)
        left.extend(self.queue.drain(self.queue.size))
        return left

    # --------------- internals

    async def _on_drop(self, attempt: DeliveryAttempt, reason: str) -> None:
        if self._dlq is None:
            return
        await self._dlq.save(
            list(attempt.batch),
            attempt.last_error or reason,
            {
                "reason": reason,
                "batch_id": attempt.batch.batch_id,
                "attempts": attempt.attempt_count,
                "stream": str(self._stream),
            },
        )

    async def _metrics_loop(self) -> None:
        while True:
            QUEUE_DEPTH.set(self.queue.size)
            PENDING_RETRIES.set(len(self.controller.pending))
            await asyncio.sleep(self._metrics_poll)

    def health(self) -> SinkHealth:
        return SinkHealth(
            running=self._running,
            accepting=not self.queue.closed,
            workers_alive=sum(1 for w in self._workers if w.alive),
            queue_size=self.queue.size,
            capacity=self.queue.capacity,
            batches_waiting=self._channel.qsize(),
            pending_retries=len(self.controller.pending),
            delivered=self.stats.delivered,
            dropped=self.stats.dropped,
        )
