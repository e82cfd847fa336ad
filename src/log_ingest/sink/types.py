from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from es_client import BulkResult, DataStreamName

from ..models import LogRecord


class Store(Protocol):
    """What the sink needs from the backing store.

    ``es_client.ElasticsearchStore`` implements it; tests use in-memory fakes.
    """

    async def ping(self) -> bool: ...

    async def ensure_data_stream(self, stream: DataStreamName) -> bool: ...

    async def bulk(self, stream: str, documents: Sequence[dict]) -> BulkResult: ...


@dataclass
class SinkStats:
    """Running record counters shared by the sink's components."""

    enqueued: int = 0
    rejected: int = 0
    delivered: int = 0
    dropped: int = 0
    batches_sealed: int = 0
    retries_scheduled: int = 0


@dataclass(frozen=True)
class SinkHealth:
    """Snapshot of sink state for health checks."""

    running: bool
    accepting: bool
    workers_alive: int
    queue_size: int
    capacity: int
    batches_waiting: int
    pending_retries: int
    delivered: int
    dropped: int


@dataclass(frozen=True)
class ShutdownReport:
    """Outcome of ``LogSink.stop``.

    Attributes:
        delivered: records committed over the sink's lifetime
        dropped: records dropped by the retry controller
        abandoned: records still undelivered when the shutdown timeout hit
        sample: one abandoned record, for the diagnostic
    """

    delivered: int
    dropped: int
    abandoned: int = 0
    sample: Optional[LogRecord] = None

    @property
    def complete(self) -> bool:
        return self.abandoned == 0
