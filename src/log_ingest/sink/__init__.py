"""Delivery sink

Record queue -> batcher -> delivery workers -> store, with:
- RecordQueue (bounded, fail-fast, watermark signals)
- Batcher with size/age sealing and flush-on-stop
- DeliveryWorker with partial-success splitting
- RetryPolicy/RetryController (exponential backoff with jitter, non-blocking timers)
- LogSink lifecycle (wait-for-store, bootstrap, graceful shutdown)
- Dead Letter Queue (file-based NDJSON)
"""

from .types import Store, SinkStats, SinkHealth, ShutdownReport
from .queue import RecordQueue
from .retry import (
    AttemptState,
    DeliveryAttempt,
    InvalidTransition,
    RetryController,
    RetryPolicy,
    default_retry_classifier,
)
from .batcher import Batcher
from .worker import DeliveryResult, DeliveryWorker
from .dlq import DeadLetterQueue, DLQRecord
from .lifecycle import LogSink

__all__ = [
    # types
    "Store",
    "SinkStats",
    "SinkHealth",
    "ShutdownReport",
    "DLQRecord",
    # retry
    "AttemptState",
    "DeliveryAttempt",
    "InvalidTransition",
    "RetryController",
    "RetryPolicy",
    "default_retry_classifier",
    # runtime
    "RecordQueue",
    "Batcher",
    "DeliveryResult",
    "DeliveryWorker",
    "LogSink",
    # tooling
    "DeadLetterQueue",
]
