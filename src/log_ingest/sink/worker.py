from __future__ import annotations

import asyncio
from dataclasses import dataclass
from time import monotonic
from typing import Literal, Optional

from loguru import logger

from es_client import (
    BulkResult,
    FatalDeliveryError,
    MalformedBatch,
    MappingConflict,
    RetryableDeliveryError,
    map_http_error,
)
from es_client.errors import MAPPING_ERROR_TYPES

from ..metrics import BULK_LATENCY, DELIVERY_ATTEMPTS, RECORDS_DELIVERED
from .retry import AttemptState, DeliveryAttempt, RetryController
from .types import SinkStats, Store

Outcome = Literal["delivered", "partial", "failed", "fatal"]


@dataclass(frozen=True)
class DeliveryResult:
    """What one bulk write did to a batch.

    ``delivered + retried + dropped == len(batch)`` always holds.
    """

    outcome: Outcome
    delivered: int = 0
    retried: int = 0
    dropped: int = 0
    error: Optional[BaseException] = None
    retry: Optional[DeliveryAttempt] = None


class DeliveryWorker:
    """Drains the batch channel and writes each batch to the store."""

    def __init__(
        self,
        worker_id: int,
        channel: "asyncio.Queue[DeliveryAttempt]",
        store: Store,
        stream: str,
        controller: RetryController,
        *,
        agent: Optional[str] = None,
        stats: Optional[SinkStats] = None,
    ):
        self._id = worker_id
        self._channel = channel
        self._store = store
        self._stream = stream
        self._controller = controller
        self._agent = agent
        self._stats = stats or SinkStats()
        self._task: Optional[asyncio.Task] = None
        self._busy = False
        # set only while the bulk call is outstanding; afterwards every record
        # of the attempt is counted as delivered, dropped or pending retry
        self.current: Optional[DeliveryAttempt] = None

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        """True from taking a batch off the channel until it is fully handled."""
        return self._busy

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"delivery-worker-{self._id}")

    async def stop(self) -> None:
        """Cancel the loop; an attempt still in flight stays in ``current``."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            attempt = await self._channel.get()
            self._busy = True
            try:
                await self.deliver(attempt)
            except Exception:
                logger.exception(
                    f"Worker {self._id} failed handling batch {attempt.batch.batch_id}"
                )
            finally:
                self.current = None
                self._busy = False
                self._channel.task_done()

    async def deliver(self, attempt: DeliveryAttempt) -> DeliveryResult:
        """Send one batch; route failures to the retry controller."""
        attempt.transition(AttemptState.IN_FLIGHT)
        self.current = attempt
        t0 = monotonic()
        result: Optional[BulkResult] = None
        failure: Optional[Exception] = None
        try:
            docs = [r.to_document(self._agent) for r in attempt.batch]
            result = await self._store.bulk(self._stream, docs)
        except Exception as exc:
            failure = exc
        finally:
            BULK_LATENCY.observe(monotonic() - t0)
            self.current = None

        if failure is not None:
            return await self._on_error(attempt, failure)
        return await self._on_result(attempt, result)

    async def _on_error(self, attempt: DeliveryAttempt, exc: Exception) -> DeliveryResult:
        n = len(attempt)
        err = map_http_error(exc)
        retryable = not isinstance(err, FatalDeliveryError) and (
            isinstance(err, RetryableDeliveryError) or self._controller.policy.classify_retryable(exc)
        )
        if not retryable:
            DELIVERY_ATTEMPTS.labels(outcome="fatal").inc()
            await self._controller.drop(attempt, err)
            return DeliveryResult("fatal", dropped=n, error=err)
        DELIVERY_ATTEMPTS.labels(outcome="failed").inc()
        if await self._controller.handle_failure(attempt, err):
            return DeliveryResult("failed", retried=n, error=err, retry=attempt)
        return DeliveryResult("failed", dropped=n, error=err)

    async def _on_result(self, attempt: DeliveryAttempt, result: BulkResult) -> DeliveryResult:
        n = len(attempt)
        accepted_set = {p for p in result.accepted if 0 <= p < n}
        if len(accepted_set) == n:
            attempt.transition(AttemptState.DELIVERED)
            self._record_delivered(n)
            DELIVERY_ATTEMPTS.labels(outcome="delivered").inc()
            logger.debug(f"Worker {self._id} delivered batch {attempt.batch.batch_id} ({n} records)")
            return DeliveryResult("delivered", delivered=n)

        item_errors = {e.position: e for e in result.rejected}
        fatal: list[int] = []
        transient: list[int] = []
        for p in range(n):
            if p in accepted_set:
                continue
            e = item_errors.get(p)
            # positions the store did not report on are sent again
            if e is not None and not e.retryable:
                fatal.append(p)
            else:
                transient.append(p)

        retry_err = RetryableDeliveryError(
            f"store rejected {len(transient)}/{n} documents: {_reasons(item_errors, transient)}"
        )
        fatal_err = _fatal_item_error(item_errors, fatal, n)

        if not accepted_set and not fatal:
            DELIVERY_ATTEMPTS.labels(outcome="failed").inc()
            if await self._controller.handle_failure(attempt, retry_err):
                return DeliveryResult("failed", retried=n, error=retry_err, retry=attempt)
            return DeliveryResult("failed", dropped=n, error=retry_err)

        if not accepted_set and not transient:
            DELIVERY_ATTEMPTS.labels(outcome="fatal").inc()
            await self._controller.drop(attempt, fatal_err)
            return DeliveryResult("fatal", dropped=n, error=fatal_err)

        # the parent is settled here; its records move on in child attempts
        if accepted_set:
            attempt.transition(AttemptState.DELIVERED)
            self._record_delivered(len(accepted_set))
            outcome: Outcome = "partial"
        else:
            attempt.transition(AttemptState.DROPPED)
            outcome = "failed"
        DELIVERY_ATTEMPTS.labels(outcome=outcome).inc()

        retried = dropped = 0
        child: Optional[DeliveryAttempt] = None
        if transient:
            child = await self._controller.split(attempt, transient, retry_err)
            if child.state is AttemptState.DROPPED:
                dropped += len(child)
                child = None
            else:
                retried = len(transient)
        if fatal:
            await self._controller.drop_part(attempt, fatal, fatal_err)
            dropped += len(fatal)

        return DeliveryResult(
            outcome,
            delivered=len(accepted_set),
            retried=retried,
            dropped=dropped,
            error=fatal_err if fatal and not transient else retry_err,
            retry=child,
        )

    def _record_delivered(self, n: int) -> None:
        self._stats.delivered += n
        RECORDS_DELIVERED.inc(n)


def _reasons(item_errors: dict, positions: list[int]) -> str:
    reasons = {
        f"{item_errors[p].status} {item_errors[p].error_type}".strip()
        for p in positions
        if p in item_errors
    }
    return ", ".join(sorted(reasons)) or "unknown"


def _fatal_item_error(item_errors: dict, positions: list[int], n: int) -> FatalDeliveryError:
    msg = f"store refused {len(positions)}/{n} documents: {_reasons(item_errors, positions)}"
    if any(item_errors[p].error_type in MAPPING_ERROR_TYPES for p in positions):
        return MappingConflict(msg, 400)
    return MalformedBatch(msg)
