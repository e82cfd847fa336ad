"""
Retry/backoff control for delivery attempts.

Each batch travels as a ``DeliveryAttempt`` through the states::

    Pending -> InFlight -> Delivered
                        -> Failed -> Retrying -> InFlight ...
                                  -> Dropped
                        -> Dropped            (fatal errors)

Retry waits are asyncio timers; a waiting attempt never blocks the batcher
or other deliveries. Delivery is at-least-once: a batch the store partially
committed before failing may be sent again.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import Awaitable, Callable, Optional

from loguru import logger

from es_client import FatalDeliveryError, RetryableDeliveryError

from ..metrics import PENDING_RETRIES, RECORDS_DROPPED
from ..models import Batch
from .types import SinkStats


class AttemptState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"
    RETRYING = "retrying"
    DROPPED = "dropped"
    DELIVERED = "delivered"


_TRANSITIONS = {
    AttemptState.PENDING: {AttemptState.IN_FLIGHT},
    AttemptState.IN_FLIGHT: {AttemptState.DELIVERED, AttemptState.FAILED, AttemptState.DROPPED},
    AttemptState.FAILED: {AttemptState.RETRYING, AttemptState.DROPPED},
    AttemptState.RETRYING: {AttemptState.IN_FLIGHT},
    AttemptState.DROPPED: set(),
    AttemptState.DELIVERED: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass(eq=False)
class DeliveryAttempt:
    """A batch plus its retry bookkeeping."""

    batch: Batch
    attempt_count: int = 0
    next_retry_at: Optional[float] = None
    last_error: Optional[BaseException] = None
    state: AttemptState = AttemptState.PENDING

    def transition(self, new: AttemptState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new.value}")
        self.state = new

    @property
    def terminal(self) -> bool:
        return self.state in (AttemptState.DELIVERED, AttemptState.DROPPED)

    def __len__(self) -> int:
        return len(self.batch)


def default_retry_classifier(exc: BaseException) -> bool:
    """Return True if an error is worth retrying."""
    if isinstance(exc, FatalDeliveryError):
        return False
    if isinstance(exc, (RetryableDeliveryError, TimeoutError, ConnectionError)):
        return True
    msg = str(exc).lower()
    return any(tok in msg for tok in ("timeout", "temporar", "unavailable", "reset", "refused"))


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter.

    ``delay(n)`` for the attempt that already failed ``n`` times before is
    ``min(max_delay, base_delay * 2**n)`` scaled by a uniform factor in
    ``[1 - jitter, 1 + jitter]`` and capped again at ``max_delay``.
    """

    max_retries: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.2
    classify_retryable: Callable[[BaseException], bool] = field(
        default=default_retry_classifier, compare=False
    )

    def __post_init__(self):
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    def delay(self, failures_before: int, rng: Optional[random.Random] = None) -> float:
        raw = min(self.max_delay, self.base_delay * (2**failures_before))
        if self.jitter:
            raw *= (rng or random).uniform(1 - self.jitter, 1 + self.jitter)
        return min(self.max_delay, raw)


Resubmit = Callable[[DeliveryAttempt], Awaitable[None]]
DropHook = Callable[[DeliveryAttempt, str], Awaitable[None]]


class RetryController:
    """Owns failed attempts until they are retried or dropped."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        resubmit: Optional[Resubmit] = None,
        *,
        on_drop: Optional[DropHook] = None,
        stats: Optional[SinkStats] = None,
        clock: Callable[[], float] = monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._resubmit = resubmit
        self._on_drop = on_drop
        self._stats = stats or SinkStats()
        self._clock = clock
        self._rng = rng
        self._timers: dict[DeliveryAttempt, asyncio.Task] = {}

    @property
    def pending(self) -> list[DeliveryAttempt]:
        return list(self._timers)

    def record_failure(self, attempt: DeliveryAttempt, error: BaseException) -> bool:
        """Apply a retryable failure. Returns True if the attempt will be retried.

        InFlight -> Failed, then either Retrying (with ``next_retry_at``) or
        Dropped once ``attempt_count`` exceeds ``max_retries``.
        """
        attempt.transition(AttemptState.FAILED)
        attempt.last_error = error
        failures_before = attempt.attempt_count
        attempt.attempt_count += 1
        if attempt.attempt_count > self.policy.max_retries:
            attempt.next_retry_at = None
            attempt.transition(AttemptState.DROPPED)
            return False
        delay = self.policy.delay(failures_before, self._rng)
        attempt.next_retry_at = self._clock() + delay
        attempt.transition(AttemptState.RETRYING)
        return True

    async def handle_failure(self, attempt: DeliveryAttempt, error: BaseException) -> bool:
        if self.record_failure(attempt, error):
            self.schedule(attempt)
            return True
        await self._drop(attempt, "retries_exhausted")
        return False

    async def split(
        self, parent: DeliveryAttempt, positions: list[int], error: BaseException
    ) -> DeliveryAttempt:
        """Hand the rejected part of a partially committed batch to the retry path."""
        child = DeliveryAttempt(
            batch=parent.batch.subset(positions),
            attempt_count=parent.attempt_count,
            state=AttemptState.IN_FLIGHT,
        )
        await self.handle_failure(child, error)
        return child

    async def drop_part(
        self, parent: DeliveryAttempt, positions: list[int], error: BaseException
    ) -> DeliveryAttempt:
        """Drop the documents of a batch the store refused for good."""
        child = DeliveryAttempt(
            batch=parent.batch.subset(positions),
            attempt_count=parent.attempt_count,
            state=AttemptState.IN_FLIGHT,
        )
        await self.drop(child, error)
        return child

    async def drop(self, attempt: DeliveryAttempt, error: BaseException) -> None:
        """Drop immediately (fatal error)."""
        attempt.last_error = error
        attempt.next_retry_at = None
        attempt.transition(AttemptState.DROPPED)
        await self._drop(attempt, "fatal")

    def schedule(self, attempt: DeliveryAttempt) -> None:
        if attempt.state is not AttemptState.RETRYING or attempt.next_retry_at is None:
            raise InvalidTransition(
                f"cannot schedule batch {attempt.batch.batch_id} in state {attempt.state.value}"
            )
        delay = max(0.0, attempt.next_retry_at - self._clock())
        self._stats.retries_scheduled += 1
        logger.warning(
            f"Batch {attempt.batch.batch_id} ({len(attempt)} records) failed "
            f"attempt {attempt.attempt_count}/{self.policy.max_retries}: "
            f"{attempt.last_error!r}; retrying in {delay:.2f}s"
        )
        self._timers[attempt] = asyncio.create_task(self._fire_after(attempt, delay))
        PENDING_RETRIES.set(len(self._timers))

    def expedite(self) -> int:
        """Fire every pending retry now. Used once at shutdown."""
        waiting = list(self._timers.items())
        for attempt, task in waiting:
            task.cancel()
            attempt.next_retry_at = self._clock()
            self._timers[attempt] = asyncio.create_task(self._fire_after(attempt, 0))
        return len(waiting)

    def cancel_all(self) -> list[DeliveryAttempt]:
        """Cancel timers and hand back the attempts they held."""
        out = list(self._timers)
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()
        PENDING_RETRIES.set(0)
        return out

    async def _fire_after(self, attempt: DeliveryAttempt, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._resubmit is None:
            raise RuntimeError("RetryController has no resubmit target")
        await self._resubmit(attempt)
        # only forget the attempt once it is back in the delivery channel
        self._timers.pop(attempt, None)
        PENDING_RETRIES.set(len(self._timers))

    async def _drop(self, attempt: DeliveryAttempt, reason: str) -> None:
        n = len(attempt)
        self._stats.dropped += n
        RECORDS_DROPPED.labels(reason=reason).inc(n)
        logger.error(
            f"Dropping batch {attempt.batch.batch_id}: {n} record(s) after "
            f"{attempt.attempt_count} failed attempt(s) ({reason}); "
            f"last error: {attempt.last_error!r}"
        )
        if self._on_drop is not None:
            await self._on_drop(attempt, reason)
