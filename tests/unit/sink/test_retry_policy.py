"""
Unit tests for RetryPolicy and the DeliveryAttempt state machine.
"""

import random

import pytest

from es_client import AuthenticationRejected, RetryableDeliveryError
from log_ingest.models import Batch
from log_ingest.sink import (
    AttemptState,
    DeliveryAttempt,
    InvalidTransition,
    RetryController,
    RetryPolicy,
    default_retry_classifier,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def in_flight(records, attempt_count: int = 0) -> DeliveryAttempt:
    a = DeliveryAttempt(batch=Batch(tuple(records)), attempt_count=attempt_count)
    a.transition(AttemptState.IN_FLIGHT)
    return a


def test_default_retry_classifier():
    """Test that default classifier recognizes transient errors."""
    assert default_retry_classifier(TimeoutError("socket timeout"))
    assert default_retry_classifier(ConnectionRefusedError("refused"))
    assert default_retry_classifier(RetryableDeliveryError("503"))
    assert default_retry_classifier(Exception("service temporarily unavailable"))
    assert not default_retry_classifier(AuthenticationRejected("401"))
    assert not default_retry_classifier(ValueError("invalid argument"))


def test_backoff_curve_without_jitter_is_capped():
    rp = RetryPolicy(base_delay=0.05, max_delay=0.2, jitter=0.0)
    vals = [rp.delay(n) for n in range(6)]
    assert vals[:3] == [0.05, 0.1, 0.2]
    assert all(v <= 0.2 for v in vals)


@pytest.mark.parametrize("n", [0, 1, 2, 3])
def test_backoff_with_jitter_within_band(n):
    rp = RetryPolicy(base_delay=0.1, max_delay=100.0, jitter=0.25)
    rng = random.Random(n)
    nominal = 0.1 * 2**n
    for _ in range(50):
        d = rp.delay(n, rng)
        assert nominal * 0.75 <= d <= nominal * 1.25


def test_backoff_jitter_never_exceeds_cap():
    rp = RetryPolicy(base_delay=1.0, max_delay=4.0, jitter=0.5)
    rng = random.Random(1)
    assert all(rp.delay(10, rng) <= 4.0 for _ in range(50))


def test_policy_rejects_bad_jitter():
    with pytest.raises(ValueError):
        RetryPolicy(jitter=1.0)


def test_failure_increments_count_and_schedules_in_band(records):
    clock = FakeClock()
    policy = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=60.0, jitter=0.2)
    ctl = RetryController(policy, clock=clock, rng=random.Random(7))
    attempt = in_flight(records(3))

    for expected_count in range(1, 4):
        before = attempt.attempt_count
        assert ctl.record_failure(attempt, RetryableDeliveryError("503")) is True
        assert attempt.attempt_count == before + 1 == expected_count
        assert attempt.state is AttemptState.RETRYING
        delay = attempt.next_retry_at - clock.now
        nominal = 1.0 * 2**before
        assert nominal * 0.8 <= delay <= nominal * 1.2
        attempt.transition(AttemptState.IN_FLIGHT)


def test_drop_after_max_retries(records):
    ctl = RetryController(RetryPolicy(max_retries=2, base_delay=0.01), clock=FakeClock())
    attempt = in_flight(records(2))

    assert ctl.record_failure(attempt, RetryableDeliveryError("1"))
    attempt.transition(AttemptState.IN_FLIGHT)
    assert ctl.record_failure(attempt, RetryableDeliveryError("2"))
    attempt.transition(AttemptState.IN_FLIGHT)
    assert ctl.record_failure(attempt, RetryableDeliveryError("3")) is False

    assert attempt.state is AttemptState.DROPPED
    assert attempt.terminal
    assert attempt.next_retry_at is None
    assert str(attempt.last_error) == "3"
    with pytest.raises(InvalidTransition):
        attempt.transition(AttemptState.IN_FLIGHT)


def test_zero_retries_drops_on_first_failure(records):
    ctl = RetryController(RetryPolicy(max_retries=0))
    attempt = in_flight(records(1))
    assert ctl.record_failure(attempt, RetryableDeliveryError("x")) is False
    assert attempt.state is AttemptState.DROPPED


def test_invalid_transitions(records):
    attempt = DeliveryAttempt(batch=Batch(tuple(records(1))))
    with pytest.raises(InvalidTransition):
        attempt.transition(AttemptState.DELIVERED)
    attempt.transition(AttemptState.IN_FLIGHT)
    attempt.transition(AttemptState.DELIVERED)
    with pytest.raises(InvalidTransition):
        attempt.transition(AttemptState.FAILED)


def test_schedule_requires_retrying_attempt(records):
    ctl = RetryController(RetryPolicy())
    attempt = in_flight(records(1))
    with pytest.raises(InvalidTransition):
        ctl.schedule(attempt)
    assert ctl.pending == []
