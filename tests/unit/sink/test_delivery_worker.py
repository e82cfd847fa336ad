"""
Unit tests for DeliveryWorker outcome handling.
"""

import asyncio

import pytest

from es_client import AuthenticationRejected, MappingConflict, RetryableDeliveryError
from log_ingest.models import Batch
from log_ingest.sink import (
    AttemptState,
    DeliveryAttempt,
    DeliveryWorker,
    RetryController,
    RetryPolicy,
    SinkStats,
)


@pytest.fixture
def harness():
    """Build (worker, controller, channel, drops, stats) around a store."""
    def _build(store, policy=None):
        channel: asyncio.Queue = asyncio.Queue()
        drops = []

        async def on_drop(attempt, reason):
            drops.append((attempt, reason))

        stats = SinkStats()
        ctl = RetryController(
            policy or RetryPolicy(max_retries=5, base_delay=60.0, max_delay=60.0),
            channel.put,
            on_drop=on_drop,
            stats=stats,
        )
        worker = DeliveryWorker(1, channel, store, "logs-api-logs-test", ctl, stats=stats)
        return worker, ctl, channel, drops, stats

    return _build


def pending(records) -> DeliveryAttempt:
    return DeliveryAttempt(batch=Batch(tuple(records)))


@pytest.mark.asyncio
async def test_delivers_whole_batch(harness, fake_store, records):
    worker, ctl, _, _, stats = harness(fake_store)
    attempt = pending(records(4))

    res = await worker.deliver(attempt)

    assert res.outcome == "delivered"
    assert res.delivered == 4
    assert attempt.state is AttemptState.DELIVERED
    assert fake_store.messages == ["msg-0", "msg-1", "msg-2", "msg-3"]
    assert stats.delivered == 4
    assert ctl.pending == []


@pytest.mark.asyncio
async def test_partial_success_splits_batch(harness, make_store, records):
    """10 records, store accepts 7 and rejects 3 -> Delivered(7) + 3-record retry."""
    store = make_store(rejections=[{2, 5, 9}])
    worker, ctl, _, _, stats = harness(store)
    batch = records(10)
    attempt = pending(batch)

    res = await worker.deliver(attempt)

    assert res.outcome == "partial"
    assert res.delivered == 7
    assert res.retried == 3
    assert res.delivered + res.retried == len(batch)

    child = res.retry
    assert child is not attempt
    assert child.attempt_count == 1
    assert child.state is AttemptState.RETRYING
    assert [r.message for r in child.batch] == ["msg-2", "msg-5", "msg-9"]
    assert ctl.pending == [child]

    delivered = set(store.messages)
    retried = {r.message for r in child.batch}
    assert delivered.isdisjoint(retried)
    assert delivered | retried == {r.message for r in batch}
    assert attempt.state is AttemptState.DELIVERED
    assert stats.delivered == 7
    ctl.cancel_all()


@pytest.mark.asyncio
async def test_retryable_error_schedules_retry(harness, make_store, records):
    store = make_store(errors=[RetryableDeliveryError("503 Service Unavailable", 503)])
    worker, ctl, _, drops, _ = harness(store)
    attempt = pending(records(3))

    res = await worker.deliver(attempt)

    assert res.outcome == "failed"
    assert res.retried == 3
    assert attempt.attempt_count == 1
    assert attempt.state is AttemptState.RETRYING
    assert ctl.pending == [attempt]
    assert drops == []
    ctl.cancel_all()


@pytest.mark.asyncio
async def test_builtin_timeout_counts_as_retryable(harness, make_store, records):
    store = make_store(errors=[TimeoutError("read timed out")])
    worker, ctl, _, _, _ = harness(store)

    res = await worker.deliver(pending(records(1)))

    assert res.outcome == "failed"
    assert isinstance(res.error, RetryableDeliveryError)
    assert len(ctl.pending) == 1
    ctl.cancel_all()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [AuthenticationRejected("401", 401), MappingConflict("mapper_parsing_exception", 400)],
)
async def test_fatal_error_drops_immediately(harness, make_store, records, error):
    store = make_store(errors=[error])
    worker, ctl, _, drops, stats = harness(store)
    attempt = pending(records(2))

    res = await worker.deliver(attempt)

    assert res.outcome == "fatal"
    assert res.dropped == 2
    assert attempt.state is AttemptState.DROPPED
    assert attempt.attempt_count == 0
    assert ctl.pending == []
    assert drops == [(attempt, "fatal")]
    assert stats.dropped == 2


@pytest.mark.asyncio
async def test_fully_rejected_batch_is_retried_whole(harness, make_store, records):
    store = make_store(rejections=[{0, 1}])
    worker, ctl, _, _, _ = harness(store)
    attempt = pending(records(2))

    res = await worker.deliver(attempt)

    assert res.outcome == "failed"
    assert res.retry is attempt
    assert attempt.attempt_count == 1
    assert store.docs == []
    ctl.cancel_all()


@pytest.mark.asyncio
async def test_split_child_dropped_when_retries_exhausted(harness, make_store, records):
    store = make_store(rejections=[{0}])
    worker, ctl, _, drops, _ = harness(store, RetryPolicy(max_retries=0))

    res = await worker.deliver(pending(records(3)))

    assert res.outcome == "partial"
    assert res.delivered == 2
    assert res.dropped == 1
    assert res.retry is None
    assert [reason for _, reason in drops] == ["retries_exhausted"]


@pytest.mark.asyncio
async def test_worker_loop_retries_until_delivered(make_store, records):
    """Run loop + real timers: two transient failures, then success."""
    store = make_store(errors=[TimeoutError("t1"), TimeoutError("t2")])
    channel: asyncio.Queue = asyncio.Queue()
    ctl = RetryController(RetryPolicy(max_retries=5, base_delay=0.01, max_delay=0.05), channel.put)
    worker = DeliveryWorker(1, channel, store, "s", ctl)
    worker.start()

    await channel.put(pending(records(5)))
    await asyncio.sleep(0.3)
    await worker.stop()

    assert len(store.calls) == 3
    assert store.messages == [f"msg-{i}" for i in range(5)]
    assert ctl.pending == []


@pytest.mark.asyncio
async def test_mapping_rejections_dropped_transient_retried(harness, make_store, records):
    """429 rejections go back for retry; 400 mapping rejections are dropped at once."""
    store = make_store(
        rejections=[
            {
                1: (429, "es_rejected_execution_exception"),
                3: (400, "document_parsing_exception"),
                4: (400, "mapper_parsing_exception"),
            }
        ]
    )
    worker, ctl, _, drops, stats = harness(store)
    attempt = pending(records(6))

    res = await worker.deliver(attempt)

    assert res.outcome == "partial"
    assert (res.delivered, res.retried, res.dropped) == (3, 1, 2)
    assert res.delivered + res.retried + res.dropped == 6
    assert [r.message for r in res.retry.batch] == ["msg-1"]
    assert ctl.pending == [res.retry]

    assert len(drops) == 1
    dropped, reason = drops[0]
    assert reason == "fatal"
    assert [r.message for r in dropped.batch] == ["msg-3", "msg-4"]
    assert isinstance(dropped.last_error, MappingConflict)
    assert stats.dropped == 2
    assert stats.delivered == 3
    ctl.cancel_all()


@pytest.mark.asyncio
async def test_all_documents_refused_for_mapping_is_fatal(harness, make_store, records):
    store = make_store(rejections=[{0: (400, "document_parsing_exception")}])
    worker, ctl, _, drops, _ = harness(store)
    attempt = pending(records(1))

    res = await worker.deliver(attempt)

    assert res.outcome == "fatal"
    assert res.dropped == 1
    assert attempt.state is AttemptState.DROPPED
    assert isinstance(res.error, MappingConflict)
    assert ctl.pending == []
    assert drops == [(attempt, "fatal")]


@pytest.mark.asyncio
async def test_nothing_accepted_mixed_rejections(harness, make_store, records):
    store = make_store(
        rejections=[
            {
                0: (429, "es_rejected_execution_exception"),
                1: (400, "mapper_parsing_exception"),
            }
        ]
    )
    worker, ctl, _, drops, _ = harness(store)
    attempt = pending(records(2))

    res = await worker.deliver(attempt)

    assert res.outcome == "failed"
    assert (res.delivered, res.retried, res.dropped) == (0, 1, 1)
    assert attempt.state is AttemptState.DROPPED
    assert [r.message for r in res.retry.batch] == ["msg-0"]
    assert res.retry.attempt_count == 1
    assert [reason for _, reason in drops] == ["fatal"]
    ctl.cancel_all()


@pytest.mark.asyncio
async def test_current_cleared_once_bulk_returns(make_store, records):
    """After the bulk call, the attempt's records are owned by the controller."""
    seen = []

    async def on_drop(attempt, reason):
        seen.append(worker.current)

    channel: asyncio.Queue = asyncio.Queue()
    ctl = RetryController(RetryPolicy(), channel.put, on_drop=on_drop)
    worker = DeliveryWorker(1, channel, make_store(errors=[MappingConflict("m", 400)]), "s", ctl)

    await worker.deliver(pending(records(2)))

    assert seen == [None]
