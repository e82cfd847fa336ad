"""
Unit tests for the Batcher (size/age sealing, flush on stop).
"""

import asyncio

import pytest

from log_ingest.sink import Batcher, RecordQueue


async def collect(channel: asyncio.Queue) -> list:
    out = []
    while not channel.empty():
        out.append(channel.get_nowait().batch)
    return out


@pytest.mark.asyncio
async def test_seals_full_batches_never_oversized(records):
    q = RecordQueue(capacity=100)
    channel: asyncio.Queue = asyncio.Queue()
    b = Batcher(q, channel, max_batch_size=4, max_batch_age=5.0, poll_interval=0.01)
    for r in records(10):
        q.enqueue(r)

    b.start()
    await asyncio.sleep(0.1)
    batches = await collect(channel)

    # two full batches sealed by size; the remaining 2 are still aging
    assert [len(x) for x in batches] == [4, 4]
    assert len(b.holding) == 2

    await b.stop(timeout=1.0)
    batches += await collect(channel)
    assert [len(x) for x in batches] == [4, 4, 2]
    assert [r.message for x in batches for r in x] == [f"msg-{i}" for i in range(10)]


@pytest.mark.asyncio
async def test_seals_by_age(records):
    q = RecordQueue(capacity=100)
    channel: asyncio.Queue = asyncio.Queue()
    b = Batcher(q, channel, max_batch_size=100, max_batch_age=0.05, poll_interval=0.01)
    b.start()

    for r in records(3):
        q.enqueue(r)
    await asyncio.sleep(0.02)
    assert channel.empty()

    await asyncio.sleep(0.15)
    batches = await collect(channel)
    assert [len(x) for x in batches] == [3]

    await b.stop(timeout=1.0)
    assert not b.alive


@pytest.mark.asyncio
async def test_stop_flushes_partial_batch_immediately(records):
    q = RecordQueue(capacity=100)
    channel: asyncio.Queue = asyncio.Queue()
    b = Batcher(q, channel, max_batch_size=50, max_batch_age=60.0, poll_interval=0.01)
    b.start()
    for r in records(5):
        q.enqueue(r)
    await asyncio.sleep(0.03)

    await asyncio.wait_for(b.stop(), timeout=1.0)
    batches = await collect(channel)
    assert [len(x) for x in batches] == [5]
    assert b.holding == []


def test_rejects_bad_thresholds():
    q = RecordQueue(capacity=1)
    with pytest.raises(ValueError):
        Batcher(q, asyncio.Queue(), max_batch_size=0)
    with pytest.raises(ValueError):
        Batcher(q, asyncio.Queue(), max_batch_age=0)
