"""
Demo of the log delivery sink against an in-memory store.

Shows batching, retry of flaky bulk calls, partial rejections and graceful
shutdown. Run with ``python examples/run_sink_demo.py``.
"""

import asyncio
import random
from typing import Sequence

from loguru import logger

from es_client import BulkItemError, BulkResult, DataStreamName, RetryableDeliveryError
from log_ingest import LogIngestor, RetryPolicy
from log_ingest.sink import LogSink


class FlakyStore:
    """Store that fails some calls outright and rejects some documents."""

    def __init__(self, fail_rate: float = 0.2, reject_rate: float = 0.05):
        self.fail_rate = fail_rate
        self.reject_rate = reject_rate
        self.written = 0

    async def ping(self) -> bool:
        return True

    async def ensure_data_stream(self, stream: DataStreamName) -> bool:
        logger.info(f"Data stream {stream} ready")
        return True

    async def bulk(self, stream: str, documents: Sequence[dict]) -> BulkResult:
        await asyncio.sleep(0.01)
        if random.random() < self.fail_rate:
            raise RetryableDeliveryError("503 Service Unavailable", 503)
        result = BulkResult()
        for pos, _ in enumerate(documents):
            if random.random() < self.reject_rate:
                result.rejected.append(BulkItemError(pos, 429, "es_rejected_execution_exception"))
            else:
                result.accepted.append(pos)
        self.written += len(result.accepted)
        logger.info(f"FlakyStore wrote {len(result.accepted)}/{len(documents)} to {stream}")
        return result


async def main():
    store = FlakyStore()
    sink = LogSink(
        store,
        DataStreamName(namespace="demo"),
        capacity=1000,
        max_batch_size=50,
        max_batch_age=0.1,
        workers=2,
        retry_policy=RetryPolicy(max_retries=5, base_delay=0.05, max_delay=0.5),
    )
    ingestor = LogIngestor(sink, environment="Demo", echo=False)

    async with sink:
        logger.info("Producing 500 log submissions")
        for i in range(500):
            ingestor.submit(
                {
                    "application": "demo-api",
                    "level": random.choice(["Debug", "Information", "Warning", "Error"]),
                    "message": f"request {i} handled",
                    "additionalData": {"requestId": i, "route": {"path": "/orders"}},
                }
            )
            if i % 100 == 0:
                h = sink.health()
                logger.info(
                    f"Progress: {i}/500 | queue {h.queue_size}/{h.capacity} | "
                    f"retries pending {h.pending_retries}"
                )
            await asyncio.sleep(0)

    logger.info(
        f"Done: delivered={sink.stats.delivered} dropped={sink.stats.dropped} "
        f"store={store.written}"
    )


if __name__ == "__main__":
    asyncio.run(main())
