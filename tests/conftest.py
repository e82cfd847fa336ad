"""
Pytest configuration and fixtures for log-ingest.

Provides cross-platform event loop configuration, an in-memory store fake
and record builders.
"""

import asyncio
import sys
from typing import Sequence

import pytest

from es_client import BulkItemError, BulkResult, DataStreamName
from log_ingest.models import LogLevel, LogRecord

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakeStore:
    """In-memory store implementing the sink's ``Store`` protocol.

    Args:
        reachable: what ``ping()`` answers
        errors: exceptions raised by successive ``bulk`` calls before succeeding
        rejections: per-call positions to reject; a set rejects with 429, a dict
            maps position -> (status, error_type)
        bootstrap_error: raised by ``ensure_data_stream`` if set
    """

    def __init__(
        self,
        *,
        reachable: bool = True,
        errors: Sequence[BaseException] = (),
        rejections: Sequence[set[int] | dict[int, tuple[int, str]]] = (),
        bootstrap_error: BaseException | None = None,
        latency: float = 0.0,
    ):
        self.reachable = reachable
        self.errors = list(errors)
        self.rejections = list(rejections)
        self.bootstrap_error = bootstrap_error
        self.latency = latency
        self.pings = 0
        self.calls: list[list[dict]] = []
        self.docs: list[dict] = []
        self.streams: list[str] = []
        self.closed = False

    async def ping(self) -> bool:
        self.pings += 1
        return self.reachable

    async def ensure_data_stream(self, stream: DataStreamName) -> bool:
        if self.bootstrap_error is not None:
            raise self.bootstrap_error
        self.streams.append(str(stream))
        return True

    async def bulk(self, stream: str, documents: Sequence[dict]) -> BulkResult:
        self.calls.append(list(documents))
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)
        if self.errors:
            raise self.errors.pop(0)
        rejected = self.rejections.pop(0) if self.rejections else set()
        result = BulkResult()
        for pos, doc in enumerate(documents):
            if pos in rejected:
                status, error_type = (
                    rejected[pos]
                    if isinstance(rejected, dict)
                    else (429, "es_rejected_execution_exception")
                )
                result.rejected.append(BulkItemError(pos, status, error_type))
            else:
                result.accepted.append(pos)
                self.docs.append(doc)
        return result

    async def aclose(self) -> None:
        self.closed = True

    async def __aenter__(self) -> "FakeStore":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    @property
    def messages(self) -> list[str]:
        return [d["message"] for d in self.docs]


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def make_store():
    """Factory: ``make_store(errors=[...], rejections=[...])`` -> FakeStore."""
    return FakeStore


def make_record(i: int = 0, level: LogLevel = LogLevel.INFORMATION, app: str = "billing") -> LogRecord:
    return LogRecord(
        application=app,
        level=level,
        message=f"msg-{i}",
        attributes={"seq": str(i)},
        environment="Test",
    )


@pytest.fixture
def records():
    """Factory: ``records(n)`` -> n distinct records msg-0..msg-(n-1)."""

    def _make(n: int) -> list[LogRecord]:
        return [make_record(i) for i in range(n)]

    return _make
