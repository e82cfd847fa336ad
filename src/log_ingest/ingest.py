"""
Producer interface: turn raw submissions into records and hand them to the sink.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol

import pydantic
from loguru import logger

from .errors import ValidationError
from .metrics import RECORDS_REJECTED
from .models import LogRecord, LogSubmission


class RecordSink(Protocol):
    def enqueue(self, record: LogRecord) -> None: ...


class LogIngestor:
    """Validates, normalizes, echoes and enqueues log submissions.

    Usage:
        ingestor = LogIngestor(sink, environment="Staging")
        record = ingestor.submit({"application": "billing", "level": "warning",
                                  "message": "slow upstream", "additionalData": {"ms": 812}})

    ``submit`` raises ``ValidationError`` for bad input and lets
    ``QueueFullError``/``QueueClosedError`` from the sink through, so the
    caller can answer with a rejection instead of stalling.
    """

    def __init__(self, sink: RecordSink, *, environment: str = "Production", echo: bool = True):
        self._sink = sink
        self._environment = environment
        self._echo = echo

    def parse(self, raw: Mapping[str, Any]) -> LogRecord:
        try:
            sub = LogSubmission.model_validate(raw)
        except pydantic.ValidationError as e:
            RECORDS_REJECTED.labels(reason="invalid").inc()
            fields = ", ".join(".".join(str(p) for p in err["loc"]) or "body" for err in e.errors())
            raise ValidationError(
                f"invalid log submission: {fields}",
                errors=e.errors(include_url=False),
            ) from None
        return LogRecord.from_submission(sub, self._environment)

    def submit(self, raw: Mapping[str, Any]) -> LogRecord:
        record = self.parse(raw)
        self._sink.enqueue(record)
        if self._echo:
            echo(record)
        return record


def echo(record: LogRecord) -> None:
    """Write a record to the console at its own severity."""
    logger.bind(
        application=record.application,
        environment=record.environment,
        attributes=dict(record.attributes),
    ).log(record.level.channel, f"[{record.application}] {record.message}")
