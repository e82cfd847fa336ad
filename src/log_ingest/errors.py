"""
Error taxonomy for log ingest.

Producer-facing errors (``QueueFullError``, ``QueueClosedError``,
``ValidationError``) reject a submission immediately. Delivery errors live in
``es_client.errors`` and never reach producers. Startup errors are the only
ones that escape the sink.
"""

from __future__ import annotations


class IngestError(Exception):
    """Base error for log ingest."""

    pass


class QueueFullError(IngestError):
    """Record queue is at capacity; caller should shed load."""

    pass


class QueueClosedError(IngestError):
    """Sink is shutting down and no longer accepts records."""

    pass


class ValidationError(IngestError):
    """Submission is missing fields or carries an unusable payload."""

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []


class StartupUnreachable(IngestError):
    """Store never became reachable within the startup timeout."""

    pass


class BootstrapError(IngestError):
    """Destination data stream could not be created."""

    pass


class ShutdownIncomplete(IngestError):
    """Records were still undelivered when the shutdown timeout expired."""

    def __init__(self, abandoned: int, sample: object = None):
        super().__init__(f"{abandoned} record(s) abandoned at shutdown")
        self.abandoned = abandoned
        self.sample = sample
