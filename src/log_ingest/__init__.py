"""
log-ingest

Accepts structured log submissions, normalizes them, echoes them to the
console at their severity and ships them to an Elasticsearch data stream
through an asynchronous, batching, retrying delivery sink.

Usage:
    from es_client import ElasticsearchStore
    from log_ingest import LogIngestor, LogSink, get_settings

    settings = get_settings()
    async with LogSink.from_settings(settings) as sink:
        ingestor = LogIngestor(sink, environment=settings.environment)
        ingestor.submit({"application": "billing", "level": "error", "message": "boom"})
"""

from .errors import (
    IngestError,
    QueueFullError,
    QueueClosedError,
    ValidationError,
    StartupUnreachable,
    BootstrapError,
    ShutdownIncomplete,
)
from .models import Batch, LogLevel, LogRecord, LogSubmission, normalize_attributes, parse_level
from .ingest import LogIngestor
from .settings import SinkSettings, get_settings
from .sink import LogSink, RetryPolicy, ShutdownReport, SinkHealth

__version__ = "0.1.0"
__all__ = [
    "IngestError",
    "QueueFullError",
    "QueueClosedError",
    "ValidationError",
    "StartupUnreachable",
    "BootstrapError",
    "ShutdownIncomplete",
    "Batch",
    "LogLevel",
    "LogRecord",
    "LogSubmission",
    "normalize_attributes",
    "parse_level",
    "LogIngestor",
    "SinkSettings",
    "get_settings",
    "LogSink",
    "RetryPolicy",
    "ShutdownReport",
    "SinkHealth",
]
