"""
Elasticsearch store client

Minimal async client used by the log-ingest delivery sink: reachability
probe, data stream bootstrap and ``_bulk`` writes with per-document status.

Usage:
    from es_client import ElasticsearchStore, DataStreamName

    store = ElasticsearchStore({"uris": ["http://localhost:9200"]})
    await store.ensure_data_stream(DataStreamName(dataset="api-logs"))
    result = await store.bulk("logs-api-logs-prod", docs)
"""

from .client import ElasticsearchStore, StoreConfig, bulk_body
from .errors import (
    StoreError,
    RetryableDeliveryError,
    FatalDeliveryError,
    AuthenticationRejected,
    MappingConflict,
    MalformedBatch,
    map_http_error,
)
from .models import BulkItemError, BulkResult, DataStreamName

__version__ = "0.1.0"
__all__ = [
    "ElasticsearchStore",
    "StoreConfig",
    "bulk_body",
    "StoreError",
    "RetryableDeliveryError",
    "FatalDeliveryError",
    "AuthenticationRejected",
    "MappingConflict",
    "MalformedBatch",
    "map_http_error",
    "BulkItemError",
    "BulkResult",
    "DataStreamName",
]
