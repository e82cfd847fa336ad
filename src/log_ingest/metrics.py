"""
Prometheus metrics for the ingest sink.

Registered on the global REGISTRY at import; expose them with
``prometheus_client.start_http_server`` (see ``log-ingest ship --metrics-port``).
"""

from prometheus_client import Counter, Gauge, Histogram

RECORDS_ENQUEUED = Counter(
    "log_ingest_records_enqueued_total",
    "Records accepted into the record queue",
)

RECORDS_REJECTED = Counter(
    "log_ingest_records_rejected_total",
    "Submissions rejected before reaching the queue",
    ["reason"],  # queue_full | closed | invalid
)

RECORDS_DELIVERED = Counter(
    "log_ingest_records_delivered_total",
    "Records committed by the store",
)

RECORDS_DROPPED = Counter(
    "log_ingest_records_dropped_total",
    "Records that reached a terminal non-delivered state",
    ["reason"],  # fatal | retries_exhausted | shutdown
)

DELIVERY_ATTEMPTS = Counter(
    "log_ingest_delivery_attempts_total",
    "Bulk write attempts by outcome",
    ["outcome"],  # delivered | partial | failed | fatal
)

BULK_LATENCY = Histogram(
    "log_ingest_bulk_latency_seconds",
    "Bulk write latency in seconds",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
)

QUEUE_DEPTH = Gauge(
    "log_ingest_queue_depth",
    "Records currently buffered in the record queue",
)

PENDING_RETRIES = Gauge(
    "log_ingest_pending_retries",
    "Delivery attempts waiting for their retry timer",
)
