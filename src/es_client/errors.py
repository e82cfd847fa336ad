"""
Custom exceptions for the Elasticsearch store client.

Splits store failures into retryable and fatal classes so the delivery
pipeline can decide between backoff and drop.
"""

from __future__ import annotations

from typing import Optional


class StoreError(Exception):
    """Base error for store operations."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RetryableDeliveryError(StoreError):
    """Timeouts, refused connections, 429 and 5xx responses."""

    pass


class FatalDeliveryError(StoreError):
    """Errors that will not go away by sending the same batch again."""

    pass


class AuthenticationRejected(FatalDeliveryError):
    """Credentials missing or not allowed to write."""

    pass


class MappingConflict(FatalDeliveryError):
    """Documents are incompatible with the destination mapping."""

    pass


class MalformedBatch(FatalDeliveryError):
    """The request itself is invalid (serialization or 4xx)."""

    pass


MAPPING_ERROR_TYPES = {
    "mapper_parsing_exception",
    "document_parsing_exception",
    "strict_dynamic_mapping_exception",
    "illegal_argument_exception",
}


def _error_type(body: object) -> str:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("type") or "")
    return ""


def map_http_error(e: Exception) -> StoreError:
    import httpx

    if isinstance(e, StoreError):
        return e
    if isinstance(e, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return RetryableDeliveryError(f"{type(e).__name__}: {e}")
    if isinstance(e, (TimeoutError, ConnectionError)):
        return RetryableDeliveryError(f"{type(e).__name__}: {e}")
    if isinstance(e, httpx.HTTPStatusError):
        return map_status(e.response.status_code, _safe_json(e.response), str(e))
    if isinstance(e, (TypeError, ValueError)):
        return MalformedBatch(f"unserializable batch: {e}")
    return StoreError(str(e))


def map_status(status: int, body: object = None, message: str = "") -> StoreError:
    msg = message or f"store responded {status}"
    if status == 429 or status >= 500:
        return RetryableDeliveryError(msg, status)
    if status in (401, 403):
        return AuthenticationRejected(msg, status)
    if status == 400 and _error_type(body) in MAPPING_ERROR_TYPES:
        return MappingConflict(msg, status)
    return MalformedBatch(msg, status)


def _safe_json(response) -> object:
    try:
        return response.json()
    except Exception:
        return None
