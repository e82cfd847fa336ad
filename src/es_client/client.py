from __future__ import annotations

import json
from typing import Any, Iterable, Optional, Sequence, TypedDict

import httpx
from loguru import logger

from .errors import StoreError, map_http_error, map_status
from .models import BulkResult, DataStreamName


class StoreConfig(TypedDict, total=False):
    uris: list[str]
    username: str
    password: str
    timeout: float
    verify: bool


DEFAULTS: StoreConfig = {
    "uris": ["http://localhost:9200"],
    "timeout": 10.0,
    "verify": True,
}

NDJSON = "application/x-ndjson"


def bulk_body(documents: Iterable[dict]) -> bytes:
    """Render documents as ``create`` actions; data streams only accept ``create``."""
    lines: list[str] = []
    for doc in documents:
        lines.append('{"create":{}}')
        lines.append(json.dumps(doc, separators=(",", ":"), ensure_ascii=False))
    return ("\n".join(lines) + "\n").encode("utf-8")


def index_template_body(stream: DataStreamName, priority: int = 200) -> dict[str, Any]:
    return {
        "index_patterns": [stream.index_pattern],
        "data_stream": {},
        "priority": priority,
        "template": {
            "mappings": {
                "dynamic_templates": [
                    {
                        "labels_as_keywords": {
                            "path_match": "labels.*",
                            "mapping": {"type": "keyword"},
                        }
                    }
                ],
                "properties": {
                    "@timestamp": {"type": "date"},
                    "message": {"type": "text"},
                    "log": {"properties": {"level": {"type": "keyword"}}},
                    "service": {
                        "properties": {
                            "name": {"type": "keyword"},
                            "environment": {"type": "keyword"},
                        }
                    },
                    "agent": {"properties": {"name": {"type": "keyword"}}},
                },
            }
        },
        "_meta": {"managed_by": "log-ingest"},
    }


class ElasticsearchStore:
    """
    Async client for the handful of Elasticsearch APIs the sink needs.

    Usage:

        store = ElasticsearchStore({"uris": ["http://es:9200"]})
        await store.ensure_data_stream(DataStreamName())
        result = await store.bulk("logs-api-logs-prod", [doc, doc])
        await store.aclose()

    Multiple URIs are tried in order when a node cannot be reached; the last
    node that answered stays preferred.
    """

    def __init__(self, cfg: Optional[StoreConfig] = None, *, transport=None):
        self.cfg: StoreConfig = {**DEFAULTS, **(cfg or {})}
        uris = [u.rstrip("/") for u in self.cfg.get("uris") or []]
        if not uris:
            raise ValueError("at least one store URI required")
        self._uris = uris
        self._preferred = 0
        auth = None
        if self.cfg.get("username"):
            auth = httpx.BasicAuth(self.cfg["username"], self.cfg.get("password") or "")
        self._client = httpx.AsyncClient(
            auth=auth,
            timeout=self.cfg["timeout"],
            verify=self.cfg.get("verify", True),
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @property
    def uris(self) -> list[str]:
        return list(self._uris)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ElasticsearchStore":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    # ---------- internal helpers ----------

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        last: Optional[Exception] = None
        n = len(self._uris)
        for i in range(n):
            idx = (self._preferred + i) % n
            url = f"{self._uris[idx]}{path}"
            try:
                resp = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                logger.debug(f"Store node {self._uris[idx]} unreachable: {type(e).__name__}: {e}")
                last = e
                continue
            self._preferred = idx
            return resp
        assert last is not None
        raise map_http_error(last)

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = None
            raise map_status(
                resp.status_code,
                body,
                f"{resp.request.method} {resp.request.url.path} -> {resp.status_code}: "
                f"{resp.text[:200]}",
            )

    # ---------- health ----------

    async def ping(self) -> bool:
        try:
            resp = await self._request("GET", "/")
        except StoreError:
            return False
        return resp.status_code == 200

    # ---------- bootstrap ----------

    async def has_index_template(self, name: str) -> bool:
        resp = await self._request("HEAD", f"/_index_template/{name}")
        if resp.status_code == 404:
            return False
        self._raise_for_status(resp)
        return True

    async def put_index_template(self, stream: DataStreamName) -> None:
        resp = await self._request(
            "PUT", f"/_index_template/{stream.template_name}", json=index_template_body(stream)
        )
        self._raise_for_status(resp)

    async def has_data_stream(self, name: str) -> bool:
        resp = await self._request("GET", f"/_data_stream/{name}")
        if resp.status_code == 404:
            return False
        self._raise_for_status(resp)
        return True

    async def create_data_stream(self, name: str) -> None:
        resp = await self._request("PUT", f"/_data_stream/{name}")
        if resp.status_code == 400 and "resource_already_exists" in resp.text:
            return
        self._raise_for_status(resp)

    async def ensure_data_stream(self, stream: DataStreamName) -> bool:
        """Create the index template and data stream if absent.

        Returns:
            True if anything was created, False if both already existed.
        """
        created = False
        if not await self.has_index_template(stream.template_name):
            await self.put_index_template(stream)
            logger.info(f"Created index template {stream.template_name}")
            created = True
        if not await self.has_data_stream(str(stream)):
            await self.create_data_stream(str(stream))
            logger.info(f"Created data stream {stream}")
            created = True
        return created

    # ---------- writes ----------

    async def bulk(self, stream: str, documents: Sequence[dict]) -> BulkResult:
        """Write documents in order; returns per-document status.

        Raises:
            RetryableDeliveryError: network failure, 429 or 5xx for the whole request
            FatalDeliveryError: auth, mapping or malformed request
        """
        if not documents:
            return BulkResult()
        try:
            body = bulk_body(documents)
        except (TypeError, ValueError) as e:
            raise map_http_error(e) from e
        resp = await self._request(
            "POST",
            f"/{stream}/_bulk",
            content=body,
            headers={"Content-Type": NDJSON},
        )
        self._raise_for_status(resp)
        payload = resp.json()
        if not payload.get("errors"):
            return BulkResult.all_accepted(len(documents), payload.get("took"))
        return BulkResult.from_response(payload)
