from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from es_client import DataStreamName, StoreConfig


class SinkSettings(BaseSettings):
    """Environment-driven configuration for the ingest sink.

    Every field can be set as ``LOG_INGEST_<FIELD>`` or in a ``.env`` file.
    ``es_uris`` takes a comma-separated list.
    """

    model_config = SettingsConfigDict(
        env_prefix="LOG_INGEST_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    # store
    es_uris: str = "http://localhost:9200"
    es_username: Optional[str] = None
    es_password: Optional[str] = None
    es_verify_certs: bool = True
    request_timeout: float = Field(10.0, gt=0)

    # destination
    stream_type: str = "logs"
    stream_dataset: str = "api-logs"
    stream_namespace: str = "prod"

    # enrichment
    environment: str = "Production"
    service_name: str = "log-ingest"

    # buffering / batching
    queue_capacity: int = Field(10_000, gt=0)
    max_batch_size: int = Field(500, gt=0)
    max_batch_age: float = Field(2.0, gt=0)
    workers: int = Field(2, gt=0)

    # retry
    max_retries: int = Field(5, ge=0)
    base_delay: float = Field(0.5, ge=0)
    max_delay: float = Field(30.0, ge=0)
    jitter: float = Field(0.2, ge=0, lt=1)

    # lifecycle
    startup_timeout: float = Field(30.0, ge=0)
    startup_poll_interval: float = Field(1.0, gt=0)
    bootstrap_policy: Literal["fail", "continue"] = "fail"
    shutdown_timeout: float = Field(10.0, ge=0)
    dlq_path: Optional[str] = None

    # console / ops
    echo: bool = True
    log_level: str = "INFO"
    metrics_port: Optional[int] = None

    @property
    def uri_list(self) -> list[str]:
        return [u.strip() for u in self.es_uris.split(",") if u.strip()]

    @property
    def data_stream(self) -> DataStreamName:
        return DataStreamName(
            type=self.stream_type, dataset=self.stream_dataset, namespace=self.stream_namespace
        )

    def store_config(self) -> StoreConfig:
        cfg: StoreConfig = {
            "uris": self.uri_list,
            "timeout": self.request_timeout,
            "verify": self.es_verify_certs,
        }
        if self.es_username:
            cfg["username"] = self.es_username
            cfg["password"] = self.es_password or ""
        return cfg

    def redacted(self) -> dict:
        data = self.model_dump()
        if data.get("es_password"):
            data["es_password"] = "***"
        return data


@lru_cache()
def get_settings() -> SinkSettings:
    return SinkSettings()
