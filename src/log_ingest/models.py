"""
Data models for log ingest.

``LogSubmission`` validates what producers send, ``LogRecord`` is the
immutable normalized form that flows through the sink, ``Batch`` is a sealed
group of records shipped in one bulk call.
"""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from time import monotonic
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LogLevel(str, Enum):
    """Closed set of severities a record can carry."""

    DEBUG = "Debug"
    INFORMATION = "Information"
    WARNING = "Warning"
    ERROR = "Error"
    FATAL = "Fatal"

    @property
    def channel(self) -> str:
        """Loguru level name used for the console echo."""
        return _CHANNELS[self]


_CHANNELS = {
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFORMATION: "INFO",
    LogLevel.WARNING: "WARNING",
    LogLevel.ERROR: "ERROR",
    LogLevel.FATAL: "CRITICAL",
}

_LEVEL_ALIASES = {lvl.value.lower(): lvl for lvl in LogLevel}
_LEVEL_ALIASES.update({"info": LogLevel.INFORMATION, "warn": LogLevel.WARNING})


def parse_level(text: Optional[str]) -> LogLevel:
    """Parse a free-text level, case-insensitively.

    Accepts the enum names plus ``info`` and ``warn``. Anything else,
    including ``None`` or an empty string, falls back to Information.
    """
    if not text:
        return LogLevel.INFORMATION
    return _LEVEL_ALIASES.get(str(text).strip().lower(), LogLevel.INFORMATION)


def _scalar_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), default=str, ensure_ascii=False)


def normalize_attributes(payload: Optional[Mapping[str, Any]]) -> dict[str, str]:
    """Flatten an arbitrary payload into an ordered ``str -> str`` mapping.

    Rules, applied in insertion order:
      - strings are kept as-is
      - ``None`` values are omitted
      - numbers and booleans become their JSON text (``3``, ``true``)
      - nested mappings are flattened with dot-joined keys
      - lists become compact JSON text
    """
    out: dict[str, str] = {}
    if payload is None:
        return out
    if not isinstance(payload, Mapping):
        raise TypeError(f"additional data must be a mapping, got {type(payload).__name__}")

    def walk(prefix: str, node: Mapping) -> None:
        for k, v in node.items():
            key = f"{prefix}.{k}" if prefix else str(k)
            if v is None:
                continue
            if isinstance(v, Mapping):
                walk(key, v)
            else:
                out[key] = _scalar_text(v)

    walk("", payload)
    return out


class LogSubmission(BaseModel):
    """Raw submission as received from a producer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    application: str
    level: Optional[str] = None
    message: str
    additional_data: Optional[dict[str, Any]] = Field(default=None, alias="additionalData")

    @field_validator("application", "message")
    @classmethod
    def _not_blank(cls, v: str):
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


@dataclass(frozen=True)
class LogRecord:
    """Normalized, immutable log record."""

    application: str
    level: LogLevel
    message: str
    attributes: Mapping[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    environment: str = "Production"

    def __post_init__(self):
        if not isinstance(self.level, LogLevel):
            object.__setattr__(self, "level", parse_level(self.level))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        object.__setattr__(self, "timestamp", ts.astimezone(timezone.utc))

    @classmethod
    def from_submission(cls, sub: LogSubmission, environment: str) -> "LogRecord":
        return cls(
            application=sub.application,
            level=parse_level(sub.level),
            message=sub.message,
            attributes=normalize_attributes(sub.additional_data),
            environment=environment,
        )

    def to_document(self, agent: Optional[str] = None) -> dict[str, Any]:
        """JSON document as written to the data stream."""
        doc: dict[str, Any] = {
            "@timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "message": self.message,
            "log": {"level": self.level.value},
            "service": {"name": self.application, "environment": self.environment},
            "labels": dict(self.attributes),
        }
        if agent:
            doc["agent"] = {"name": agent}
        return doc

    def to_dict(self) -> dict[str, Any]:
        return {
            "application": self.application,
            "level": self.level.value,
            "message": self.message,
            "attributes": dict(self.attributes),
            "timestamp": self.timestamp.isoformat(),
            "environment": self.environment,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "LogRecord":
        return cls(
            application=d["application"],
            level=parse_level(d.get("level")),
            message=d["message"],
            attributes=d.get("attributes") or {},
            timestamp=datetime.fromisoformat(d["timestamp"].replace("Z", "+00:00")),
            environment=d.get("environment", "Production"),
        )


_batch_ids = itertools.count(1)


@dataclass(frozen=True)
class Batch:
    """Ordered group of records sealed by the batcher."""

    records: tuple[LogRecord, ...]
    batch_id: int = field(default_factory=lambda: next(_batch_ids))
    sealed_at: float = field(default_factory=monotonic)

    def __post_init__(self):
        object.__setattr__(self, "records", tuple(self.records))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def subset(self, positions: list[int]) -> "Batch":
        """New batch holding the records at ``positions``, order preserved."""
        return Batch(tuple(self.records[i] for i in sorted(positions)))
