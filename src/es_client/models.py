"""
Pydantic models for the Elasticsearch store client.

Covers data stream naming and the parsed outcome of a ``_bulk`` call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, field_validator

_FORBIDDEN = set(' *,"\\/<>|?#:')


class DataStreamName(BaseModel):
    """Data stream naming scheme ``{type}-{dataset}-{namespace}``."""

    type: str = "logs"
    dataset: str = "api-logs"
    namespace: str = "prod"

    @field_validator("type", "dataset", "namespace")
    @classmethod
    def _validate_part(cls, v: str):
        v = v.strip().lower()
        if not v:
            raise ValueError("data stream name parts must not be empty")
        if any(c in _FORBIDDEN for c in v):
            raise ValueError(f"Invalid character in data stream name part: {v!r}")
        return v

    @field_validator("type")
    @classmethod
    def _no_dash_in_type(cls, v: str):
        if "-" in v:
            raise ValueError("data stream type may not contain '-'")
        return v

    @property
    def template_name(self) -> str:
        return f"{self.type}-{self.dataset}"

    @property
    def index_pattern(self) -> str:
        return f"{self.type}-{self.dataset}-*"

    def __str__(self) -> str:
        return f"{self.type}-{self.dataset}-{self.namespace}"


@dataclass(frozen=True)
class BulkItemError:
    """One document the store refused."""

    position: int
    status: int
    error_type: str = ""
    reason: str = ""

    @property
    def retryable(self) -> bool:
        return self.status == 429 or self.status >= 500


@dataclass
class BulkResult:
    """Per-document outcome of a bulk write.

    Attributes:
        accepted: positions (in request order) the store committed
        rejected: positions it refused, with the store's status and reason
        took_ms: server-side processing time, if reported
    """

    accepted: list[int] = field(default_factory=list)
    rejected: list[BulkItemError] = field(default_factory=list)
    took_ms: Optional[int] = None

    @property
    def ok(self) -> bool:
        return not self.rejected

    @classmethod
    def from_response(cls, body: dict) -> "BulkResult":
        result = cls(took_ms=body.get("took"))
        for pos, item in enumerate(body.get("items") or []):
            # one key per item: "create" / "index"
            op = next(iter(item.values())) if item else {}
            status = int(op.get("status", 500))
            if 200 <= status < 300:
                result.accepted.append(pos)
                continue
            err = op.get("error") or {}
            if isinstance(err, str):
                err = {"reason": err}
            result.rejected.append(
                BulkItemError(
                    position=pos,
                    status=status,
                    error_type=str(err.get("type", "")),
                    reason=str(err.get("reason", "")),
                )
            )
        return result

    @classmethod
    def all_accepted(cls, n: int, took_ms: Optional[int] = None) -> "BulkResult":
        return cls(accepted=list(range(n)), took_ms=took_ms)
