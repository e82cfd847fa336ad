"""
File-based dead letter queue (NDJSON) for dropped batches.

One line per dropped batch: when, why, and the records themselves, so a drop
is never silent and the records can be shipped again with
``log-ingest replay-dlq``.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from loguru import logger

from ..models import LogRecord


@dataclass
class DLQRecord:
    ts: str
    error: str
    items: list[LogRecord]
    metadata: dict[str, Any] = field(default_factory=dict)


class DeadLetterQueue:
    def __init__(self, path: str | Path, *, mkdirs: bool = True):
        self._path = Path(path)
        if mkdirs:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def save(
        self,
        records: Sequence[LogRecord],
        error: BaseException | str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        line = json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "error": error if isinstance(error, str) else f"{type(error).__name__}: {error}",
                "metadata": metadata or {},
                "items": [r.to_dict() for r in records],
            },
            ensure_ascii=False,
        )
        async with self._lock:
            await asyncio.to_thread(self._append, line)
        logger.debug(f"DLQ saved {len(records)} record(s) to {self._path}")

    def _append(self, line: str) -> None:
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def replay(self, max_records: int) -> list[DLQRecord]:
        """Read up to ``max_records`` entries, oldest first. Does not truncate."""
        if not self._path.exists():
            return []
        async with self._lock:
            lines = await asyncio.to_thread(self._read_lines)
        out: list[DLQRecord] = []
        for line in lines:
            if len(out) >= max_records:
                break
            if not line.strip():
                continue
            raw = json.loads(line)
            out.append(
                DLQRecord(
                    ts=raw.get("ts", ""),
                    error=raw.get("error", ""),
                    items=[LogRecord.from_dict(d) for d in raw.get("items", [])],
                    metadata=raw.get("metadata") or {},
                )
            )
        return out

    def _read_lines(self) -> list[str]:
        return self._path.read_text(encoding="utf-8").splitlines()
