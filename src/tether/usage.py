"""Usage log: append-only JSONL writer for per-turn generation metrics."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class UsageRecord(BaseModel):
    """One finished turn's cost and token accounting."""

    model_config = ConfigDict(extra="forbid")

    ts: str = Field(default="", description="ISO 8601 timestamp with milliseconds")
    seq: int = Field(default=0, ge=0, description="Monotonic sequence number")
    thread_key: str = Field(description="Conversation thread")
    user_id: str | None = Field(default=None, description="Requesting user")
    model: str | None = Field(default=None, description="Model identifier")
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0)
    duration_ms: int = Field(default=0, ge=0)
    num_turns: int = Field(default=0, ge=0)
    success: bool = Field(default=True, description="Generator reported success")
    stopped: bool = Field(default=False, description="Turn was cancelled by the user")


class UsageRecorder:
    """Records usage to ``<usage_dir>/<date>_usage.jsonl``.

    Thread-safe: all writes are serialized through a ``threading.Lock``.
    Crash-safe: the file is flushed after every record. A new file is
    opened when the UTC date changes.
    """

    def __init__(self, usage_dir: Path | None = None) -> None:
        self._dir = usage_dir if usage_dir is not None else Path(".tether/usage")
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._seq = 0
        self._closed = False
        self._fh: IO[str] | None = None
        self._date: str | None = None

    @property
    def usage_dir(self) -> Path:
        return self._dir

    @property
    def record_count(self) -> int:
        """Number of records written so far."""
        return self._seq

    def current_file(self) -> Path:
        """Path of the file today's records go to."""
        return self._dir / f"{datetime.now(tz=UTC).strftime('%Y-%m-%d')}_usage.jsonl"

    def record(self, record: UsageRecord) -> None:
        """Stamp ``ts`` and ``seq`` on *record*, append it, and flush.

        Silently drops records after the recorder has been closed.
        """
        with self._lock:
            if self._closed:
                return
            fh = self._handle()
            record.seq = self._seq
            record.ts = _iso_now()
            self._seq += 1
            fh.write(record.model_dump_json() + "\n")
            fh.flush()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._fh is not None and not self._fh.closed:
                self._fh.close()

    def _handle(self) -> IO[str]:
        """Open (or rotate to) today's file. Caller must hold the lock."""
        date = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        if self._fh is None or self._date != date:
            if self._fh is not None and not self._fh.closed:
                self._fh.close()
            self._fh = (self._dir / f"{date}_usage.jsonl").open("a", encoding="utf-8")
            self._date = date
        return self._fh


def read_usage(path: Path) -> list[UsageRecord]:
    """Parse a usage file, skipping lines that fail validation."""
    records: list[UsageRecord] = []
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, 1):
            if not line.strip():
                continue
            try:
                records.append(UsageRecord.model_validate_json(line))
            except ValidationError as exc:
                logger.warning("%s:%d: invalid usage record: %s", path, lineno, exc)
    return records


def _iso_now() -> str:
    """Return the current UTC time as ISO 8601 with milliseconds."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
