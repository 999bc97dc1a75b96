"""Structured event journal for upload batches.

Events are appended to ``<log dir>/json/year=YYYY/month=MM/day=DD/events.jsonl``,
one JSON object per line, and every finished batch leaves a ``<batch_id>.jsonl``
summary in the partition of the day it completed. The tree reads directly as a
hive-partitioned dataset, e.g. in DuckDB::

    SELECT * FROM read_json_auto('logs/json/**/*.jsonl', hive_partitioning=true)
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partialmethod
from pathlib import Path
from typing import Any

from jzfs_upload.config import get_settings

PARTITION_ROOT = "json"
EVENTS_FILE = "events.jsonl"


def partition_dir(root: Path, when: datetime) -> Path:
    """Directory holding the records of the day ``when`` falls on."""
    return root / PARTITION_ROOT / f"year={when:%Y}" / f"month={when:%m}" / f"day={when:%d}"


def _as_line(data: dict[str, Any]) -> str:
    return json.dumps(data, default=str) + "\n"


@dataclass
class EventRecord:
    """One line of the event journal."""

    level: str
    category: str
    event: str
    message: str
    metadata: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization; empty metadata is left out."""
        data: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.upper(),
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.metadata:
            data["metadata"] = self.metadata
        return data


class LogService:
    """Writes event records and batch summaries below one log directory.

    A single lock guards every write, so lines from concurrent upload workers
    never interleave.
    """

    def __init__(self, log_dir: Path | None = None) -> None:
        self._root = log_dir
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        """Log directory; falls back to the configured one when none was given."""
        return self._root if self._root is not None else get_settings().log_directory

    def _write(self, path: Path, text: str, mode: str) -> None:
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, mode, encoding="utf-8") as f:
                f.write(text)

    def record(self, entry: EventRecord) -> Path:
        """Append an entry to the events file of its day and return that file."""
        path = partition_dir(self.root, entry.timestamp) / EVENTS_FILE
        self._write(path, _as_line(entry.to_dict()), "a")
        return path

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an event.

        Args:
            level: INFO, WARNING or ERROR (any case)
            category: Area the event belongs to (upload, batch, app)
            event: Machine-readable event name in snake_case
            message: Human-readable description
            metadata: Extra fields; values JSON cannot encode are stringified
        """
        self.record(EventRecord(level, category, event, message, metadata))

    info = partialmethod(log, "INFO")
    warning = partialmethod(log, "WARNING")
    error = partialmethod(log, "ERROR")

    def save_batch_jsonl(
        self, batch_id: str, summary: dict[str, Any], completed_at: datetime
    ) -> Path:
        """Write the summary of a finished batch, replacing any earlier one.

        Returns:
            Path of the summary file
        """
        path = partition_dir(self.root, completed_at) / f"{batch_id}.jsonl"
        self._write(path, _as_line(summary), "w")
        return path


_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Return the process-wide LogService."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service
