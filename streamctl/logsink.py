"""
Per-stream append-only logs, one JSON record per line.
"""

import json
import logging
import re
import threading
import time
from pathlib import Path

from .errors import StreamNotFound
from .models import LogRecord, Severity

logger = logging.getLogger("streamctl.logs")

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class LogSink:
    def __init__(self, logs_dir: Path) -> None:
        self.logs_dir = logs_dir
        self._lock = threading.Lock()

    def path(self, stream_id: str) -> Path:
        # ids end up in a filename
        if not _ID_RE.match(stream_id):
            raise StreamNotFound(stream_id)
        return self.logs_dir / f"{stream_id}.log"

    def create(self, stream_id: str) -> None:
        path = self.path(stream_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)

    def append(self, stream_id: str, message: str, severity: Severity = "info") -> LogRecord:
        record = LogRecord(timestamp=time.time(), severity=severity, message=message)
        path = self.path(stream_id)
        try:
            with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write(record.model_dump_json() + "\n")
        except OSError as e:
            logger.error(f"Error appending to log for stream {stream_id}: {e}")
        return record

    def tail(self, stream_id: str, limit: int = 100) -> list[LogRecord]:
        """Return at most ``limit`` records, newest first."""
        path = self.path(stream_id)
        if limit <= 0 or not path.exists():
            return []
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                lines = f.read().splitlines()
        except OSError as e:
            logger.error(f"Error reading logs for stream {stream_id}: {e}")
            return []

        records: list[LogRecord] = []
        for line in reversed(lines):
            if len(records) >= limit:
                break
            if not line.strip():
                continue
            try:
                records.append(LogRecord(**json.loads(line)))
            except (ValueError, TypeError):
                continue
        return records

    def clear(self, stream_id: str) -> bool:
        path = self.path(stream_id)
        if not path.exists():
            return False
        with self._lock:
            path.write_text("")
        return True

    def delete(self, stream_id: str) -> None:
        with self._lock:
            self.path(stream_id).unlink(missing_ok=True)
