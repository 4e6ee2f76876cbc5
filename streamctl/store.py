"""
Job store: stream definitions persisted as a JSON record list.
"""

import json
import logging
import re
import threading
import time
import uuid
from pathlib import Path
from typing import Optional

from .errors import StreamNotFound, StreamValidationError
from .models import StreamCreate, StreamDefinition, StreamUpdate

logger = logging.getLogger("streamctl.store")

REQUIRED_FIELDS = ("name", "input_url", "output_url", "key")

BITRATE_RE    = re.compile(r"^\d+(\.\d+)?[kKmM]?$")
RESOLUTION_RE = re.compile(r"^\d{2,5}x\d{2,5}$")


def _validate(data: dict) -> None:
    missing = [f for f in REQUIRED_FIELDS if not str(data.get(f) or "").strip()]
    if missing:
        raise StreamValidationError(f"Missing required fields: {', '.join(missing)}")
    if not BITRATE_RE.match(data["bitrate"]):
        raise StreamValidationError(f"Invalid bitrate: {data['bitrate']!r}")
    if not RESOLUTION_RE.match(data["resolution"]):
        raise StreamValidationError(f"Invalid resolution: {data['resolution']!r}")


class JobStore:
    """CRUD over ``streams.json``. Every write replaces the file atomically."""

    def __init__(self, path: Path, default_bitrate: str = "1000k",
                 default_resolution: str = "1280x720") -> None:
        self.path = path
        self.default_bitrate = default_bitrate
        self.default_resolution = default_resolution
        self._lock = threading.RLock()

    # -- persistence --------------------------------------------------------

    def _load(self) -> list[StreamDefinition]:
        if not self.path.exists():
            return []
        try:
            with open(self.path) as f:
                raw = json.load(f)
            return [StreamDefinition(**item) for item in raw]
        except Exception as e:
            logger.error(f"Error reading streams file {self.path}: {e}")
            self._quarantine()
            return []

    def _quarantine(self) -> None:
        """Move an unreadable streams file aside so the next write cannot replace it."""
        bad = self.path.with_name(f"{self.path.name}.{int(time.time())}.bad")
        try:
            self.path.replace(bad)
            logger.error(f"Moved unreadable streams file to {bad}")
        except OSError as e:
            logger.error(f"Could not move unreadable streams file aside: {e}")

    def _save(self, streams: list[StreamDefinition]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        try:
            with open(tmp, "w") as f:
                json.dump([s.model_dump() for s in streams], f, indent=2)
            tmp.replace(self.path)
        finally:
            tmp.unlink(missing_ok=True)

    # -- queries ------------------------------------------------------------

    def list_streams(self) -> list[StreamDefinition]:
        with self._lock:
            return self._load()

    def get(self, stream_id: str) -> StreamDefinition:
        with self._lock:
            for stream in self._load():
                if stream.id == stream_id:
                    return stream
        raise StreamNotFound(stream_id)

    def find(self, stream_id: str) -> Optional[StreamDefinition]:
        try:
            return self.get(stream_id)
        except StreamNotFound:
            return None

    # -- mutations ----------------------------------------------------------

    def create(self, data: StreamCreate) -> StreamDefinition:
        fields = {k: (v.strip() if isinstance(v, str) else v)
                  for k, v in data.model_dump().items()}
        fields["bitrate"] = fields.get("bitrate") or self.default_bitrate
        fields["resolution"] = fields.get("resolution") or self.default_resolution
        fields["category"] = fields.get("category") or "Uncategorized"
        _validate(fields)

        now = time.time()
        stream = StreamDefinition(
            id=str(uuid.uuid4()),
            active=False,
            created_at=now,
            updated_at=now,
            **fields,
        )
        with self._lock:
            streams = self._load()
            streams.append(stream)
            self._save(streams)
        logger.info(f"Stream created: {stream.name} ({stream.id})")
        return stream

    def update(self, stream_id: str, data: StreamUpdate) -> StreamDefinition:
        changes = {k: (v.strip() if isinstance(v, str) else v)
                   for k, v in data.model_dump(exclude_none=True).items()}
        with self._lock:
            streams = self._load()
            for i, stream in enumerate(streams):
                if stream.id == stream_id:
                    merged = {**stream.model_dump(), **changes}
                    _validate(merged)
                    merged["updated_at"] = time.time()
                    streams[i] = StreamDefinition(**merged)
                    self._save(streams)
                    return streams[i]
        raise StreamNotFound(stream_id)

    def set_active(self, stream_id: str, active: bool) -> None:
        with self._lock:
            streams = self._load()
            for stream in streams:
                if stream.id == stream_id:
                    if stream.active != active:
                        stream.active = active
                        self._save(streams)
                    return
        raise StreamNotFound(stream_id)

    def delete(self, stream_id: str) -> None:
        with self._lock:
            streams = self._load()
            remaining = [s for s in streams if s.id != stream_id]
            if len(remaining) == len(streams):
                raise StreamNotFound(stream_id)
            self._save(remaining)
        logger.info(f"Stream deleted: {stream_id}")
