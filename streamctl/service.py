"""
Stream operations that span the store, the supervisor, the logs and the scripts.
"""

import logging
from typing import Optional

from .command import ScriptWriter
from .logsink import LogSink
from .models import (
    CategoryStats,
    RunState,
    StreamCreate,
    StreamDefinition,
    StreamStats,
    StreamUpdate,
    StreamView,
)
from .store import JobStore
from .supervisor import Supervisor

logger = logging.getLogger("streamctl.service")

# fields that end up on the transcoder command line
COMMAND_FIELDS = ("input_url", "output_url", "key", "bitrate", "resolution")

HEALTH_WINDOW = 10


class StreamService:
    def __init__(self, store: JobStore, supervisor: Supervisor, logs: LogSink,
                 scripts: ScriptWriter) -> None:
        self.store = store
        self.supervisor = supervisor
        self.logs = logs
        self.scripts = scripts

    @property
    def config(self) -> dict:
        return self.supervisor.config

    def view(self, stream: StreamDefinition) -> StreamView:
        return StreamView(**stream.model_dump(), state=self.supervisor.state(stream.id))

    def list_views(self) -> list[StreamView]:
        return [self.view(s) for s in self.store.list_streams()]

    # -- CRUD ---------------------------------------------------------------

    def create(self, data: StreamCreate) -> StreamDefinition:
        stream = self.store.create(data)
        self.logs.create(stream.id)
        self.scripts.write(stream, self.config)
        self.logs.append(stream.id, "Stream created", "info")
        return stream

    def update(self, stream_id: str, data: StreamUpdate) -> StreamDefinition:
        changed = [f for f, v in data.model_dump(exclude_none=True).items() if f in COMMAND_FIELDS]
        stream = self.store.update(stream_id, data)
        if changed:
            self.scripts.write(stream, self.config)
            if self.supervisor.is_running(stream_id):
                self.logs.append(
                    stream_id,
                    f"Settings changed ({', '.join(changed)}); restart the stream to apply them",
                    "warning",
                )
        return stream

    async def delete(self, stream_id: str, timeout: Optional[float] = None) -> bool:
        """
        Stop the stream if it runs, then remove its record, script and log.

        With ``timeout`` the call returns False once it has waited that long;
        the deletion then finishes in the background.
        """
        def cleanup() -> None:
            self.store.delete(stream_id)
            self.scripts.remove(stream_id)
            self.logs.delete(stream_id)

        op = self.supervisor.discard(stream_id, cleanup)
        if timeout is None:
            await op
            return True
        return await self.supervisor.bounded(op, "delete", stream_id, timeout)

    # -- stats --------------------------------------------------------------

    def stream_stats(self) -> StreamStats:
        streams = self.store.list_streams()
        stats = StreamStats(total=len(streams))
        for stream in streams:
            if self.supervisor.state(stream.id) != RunState.RUNNING:
                continue
            stats.active += 1
            recent = self.logs.tail(stream.id, HEALTH_WINDOW)
            if any(r.severity == "error" for r in recent):
                stats.health.error += 1
            elif any(r.severity == "warning" for r in recent):
                stats.health.warning += 1
            elif recent:
                stats.health.healthy += 1
            else:
                stats.health.unknown += 1
        stats.inactive = stats.total - stats.active
        return stats

    def category_stats(self) -> list[CategoryStats]:
        categories: dict[str, CategoryStats] = {}
        for stream in self.store.list_streams():
            name = stream.category or "Uncategorized"
            cat = categories.setdefault(name, CategoryStats(name=name))
            cat.total += 1
            if self.supervisor.state(stream.id) == RunState.RUNNING:
                cat.active += 1
        return sorted(categories.values(), key=lambda c: c.total, reverse=True)
