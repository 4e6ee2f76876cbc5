"""
Process supervisor.

Owns at most one transcoder process per stream id. All control operations
for a stream are serialized by a per-stream asyncio lock. A watcher task per
process relaunches it with exponential backoff when it exits on its own.
"""

import asyncio
import json
import logging
import os
import time
from collections import deque
from pathlib import Path
from typing import Awaitable, Callable, Optional

import psutil

from .command import build_command
from .errors import (
    AlreadyRunning,
    NotRunning,
    ProcessLaunchFailure,
    ProcessTerminationTimeout,
    StreamControlError,
)
from .logsink import LogSink
from .models import RunState, StreamDefinition
from .progress import classify, is_stats_line
from .store import JobStore

logger = logging.getLogger("streamctl.supervisor")

CommandBuilder = Callable[[StreamDefinition, dict], list[str]]

KILL_GRACE  = 5.0   # seconds to wait for exit after SIGKILL
READER_JOIN = 2.0   # seconds to wait for output readers to drain


# ---------------------------------------------------------------------------
# Process handle
# ---------------------------------------------------------------------------

class ProcessHandle:
    """
    One live transcoder process.

    Either ``proc`` (launched by this supervisor, output piped to us) or
    ``ps`` (reattached after a supervisor restart, no output) is set.
    """

    def __init__(
        self,
        stream_id: str,
        pid: int,
        proc: Optional[asyncio.subprocess.Process] = None,
        ps: Optional[psutil.Process] = None,
        started_at: Optional[float] = None,
        restart_count: int = 0,
        failures: int = 0,
        progress_buffer: int = 200,
    ) -> None:
        self.stream_id     = stream_id
        self.pid           = pid
        self.proc          = proc
        self.ps            = ps
        self.started_at    = started_at if started_at is not None else time.time()
        self.restart_count = restart_count
        self.failures      = failures
        self.create_time:  Optional[float] = None
        self.cancel        = asyncio.Event()
        self.progress:     deque[str] = deque(maxlen=progress_buffer)
        self.readers:      list[asyncio.Task] = []
        self.watcher:      Optional[asyncio.Task] = None

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode if self.proc is not None else None

    def is_alive(self) -> bool:
        if self.proc is not None:
            return self.proc.returncode is None
        if self.ps is not None:
            try:
                return self.ps.is_running() and self.ps.status() != psutil.STATUS_ZOMBIE
            except psutil.Error:
                return False
        return False

    def terminate(self) -> None:
        try:
            if self.proc is not None:
                self.proc.terminate()
            elif self.ps is not None:
                self.ps.terminate()
        except (ProcessLookupError, psutil.NoSuchProcess):
            pass

    def kill(self) -> None:
        try:
            if self.proc is not None:
                self.proc.kill()
            elif self.ps is not None:
                self.ps.kill()
        except (ProcessLookupError, psutil.NoSuchProcess):
            pass

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for exit. Returns False if still alive after ``timeout`` seconds."""
        if self.proc is not None:
            try:
                await asyncio.wait_for(self.proc.wait(), timeout)
                return True
            except asyncio.TimeoutError:
                return False
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.is_alive():
            if deadline is not None and time.monotonic() >= deadline:
                return False
            await asyncio.sleep(0.2)
        return True


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------

class Supervisor:
    def __init__(
        self,
        store: JobStore,
        logs: LogSink,
        pid_file: Path,
        config: dict,
        build_command: CommandBuilder = build_command,
    ) -> None:
        self.store          = store
        self.logs           = logs
        self.pid_file       = pid_file
        self.config         = config
        self._build_command = build_command
        self._handles:      dict[str, ProcessHandle] = {}
        self._states:       dict[str, RunState] = {}
        self._locks:        dict[str, asyncio.Lock] = {}
        self._crashes:      dict[str, deque[float]] = {}

    # -- queries ------------------------------------------------------------

    def _lock(self, stream_id: str) -> asyncio.Lock:
        lock = self._locks.get(stream_id)
        if lock is None:
            lock = self._locks[stream_id] = asyncio.Lock()
        return lock

    def handle(self, stream_id: str) -> Optional[ProcessHandle]:
        return self._handles.get(stream_id)

    def state(self, stream_id: str) -> RunState:
        return self._states.get(stream_id, RunState.STOPPED)

    def is_running(self, stream_id: str) -> bool:
        handle = self._handles.get(stream_id)
        return handle is not None and handle.is_alive()

    def pids(self) -> set[int]:
        return {h.pid for h in self._handles.values()}

    # -- control ------------------------------------------------------------

    async def start(self, stream_id: str) -> RunState:
        async with self._lock(stream_id):
            return await self._start_locked(stream_id)

    async def stop(self, stream_id: str) -> RunState:
        async with self._lock(stream_id):
            self.store.get(stream_id)
            await self._stop_locked(stream_id)
            self.store.set_active(stream_id, False)
            return self.state(stream_id)

    async def restart(self, stream_id: str) -> RunState:
        async with self._lock(stream_id):
            self.store.get(stream_id)
            if stream_id in self._handles:
                timeout = float(self.config["stop_timeout"])
                if not await self._stop_locked(stream_id, "Stream stopped for restart"):
                    raise ProcessTerminationTimeout(stream_id, timeout + KILL_GRACE)
            return await self._start_locked(stream_id)

    async def control(self, action: str, stream_id: str, timeout: float) -> bool:
        """
        Run start/stop/restart, waiting at most ``timeout`` seconds.

        Returns True when the operation finished, False when it is still in
        flight; it then completes in the background and callers poll state.
        Errors raised before the timeout propagate.
        """
        ops = {"start": self.start, "stop": self.stop, "restart": self.restart}
        return await self.bounded(ops[action](stream_id), action, stream_id, timeout)

    async def bounded(self, coro: Awaitable, action: str, stream_id: str, timeout: float) -> bool:
        """Await ``coro`` for at most ``timeout`` seconds, then leave it running in the background."""
        task = asyncio.ensure_future(coro)
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(
                lambda t: self._log_background_result(t, action, stream_id))
            return False
        return True

    @staticmethod
    def _log_background_result(task: asyncio.Task, action: str, stream_id: str) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background {action} of {stream_id} failed: {exc}")
        else:
            logger.info(f"Background {action} of {stream_id} finished")

    async def discard(self, stream_id: str, cleanup: Callable[[], None]) -> None:
        """Stop the stream if it is supervised, then run ``cleanup`` under the same lock."""
        async with self._lock(stream_id):
            self.store.get(stream_id)
            if stream_id in self._handles:
                if not await self._stop_locked(stream_id, "Stream stopped for deletion"):
                    raise ProcessTerminationTimeout(stream_id, float(self.config["stop_timeout"]) + KILL_GRACE)
            cleanup()
            self._states.pop(stream_id, None)
            self._crashes.pop(stream_id, None)
        self._locks.pop(stream_id, None)

    # -- internals ----------------------------------------------------------

    async def _start_locked(self, stream_id: str) -> RunState:
        stream = self.store.get(stream_id)
        current = self._handles.get(stream_id)
        if current is not None:
            if current.is_alive():
                raise AlreadyRunning(stream_id)
            # crashed and waiting out its backoff
            current.cancel.set()
            self._handles.pop(stream_id, None)
        self._crashes.pop(stream_id, None)

        await self._launch(stream)
        self.store.set_active(stream_id, True)
        self.logs.append(stream_id, "Stream started", "success")
        return self.state(stream_id)

    async def _launch(self, stream: StreamDefinition, restart_count: int = 0,
                      failures: int = 0) -> ProcessHandle:
        self._states[stream.id] = RunState.STARTING
        cmd = self._build_command(stream, self.config)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            self._states[stream.id] = RunState.FAILED
            self.logs.append(stream.id, f"Failed to start stream: {e}", "error")
            logger.error(f"Failed to launch transcoder for {stream.id}: {e}")
            raise ProcessLaunchFailure(stream.id, str(e)) from e

        handle = ProcessHandle(
            stream.id, proc.pid, proc=proc,
            restart_count=restart_count, failures=failures,
            progress_buffer=int(self.config["progress_buffer"]),
        )
        try:
            handle.create_time = psutil.Process(proc.pid).create_time()
        except psutil.Error:
            # already gone; the watcher reports the exit
            pass

        self._handles[stream.id] = handle
        self._states[stream.id] = RunState.RUNNING
        handle.readers = [
            asyncio.create_task(self._read_progress(handle, proc.stdout)),
            asyncio.create_task(self._read_output(handle, proc.stderr)),
        ]
        handle.watcher = asyncio.create_task(self._watch(handle))
        self._write_pid_file()
        logger.info(f"Transcoder for {stream.name} started (pid={proc.pid})")
        return handle

    async def _stop_locked(self, stream_id: str, message: str = "Stream stopped") -> bool:
        """Terminate the supervised process. Returns False if it could not be confirmed dead."""
        handle = self._handles.get(stream_id)
        if handle is None:
            raise NotRunning(stream_id)

        handle.cancel.set()
        if handle.is_alive():
            self._states[stream_id] = RunState.STOPPING
            handle.terminate()
            timeout = float(self.config["stop_timeout"])
            if not await handle.wait(timeout):
                err = ProcessTerminationTimeout(stream_id, timeout)
                logger.warning(f"{err}, sending SIGKILL")
                self.logs.append(stream_id, f"{err}, killing it", "warning")
                handle.kill()
                if not await handle.wait(KILL_GRACE):
                    # the handle and its PID record stay while the process lives
                    logger.error(f"Transcoder for {stream_id} (pid={handle.pid}) survived SIGKILL")
                    self.logs.append(stream_id, f"Transcoder (pid={handle.pid}) survived SIGKILL", "error")
                    self._write_pid_file()
                    return False

        await self._release(handle)
        self._states[stream_id] = RunState.STOPPED
        self._crashes.pop(stream_id, None)
        self._write_pid_file()
        self.logs.append(stream_id, message, "info")
        logger.info(f"Transcoder for {stream_id} stopped (pid={handle.pid})")
        return True

    async def _release(self, handle: ProcessHandle) -> None:
        if self._handles.get(handle.stream_id) is handle:
            del self._handles[handle.stream_id]
        watcher = handle.watcher
        if watcher is not None and watcher is not asyncio.current_task() and not watcher.done():
            watcher.cancel()
        pending = [t for t in handle.readers if not t.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=READER_JOIN)
        for t in still_running:
            t.cancel()

    async def _read_progress(self, handle: ProcessHandle, reader: asyncio.StreamReader) -> None:
        try:
            async for raw in reader:
                line = raw.decode(errors="replace").strip()
                if line:
                    handle.progress.append(line)
        except ValueError as e:
            logger.debug(f"Progress reader for {handle.stream_id} stopped: {e}")

    async def _read_output(self, handle: ProcessHandle, reader: asyncio.StreamReader) -> None:
        try:
            async for raw in reader:
                line = raw.decode(errors="replace").rstrip()
                if not line:
                    continue
                if is_stats_line(line):
                    handle.progress.append(line)
                else:
                    self.logs.append(handle.stream_id, line, classify(line))
        except ValueError as e:
            logger.debug(f"Output reader for {handle.stream_id} stopped: {e}")

    async def _watch(self, handle: ProcessHandle) -> None:
        await handle.wait()
        if handle.cancel.is_set():
            return
        rc = handle.returncode
        logger.warning(f"Transcoder for {handle.stream_id} exited (pid={handle.pid}, rc={rc})")
        self.logs.append(handle.stream_id, f"Transcoder exited unexpectedly (rc={rc})", "error")
        await self._recover(handle)

    async def _recover(self, handle: ProcessHandle) -> None:
        stream_id = handle.stream_id
        cfg = self.config

        now = time.monotonic()
        window = float(cfg["restart_window"])
        history = self._crashes.setdefault(stream_id, deque())
        history.append(now)
        while history and now - history[0] > window:
            history.popleft()

        if len(history) > int(cfg["restart_max"]):
            async with self._lock(stream_id):
                if handle.cancel.is_set() or self._handles.get(stream_id) is not handle:
                    return
                del self._handles[stream_id]
                self._states[stream_id] = RunState.FAILED
                self._write_pid_file()
            msg = f"Giving up after {len(history)} crashes within {window:g}s"
            logger.error(f"{stream_id}: {msg}")
            self.logs.append(stream_id, msg, "error")
            return

        failures = handle.failures
        if time.time() - handle.started_at >= float(cfg["stable_after"]):
            failures = 0
        delay = min(float(cfg["restart_backoff"]) * (2 ** failures),
                    float(cfg["restart_backoff_max"]))
        attempt = handle.restart_count + 1

        self._states[stream_id] = RunState.STARTING
        self.logs.append(stream_id, f"Restarting in {delay:.1f}s (attempt {attempt})", "warning")
        logger.info(f"Restarting {stream_id} in {delay:.1f}s (attempt {attempt})")

        try:
            await asyncio.wait_for(handle.cancel.wait(), timeout=delay)
            return
        except asyncio.TimeoutError:
            pass

        async with self._lock(stream_id):
            if handle.cancel.is_set() or self._handles.get(stream_id) is not handle:
                return
            del self._handles[stream_id]
            stream = self.store.find(stream_id)
            if stream is None:
                self._states.pop(stream_id, None)
                return
            try:
                await self._launch(stream, restart_count=attempt, failures=failures + 1)
            except ProcessLaunchFailure:
                # _launch already logged it and set FAILED
                self._write_pid_file()
                return
            self.logs.append(stream_id, f"Stream restarted (attempt {attempt})", "info")

    # -- persistence and lifecycle -----------------------------------------

    def _write_pid_file(self) -> None:
        records = {
            sid: {"pid": h.pid, "started_at": h.started_at, "create_time": h.create_time}
            for sid, h in self._handles.items()
            if h.is_alive()
        }
        tmp = self.pid_file.with_suffix(".tmp")
        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(records, f, indent=2)
            tmp.replace(self.pid_file)
        except OSError as e:
            logger.error(f"Failed to write PID file: {e}")
        finally:
            tmp.unlink(missing_ok=True)

    def _read_pid_file(self) -> dict:
        if not self.pid_file.exists():
            return {}
        try:
            with open(self.pid_file) as f:
                records = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable PID file: {e}")
            return {}
        return records if isinstance(records, dict) else {}

    @staticmethod
    def _find_recorded(record: dict) -> Optional[psutil.Process]:
        """The recorded process if it is still alive and is the same process."""
        try:
            pid = int(record["pid"])
            if pid == os.getpid():
                return None
            ps = psutil.Process(pid)
            if ps.status() == psutil.STATUS_ZOMBIE:
                return None
            recorded = record.get("create_time")
            if recorded is not None and abs(ps.create_time() - float(recorded)) > 1.0:
                return None
            return ps
        except (KeyError, TypeError, ValueError, psutil.Error):
            return None

    async def reconcile(self) -> None:
        """Reattach processes recorded by a previous run, then resume active streams."""
        for stream_id, record in self._read_pid_file().items():
            ps = self._find_recorded(record)
            if ps is None:
                continue
            stream = self.store.find(stream_id)
            if stream is None:
                logger.warning(f"Terminating orphan transcoder pid={ps.pid} of deleted stream {stream_id}")
                try:
                    ps.terminate()
                except psutil.Error:
                    pass
                continue

            handle = ProcessHandle(
                stream_id, ps.pid, ps=ps,
                started_at=float(record.get("started_at") or time.time()),
                progress_buffer=int(self.config["progress_buffer"]),
            )
            handle.create_time = record.get("create_time")
            handle.watcher = asyncio.create_task(self._watch(handle))
            self._handles[stream_id] = handle
            self._states[stream_id] = RunState.RUNNING
            self.logs.append(stream_id, f"Reattached to running transcoder (pid={ps.pid})", "info")
            logger.info(f"Reattached {stream.name} (pid={ps.pid})")

        if self.config.get("autostart"):
            for stream in self.store.list_streams():
                if stream.active and stream.id not in self._handles:
                    try:
                        await self.start(stream.id)
                    except StreamControlError as e:
                        logger.warning(f"Autostart of {stream.name} failed: {e}")

        self._write_pid_file()

    async def shutdown(self) -> None:
        """Stop every supervised process. ``active`` flags are left for the next boot."""
        async def _stop(stream_id: str) -> None:
            async with self._lock(stream_id):
                if stream_id in self._handles:
                    await self._stop_locked(stream_id, "Stream stopped (supervisor shutdown)")

        ids = list(self._handles)
        if ids:
            logger.info(f"Stopping {len(ids)} transcoder(s)")
            await asyncio.gather(*(_stop(sid) for sid in ids), return_exceptions=True)
