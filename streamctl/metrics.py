"""
Process and host metrics.

``MetricsProvider`` hides the platform: ``ProcfsProvider`` reads /proc on
Linux, ``PsutilProvider`` covers everything else. Every reading degrades to
a placeholder instead of raising, so the dashboard stays usable where the
OS only partly supports introspection.
"""

import logging
import os
import shutil
import sys
import time
from pathlib import Path
from typing import Optional

import psutil

from .formatting import fmt_duration, fmt_mib, fmt_uptime
from .models import (
    UNAVAILABLE,
    ProcessInfo,
    ProcessStats,
    ResourceUsage,
    StreamDefinition,
    SystemStats,
)
from .progress import parse_progress

logger = logging.getLogger("streamctl.metrics")

MB = 1024 * 1024
GB = 1024 * 1024 * 1024


def _percent(used: float, total: float) -> int:
    return round(used / total * 100) if total > 0 else 0


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class MetricsProvider:
    name = "none"

    def __init__(self, disk_path: str = "/", ttl: float = 1.5) -> None:
        self.disk_path = disk_path
        self.ttl = ttl
        self._cache: Optional[SystemStats] = None
        self._cache_time = 0.0

    def process_stats(self, pid: int) -> Optional[ProcessStats]:
        return None

    def retain(self, pids: set[int]) -> None:
        """Forget per-process state for every PID not in ``pids``."""

    def system_stats(self) -> SystemStats:
        now = time.monotonic()
        if self._cache is not None and now - self._cache_time < self.ttl:
            return self._cache
        stats = SystemStats(provider=self.name)
        for section in (self._cpu, self._memory, self._disk, self._uptime):
            try:
                section(stats)
            except Exception as e:
                logger.debug(f"{self.name}: {section.__name__} unavailable: {e}")
        self._cache = stats
        self._cache_time = now
        return stats

    def _cpu(self, stats: SystemStats) -> None:
        pass

    def _memory(self, stats: SystemStats) -> None:
        pass

    def _disk(self, stats: SystemStats) -> None:
        usage = shutil.disk_usage(self.disk_path)
        stats.disk = ResourceUsage(
            total=round(usage.total / GB),
            used=round(usage.used / GB),
            free=round(usage.free / GB),
            percent=_percent(usage.used, usage.total),
        )

    def _uptime(self, stats: SystemStats) -> None:
        pass


class ProcfsProvider(MetricsProvider):
    """Linux /proc readings."""

    name = "procfs"

    def __init__(self, disk_path: str = "/", ttl: float = 1.5, proc_root: str = "/proc") -> None:
        super().__init__(disk_path, ttl)
        self.proc_root = Path(proc_root)
        self._prev_cpu: list[int] = []
        self._prev_proc: dict[int, tuple[float, float]] = {}
        self._ticks = os.sysconf("SC_CLK_TCK") if hasattr(os, "sysconf") else 100
        self._page_size = os.sysconf("SC_PAGE_SIZE") if hasattr(os, "sysconf") else 4096

    def process_stats(self, pid: int) -> Optional[ProcessStats]:
        try:
            stat = (self.proc_root / str(pid) / "stat").read_text()
            statm = (self.proc_root / str(pid) / "statm").read_text()
        except OSError:
            self._prev_proc.pop(pid, None)
            return None
        try:
            cpu_seconds = parse_pid_cpu_ticks(stat) / self._ticks
            rss = int(statm.split()[1]) * self._page_size
        except (IndexError, ValueError):
            self._prev_proc.pop(pid, None)
            return None

        now = time.monotonic()
        prev = self._prev_proc.get(pid)
        self._prev_proc[pid] = (now, cpu_seconds)
        cpu_percent = None
        if prev and now > prev[0]:
            cpu_percent = round(100.0 * (cpu_seconds - prev[1]) / (now - prev[0]), 1)
        return ProcessStats(cpu_percent=cpu_percent, rss_bytes=rss)

    def retain(self, pids: set[int]) -> None:
        for pid in set(self._prev_proc) - pids:
            del self._prev_proc[pid]

    def _cpu(self, stats: SystemStats) -> None:
        with open(self.proc_root / "stat") as f:
            line = f.readline()
        total, idle = parse_cpu_times(line)
        if self._prev_cpu:
            dtotal = total - self._prev_cpu[0]
            didle  = idle  - self._prev_cpu[1]
            util = 100.0 * (1.0 - didle / dtotal) if dtotal > 0 else 0.0
            stats.cpu = f"{util:.1f} %"
        self._prev_cpu = [total, idle]

    def _memory(self, stats: SystemStats) -> None:
        with open(self.proc_root / "meminfo") as f:
            mem = parse_meminfo(f.read())
        total_kb = mem.get("MemTotal", 0)
        avail_kb = mem.get("MemAvailable", mem.get("MemFree", 0))
        stats.memory = ResourceUsage(
            total=total_kb // 1024,
            used=(total_kb - avail_kb) // 1024,
            free=avail_kb // 1024,
            percent=_percent(total_kb - avail_kb, total_kb),
        )

    def _uptime(self, stats: SystemStats) -> None:
        with open(self.proc_root / "uptime") as f:
            stats.uptime = fmt_uptime(float(f.read().split()[0]))


class PsutilProvider(MetricsProvider):
    """psutil readings for macOS, Windows and anything without /proc."""

    name = "psutil"

    def __init__(self, disk_path: str = "/", ttl: float = 1.5) -> None:
        super().__init__(disk_path, ttl)
        self._procs: dict[int, psutil.Process] = {}

    def process_stats(self, pid: int) -> Optional[ProcessStats]:
        try:
            # keep the Process around: cpu_percent() measures since the previous call
            proc = self._procs.get(pid)
            if proc is None:
                proc = self._procs[pid] = psutil.Process(pid)
                proc.cpu_percent(None)
                cpu_percent = None
            else:
                cpu_percent = round(proc.cpu_percent(None), 1)
            return ProcessStats(cpu_percent=cpu_percent, rss_bytes=proc.memory_info().rss)
        except psutil.Error:
            self._procs.pop(pid, None)
            return None

    def retain(self, pids: set[int]) -> None:
        for pid in set(self._procs) - pids:
            del self._procs[pid]

    def _cpu(self, stats: SystemStats) -> None:
        stats.cpu = f"{psutil.cpu_percent(interval=None):.1f} %"

    def _memory(self, stats: SystemStats) -> None:
        vm = psutil.virtual_memory()
        stats.memory = ResourceUsage(
            total=round(vm.total / MB),
            used=round((vm.total - vm.available) / MB),
            free=round(vm.available / MB),
            percent=round(vm.percent),
        )

    def _uptime(self, stats: SystemStats) -> None:
        stats.uptime = fmt_uptime(time.time() - psutil.boot_time())


def get_provider(platform: str = sys.platform, **kwargs) -> MetricsProvider:
    if platform.startswith("linux") and Path("/proc/stat").exists():
        return ProcfsProvider(**kwargs)
    return PsutilProvider(**kwargs)


# ---------------------------------------------------------------------------
# /proc parsing
# ---------------------------------------------------------------------------

def parse_cpu_times(line: str) -> tuple[int, int]:
    """(total, idle) jiffies from the aggregate ``cpu`` line of /proc/stat."""
    vals = list(map(int, line.split()[1:]))
    total = sum(vals)
    idle  = vals[3] + (vals[4] if len(vals) > 4 else 0)
    return total, idle


def parse_meminfo(text: str) -> dict[str, int]:
    mem = {}
    for ml in text.splitlines():
        p = ml.split()
        if len(p) >= 2:
            mem[p[0].rstrip(":")] = int(p[1])
    return mem


def parse_pid_cpu_ticks(stat: str) -> int:
    """utime + stime from /proc/<pid>/stat. The comm field may contain spaces."""
    fields = stat[stat.rindex(")") + 2:].split()
    # fields[0] is field 3 (state); utime and stime are fields 14 and 15
    return int(fields[11]) + int(fields[12])


# ---------------------------------------------------------------------------
# Sampler
# ---------------------------------------------------------------------------

class MetricsSampler:
    def __init__(self, supervisor, provider: Optional[MetricsProvider] = None,
                 progress_lines: int = 20) -> None:
        self.supervisor = supervisor
        self.provider = provider or get_provider()
        self.progress_lines = progress_lines

    def sample(self, stream: StreamDefinition) -> ProcessInfo:
        self.provider.retain(self.supervisor.pids())
        handle = self.supervisor.handle(stream.id)
        info = ProcessInfo(
            id=stream.id,
            name=stream.name,
            active=stream.active,
            state=self.supervisor.state(stream.id),
            restart_count=handle.restart_count if handle else 0,
        )
        if handle is None or not handle.is_alive():
            return info

        info.running = True
        info.pid = handle.pid
        info.runtime_seconds = round(time.time() - handle.started_at, 1)
        info.runtime = fmt_duration(info.runtime_seconds)

        try:
            stats = self.provider.process_stats(handle.pid)
        except Exception as e:
            logger.debug(f"Process stats for pid {handle.pid} unavailable: {e}")
            stats = None
        if stats is not None:
            if stats.cpu_percent is not None:
                info.cpu = f"{stats.cpu_percent:.1f}%"
            if stats.rss_bytes is not None:
                info.memory = fmt_mib(stats.rss_bytes // MB)

        progress = parse_progress(list(handle.progress)[-self.progress_lines:])
        if progress["bitrate"] is not None:
            info.bitrate = f"{progress['bitrate']:g} kbits/s"
        if progress["fps"] is not None:
            info.fps = f"{progress['fps']:g} fps"
        return info

    def system(self) -> SystemStats:
        try:
            return self.provider.system_stats()
        except Exception as e:
            logger.warning(f"System stats unavailable: {e}")
            return SystemStats(cpu=UNAVAILABLE, uptime=UNAVAILABLE, provider=self.provider.name)
