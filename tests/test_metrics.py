import os
import time
from collections import deque

import pytest

from streamctl.metrics import (
    MB,
    MetricsProvider,
    MetricsSampler,
    ProcfsProvider,
    PsutilProvider,
    get_provider,
    parse_cpu_times,
    parse_meminfo,
    parse_pid_cpu_ticks,
)
from streamctl.models import ProcessStats, RunState, StreamDefinition

MEMINFO = """\
MemTotal:        8048576 kB
MemFree:          512000 kB
MemAvailable:    4024288 kB
Buffers:          100000 kB
"""

PID_STAT = "4242 (ffmpeg worker) S 1 4242 4242 0 -1 4194304 1000 0 0 0 {utime} {stime} 0 0 20 0 3 0 100 0 0\n"


def write_proc(root, cpu_line, utime=100, stime=50):
    (root / "stat").write_text(cpu_line + "\ncpu0 1 2 3 4\n")
    (root / "meminfo").write_text(MEMINFO)
    (root / "uptime").write_text("93784.12 180000.00\n")
    pid_dir = root / "4242"
    pid_dir.mkdir(exist_ok=True)
    (pid_dir / "stat").write_text(PID_STAT.format(utime=utime, stime=stime))
    (pid_dir / "statm").write_text("50000 2560 300 10 0 4000 0\n")


def make_stream(**kw):
    data = dict(
        id="s1", name="Channel 1", input_url="udp://a", output_url="rtmp://b", key="k",
        bitrate="1000k", resolution="1280x720", category="News", active=True,
        created_at=0.0, updated_at=0.0,
    )
    data.update(kw)
    return StreamDefinition(**data)


class FakeHandle:
    def __init__(self, alive=True, progress=()):
        self.pid = 4242
        self.started_at = time.time() - 75
        self.restart_count = 2
        self.progress = deque(progress)
        self._alive = alive

    def is_alive(self):
        return self._alive


class FakeSupervisor:
    def __init__(self, handle=None, state=RunState.RUNNING):
        self._handle = handle
        self._state = state

    def handle(self, stream_id):
        return self._handle

    def state(self, stream_id):
        return self._state

    def pids(self):
        return {self._handle.pid} if self._handle else set()


class FixedProvider(MetricsProvider):
    name = "fixed"

    def process_stats(self, pid):
        return ProcessStats(cpu_percent=12.5, rss_bytes=100 * MB)


class BrokenProvider(MetricsProvider):
    name = "broken"

    def process_stats(self, pid):
        raise PermissionError("denied")

    def system_stats(self):
        raise OSError("no /proc here")


# ---------------------------------------------------------------------------
# /proc parsing
# ---------------------------------------------------------------------------

def test_parse_cpu_times():
    assert parse_cpu_times("cpu  100 0 50 800 50 0 0 0 0 0") == (1000, 850)


def test_parse_meminfo():
    mem = parse_meminfo(MEMINFO)
    assert mem["MemTotal"] == 8048576
    assert mem["MemAvailable"] == 4024288


def test_parse_pid_cpu_ticks_with_spaces_in_comm():
    assert parse_pid_cpu_ticks(PID_STAT.format(utime=300, stime=45)) == 345


def test_procfs_provider(tmp_path):
    write_proc(tmp_path, "cpu  100 0 50 800 50 0 0 0 0 0")
    provider = ProcfsProvider(proc_root=str(tmp_path), ttl=0)

    first = provider.system_stats()
    assert first.provider == "procfs"
    assert first.cpu == "unavailable"
    assert first.memory.total == 8048576 // 1024
    assert first.memory.free == 4024288 // 1024
    assert first.memory.percent == 50
    assert first.uptime == "1 day, 2 hours, 3 minutes"
    assert first.disk.total > 0

    # 100 more jiffies, 25 of them idle
    write_proc(tmp_path, "cpu  150 0 75 825 50 0 0 0 0 0")
    assert provider.system_stats().cpu == "75.0 %"


def test_procfs_process_stats(tmp_path):
    write_proc(tmp_path, "cpu  1 1 1 1")
    provider = ProcfsProvider(proc_root=str(tmp_path))

    first = provider.process_stats(4242)
    assert first.cpu_percent is None
    assert first.rss_bytes == 2560 * provider._page_size

    write_proc(tmp_path, "cpu  1 1 1 1", utime=100 + provider._ticks)
    second = provider.process_stats(4242)
    assert second.cpu_percent is not None and second.cpu_percent > 0

    assert provider.process_stats(999999) is None


def test_procfs_forgets_dead_pids(tmp_path):
    write_proc(tmp_path, "cpu  1 1 1 1")
    provider = ProcfsProvider(proc_root=str(tmp_path))
    provider.process_stats(4242)
    assert 4242 in provider._prev_proc

    (tmp_path / "4242" / "stat").unlink()
    assert provider.process_stats(4242) is None
    assert provider._prev_proc == {}

    provider._prev_proc[777] = (0.0, 0.0)
    provider.retain({4242})
    assert provider._prev_proc == {}


def test_sampler_prunes_pids_no_longer_supervised(tmp_path):
    write_proc(tmp_path, "cpu  1 1 1 1")
    provider = ProcfsProvider(proc_root=str(tmp_path))
    provider._prev_proc[1111] = (0.0, 0.0)

    MetricsSampler(FakeSupervisor(FakeHandle()), provider).sample(make_stream())
    assert set(provider._prev_proc) == {4242}


def test_psutil_provider_retain():
    provider = PsutilProvider()
    provider.process_stats(os.getpid())
    provider.retain(set())
    assert provider._procs == {}


def test_system_stats_degrade_per_section(tmp_path):
    (tmp_path / "stat").write_text("cpu  1 1 1 1\n")
    provider = ProcfsProvider(proc_root=str(tmp_path), ttl=0)
    stats = provider.system_stats()
    assert stats.memory.total == 0
    assert stats.uptime == "unavailable"
    assert stats.disk.total > 0


def test_get_provider():
    assert isinstance(get_provider("darwin"), PsutilProvider)
    assert isinstance(get_provider("win32"), PsutilProvider)
    if os.path.exists("/proc/stat"):
        assert isinstance(get_provider("linux"), ProcfsProvider)


def test_psutil_provider_reads_own_process():
    provider = PsutilProvider()
    first = provider.process_stats(os.getpid())
    assert first.rss_bytes > 0
    assert first.cpu_percent is None
    assert provider.process_stats(os.getpid()).cpu_percent is not None


# ---------------------------------------------------------------------------
# Sampler
# ---------------------------------------------------------------------------

def test_sample_running_stream():
    handle = FakeHandle(progress=["frame=10", "fps=25.00", "bitrate=1500.2kbits/s", "progress=continue"])
    sampler = MetricsSampler(FakeSupervisor(handle), FixedProvider())

    info = sampler.sample(make_stream())
    assert info.running is True
    assert info.pid == 4242
    assert info.cpu == "12.5%"
    assert info.memory == "100MiB"
    assert info.bitrate == "1500.2 kbits/s"
    assert info.fps == "25 fps"
    assert info.runtime == "1m15s"
    assert info.restart_count == 2


def test_sample_only_reads_recent_progress():
    progress = ["fps=30", "bitrate=900kbits/s"] + ["progress=continue"] * 30
    sampler = MetricsSampler(FakeSupervisor(FakeHandle(progress=progress)), FixedProvider(),
                             progress_lines=20)
    info = sampler.sample(make_stream())
    assert info.bitrate == "unavailable"
    assert info.fps == "unavailable"


def test_sample_degrades_when_provider_fails():
    handle = FakeHandle(progress=["bitrate=N/A", "fps=garbage"])
    sampler = MetricsSampler(FakeSupervisor(handle), BrokenProvider())

    info = sampler.sample(make_stream())
    assert info.running is True
    assert info.cpu == "unavailable"
    assert info.memory == "unavailable"
    assert info.bitrate == "unavailable"
    assert info.fps == "unavailable"

    system = sampler.system()
    assert system.cpu == "unavailable"
    assert system.provider == "broken"


@pytest.mark.parametrize("handle", [None, FakeHandle(alive=False)])
def test_sample_stopped_stream(handle):
    sampler = MetricsSampler(FakeSupervisor(handle, RunState.STOPPED), FixedProvider())
    info = sampler.sample(make_stream(active=False))
    assert info.running is False
    assert info.pid is None
    assert info.state == RunState.STOPPED
    assert info.cpu == "unavailable"
