import asyncio
import sys
import time

import pytest

from streamctl.config import DEFAULT_CONFIG
from streamctl.logsink import LogSink
from streamctl.models import StreamCreate
from streamctl.store import JobStore
from streamctl.supervisor import Supervisor

# Stand-ins for ffmpeg. Each writes progress to stdout the way
# ``ffmpeg -progress pipe:1`` does.

SLEEPER = """
import sys, time
sys.stderr.write("Input #0, mpegts, from 'udp://source':\\n")
sys.stderr.flush()
while True:
    print("frame=250", flush=True)
    print("fps=25.00", flush=True)
    print("bitrate=1500.2kbits/s", flush=True)
    print("progress=continue", flush=True)
    time.sleep(0.1)
"""

STUBBORN = """
import signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
sys.stderr.write("ready\\n")
sys.stderr.flush()
while True:
    time.sleep(0.1)
"""

CRASHER = """
import sys
sys.stderr.write("udp://source: Connection refused\\n")
sys.exit(1)
"""


def python_command(script):
    def build(stream, cfg):
        return [sys.executable, "-c", script]
    return build


sleeper_command = python_command(SLEEPER)


def make_config(**overrides):
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(
        stop_timeout=3.0,
        control_timeout=3.0,
        restart_backoff=0.01,
        restart_backoff_max=0.05,
        restart_max=2,
        autostart=False,
    )
    cfg.update(overrides)
    return cfg


def new_stream(store, name="Channel 1", category="News"):
    return store.create(StreamCreate(
        name=name,
        input_url="udp://source:1234",
        output_url="rtmp://live.example.com/app",
        key="secret",
        category=category,
    ))


async def wait_until(predicate, timeout=10.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def store(tmp_path):
    return JobStore(tmp_path / "streams.json")


@pytest.fixture
def logs(tmp_path):
    return LogSink(tmp_path / "logs")


@pytest.fixture
def make_supervisor(tmp_path, store, logs):
    """Build a supervisor around a python stand-in script.

    Supervisors hold asyncio objects, so call this inside the running loop.
    """
    def factory(script=SLEEPER, **overrides):
        return Supervisor(
            store, logs, tmp_path / "pids.json", make_config(**overrides),
            build_command=python_command(script),
        )
    return factory
