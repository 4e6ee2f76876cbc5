"""
Pydantic models for stream definitions, logs, metrics and API payloads.
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

UNAVAILABLE = "unavailable"

Severity = Literal["info", "warning", "error", "success"]


class RunState(str, Enum):
    STOPPED  = "stopped"
    STARTING = "starting"
    RUNNING  = "running"
    STOPPING = "stopping"
    FAILED   = "failed"


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------

class StreamDefinition(BaseModel):
    id:         str
    name:       str
    input_url:  str
    output_url: str
    key:        str
    bitrate:    str
    resolution: str
    category:   str
    active:     bool = False
    created_at: float
    updated_at: float

    @property
    def publish_url(self) -> str:
        return f"{self.output_url.rstrip('/')}/{self.key}"


class StreamCreate(BaseModel):
    name:       Optional[str] = None
    input_url:  Optional[str] = None
    output_url: Optional[str] = None
    key:        Optional[str] = None
    bitrate:    Optional[str] = None
    resolution: Optional[str] = None
    category:   Optional[str] = None


class StreamUpdate(StreamCreate):
    pass


class StreamView(StreamDefinition):
    """A definition together with the supervisor's view of it."""
    state: RunState = RunState.STOPPED


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------

class LogRecord(BaseModel):
    timestamp: float
    severity:  Severity = "info"
    message:   str


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class ProcessStats(BaseModel):
    cpu_percent: Optional[float] = None
    rss_bytes:   Optional[int] = None


class ProcessInfo(BaseModel):
    id:              str
    name:            str
    active:          bool
    state:           RunState
    running:         bool = False
    pid:             Optional[int] = None
    cpu:             str = UNAVAILABLE
    memory:          str = UNAVAILABLE
    runtime:         str = UNAVAILABLE
    runtime_seconds: Optional[float] = None
    bitrate:         str = UNAVAILABLE
    fps:             str = UNAVAILABLE
    restart_count:   int = 0


class ResourceUsage(BaseModel):
    total:   int = 0
    used:    int = 0
    free:    int = 0
    percent: int = 0


class SystemStats(BaseModel):
    cpu:      str = UNAVAILABLE
    memory:   ResourceUsage = Field(default_factory=ResourceUsage)
    disk:     ResourceUsage = Field(default_factory=ResourceUsage)
    uptime:   str = UNAVAILABLE
    provider: str = ""


class StreamHealth(BaseModel):
    healthy: int = 0
    warning: int = 0
    error:   int = 0
    unknown: int = 0


class StreamStats(BaseModel):
    total:    int = 0
    active:   int = 0
    inactive: int = 0
    health:   StreamHealth = Field(default_factory=StreamHealth)


class CategoryStats(BaseModel):
    name:   str
    total:  int = 0
    active: int = 0


# ---------------------------------------------------------------------------
# Control
# ---------------------------------------------------------------------------

class ControlRequest(BaseModel):
    action: Literal["start", "stop", "restart"]
