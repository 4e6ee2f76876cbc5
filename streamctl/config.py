"""
Filesystem layout, persisted tunables and logging setup.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("streamctl.config")

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

DATA_DIR     = Path(os.environ.get("STREAMCTL_DATA_DIR", "data"))
FRONTEND_DIR = Path(os.environ.get("FRONTEND_DIR", Path(__file__).parent / "frontend"))


class Paths:
    """Where one deployment keeps its state."""

    def __init__(self, data_dir: Optional[Path] = None) -> None:
        self.data_dir     = Path(data_dir) if data_dir is not None else DATA_DIR
        self.config_file  = self.data_dir / "settings.json"
        self.streams_file = self.data_dir / "streams.json"
        self.pid_file     = self.data_dir / "pids.json"
        self.logs_dir     = self.data_dir / "logs"
        self.scripts_dir  = self.data_dir / "scripts"

    def ensure(self) -> None:
        for d in (self.data_dir, self.logs_dir, self.scripts_dir):
            d.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def setup_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# ---------------------------------------------------------------------------
# Default config
# ---------------------------------------------------------------------------

DEFAULT_CONFIG = {
    "ffmpeg_bin":          os.environ.get("FFMPEG_BIN", "ffmpeg"),
    "video_codec":         "libx264",
    "preset":              "veryfast",
    "tune":                "zerolatency",
    "gop":                 48,
    "bufsize":             "1600k",
    "audio_codec":         "aac",
    "audio_bitrate":       "96k",
    "audio_rate":          48000,
    "output_format":       "flv",
    "default_bitrate":     "1000k",
    "default_resolution":  "1280x720",
    "stop_timeout":        10.0,
    "control_timeout":     5.0,
    "restart_backoff":     1.0,
    "restart_backoff_max": 60.0,
    "restart_max":         5,
    "restart_window":      300.0,
    "stable_after":        30.0,
    "autostart":           True,
    "progress_lines":      20,
    "progress_buffer":     200,
    "metrics_ttl":         1.5,
    "push_interval":       2.0,
}


class ConfigModel(BaseModel):
    ffmpeg_bin:          str
    video_codec:         str
    preset:              str
    tune:                str
    gop:                 int = Field(gt=0)
    bufsize:             str
    audio_codec:         str
    audio_bitrate:       str
    audio_rate:          int = Field(gt=0)
    output_format:       str
    default_bitrate:     str
    default_resolution:  str
    stop_timeout:        float = Field(gt=0)
    control_timeout:     float = Field(gt=0)
    restart_backoff:     float = Field(ge=0)
    restart_backoff_max: float = Field(ge=0)
    restart_max:         int = Field(ge=0)
    restart_window:      float = Field(gt=0)
    stable_after:        float = Field(ge=0)
    autostart:           bool
    progress_lines:      int = Field(gt=0)
    progress_buffer:     int = Field(gt=0)
    metrics_ttl:         float = Field(ge=0)
    push_interval:       float = Field(gt=0)


# ---------------------------------------------------------------------------
# Config persistence
# ---------------------------------------------------------------------------

def load_config(path: Path) -> dict:
    if path.exists():
        try:
            with open(path) as f:
                saved = json.load(f)
            return {**DEFAULT_CONFIG, **saved}
        except Exception as e:
            logger.warning(f"Failed to load config: {e}, using defaults")
    return dict(DEFAULT_CONFIG)


def save_config(path: Path, cfg: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(cfg, f, indent=2)
