"""
Transcoder command line and per-stream launch scripts.
"""

import logging
import shlex
from pathlib import Path

from .models import StreamDefinition

logger = logging.getLogger("streamctl.command")


def build_command(stream: StreamDefinition, cfg: dict) -> list[str]:
    gop = str(cfg["gop"])
    cmd = [cfg["ffmpeg_bin"], "-hide_banner", "-nostats", "-progress", "pipe:1"]
    cmd += ["-re", "-i",       stream.input_url]
    cmd += ["-vcodec",         cfg["video_codec"]]
    cmd += ["-preset",         cfg["preset"]]
    cmd += ["-tune",           cfg["tune"]]
    cmd += ["-s",              stream.resolution]
    cmd += ["-b:v",            stream.bitrate]
    cmd += ["-maxrate",        stream.bitrate]
    cmd += ["-bufsize",        cfg["bufsize"]]
    cmd += ["-sc_threshold",   "0"]
    cmd += ["-g",              gop]
    cmd += ["-keyint_min",     gop]
    cmd += ["-x264opts",       "no-scenecut"]
    cmd += ["-acodec",         cfg["audio_codec"]]
    cmd += ["-b:a",            cfg["audio_bitrate"]]
    cmd += ["-ar",             str(cfg["audio_rate"])]
    cmd += ["-f",              cfg["output_format"]]
    cmd += [stream.publish_url]
    return cmd


def render_script(stream: StreamDefinition, cfg: dict) -> str:
    """Shell script running the same command once, for manual runs outside the dashboard."""
    return (
        "#!/bin/sh\n"
        f"# {stream.name} ({stream.id})\n"
        f"exec {shlex.join(build_command(stream, cfg))}\n"
    )


class ScriptWriter:
    def __init__(self, scripts_dir: Path) -> None:
        self.scripts_dir = scripts_dir

    def path(self, stream_id: str) -> Path:
        return self.scripts_dir / f"{stream_id}.sh"

    def write(self, stream: StreamDefinition, cfg: dict) -> Path:
        path = self.path(stream.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_script(stream, cfg))
        path.chmod(0o755)
        logger.debug(f"Wrote launch script {path}")
        return path

    def remove(self, stream_id: str) -> None:
        self.path(stream_id).unlink(missing_ok=True)
