"""
Parsing of ffmpeg progress output.

ffmpeg run with ``-progress pipe:1`` writes one ``key=value`` pair per line
on stdout. The classic stderr stats line packs several pairs on one line::

    frame= 1200 fps= 25 q=23.0 size=  10240kB time=00:00:48.00 bitrate=1747.6kbits/s speed=1x

Both shapes are accepted.
"""

import math
import re
from typing import Iterable, Optional

PAIR_RE    = re.compile(r"(\w+)=\s*(\S+)")
BITRATE_RE = re.compile(r"^([0-9]+(?:\.[0-9]+)?)kbits/s$")

ERROR_MARKERS   = ("error", "failed", "invalid", "refused", "not found", "unable", "no such")
WARNING_MARKERS = ("warning", "deprecated", "past duration", "dropping", "retry")


def _to_float(value: str) -> Optional[float]:
    try:
        f = float(value)
    except ValueError:
        return None
    return f if math.isfinite(f) else None


def parse_progress(lines: Iterable[str]) -> dict:
    """Return the newest ``bitrate`` (kbit/s) and ``fps`` seen, or None for each."""
    result: dict = {"bitrate": None, "fps": None}
    for line in reversed(list(lines)):
        for key, value in PAIR_RE.findall(line):
            if key == "bitrate" and result["bitrate"] is None:
                m = BITRATE_RE.match(value)
                if m:
                    result["bitrate"] = float(m.group(1))
            elif key == "fps" and result["fps"] is None:
                result["fps"] = _to_float(value)
        if result["bitrate"] is not None and result["fps"] is not None:
            break
    return result


def is_stats_line(line: str) -> bool:
    stripped = line.lstrip()
    return stripped.startswith("frame=") or ("fps=" in line and "bitrate=" in line)


def classify(line: str) -> str:
    lower = line.lower()
    if any(m in lower for m in ERROR_MARKERS):
        return "error"
    if any(m in lower for m in WARNING_MARKERS):
        return "warning"
    return "info"
