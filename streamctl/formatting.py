def fmt_duration(seconds: float) -> str:
    seconds = int(seconds)
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    if h:
        return f"{h}h{m:02d}m{s:02d}s"
    elif m:
        return f"{m}m{s:02d}s"
    return f"{s}s"


def fmt_uptime(seconds: float) -> str:
    """Long form used on the dashboard, e.g. ``2 days, 3 hours, 1 minute``."""
    seconds = int(seconds)
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes = seconds // 60

    parts = []
    for value, unit in ((days, "day"), (hours, "hour"), (minutes, "minute")):
        if value > 0:
            parts.append(f"{value} {unit}{'' if value == 1 else 's'}")
    return ", ".join(parts) or "0 minutes"


def fmt_mib(mib: int) -> str:
    if mib >= 1024:
        return f"{mib/1024:.1f}GiB"
    return f"{mib}MiB"
