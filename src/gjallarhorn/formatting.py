"""Formatting utilities for consistent output across CLI and TUI."""

from gjallarhorn.models import UNAVAILABLE


def format_bytes(bytes_val: int | None) -> str:
    """Format bytes as human-readable string (binary units)."""
    if bytes_val is None:
        return UNAVAILABLE
    if bytes_val < 1024:
        return f"{bytes_val}B"
    elif bytes_val < 1024 * 1024:
        return f"{bytes_val / 1024:.0f}K"
    elif bytes_val < 1024 * 1024 * 1024:
        return f"{bytes_val / (1024 * 1024):.1f}M"
    elif bytes_val < 1024**4:
        return f"{bytes_val / 1024**3:.1f}G"
    return f"{bytes_val / 1024**4:.1f}T"


def format_rate(bytes_per_sec: float) -> str:
    """Format bytes/sec as human-readable rate."""
    return f"{format_bytes(int(bytes_per_sec))}/s"


def format_percent(value: float | None) -> str:
    if value is None:
        return "--"
    return f"{value:5.1f}%"


def format_capacity(bytes_val: int | None) -> str:
    """Disk capacity in decimal units, as drives are labelled."""
    if bytes_val is None:
        return UNAVAILABLE
    for unit, size in (("TB", 10**12), ("GB", 10**9), ("MB", 10**6)):
        if bytes_val >= size:
            return f"{bytes_val / size:.1f}{unit}"
    return f"{bytes_val}B"


def format_uptime(seconds: float | None) -> str:
    """Uptime as days, hours and minutes."""
    if seconds is None:
        return UNAVAILABLE
    total = int(seconds)
    days, rest = divmod(total, 86400)
    return f"{days}d {rest // 3600}h {rest % 3600 // 60}m"


def format_frequency(mhz: float | None) -> str:
    if mhz is None:
        return UNAVAILABLE
    if mhz >= 1000:
        return f"{mhz / 1000:.2f}GHz"
    return f"{mhz:.0f}MHz"


def format_link_speed(mbps: int | None) -> str:
    if mbps is None:
        return UNAVAILABLE
    if mbps >= 1000 and mbps % 1000 == 0:
        return f"{mbps // 1000}Gb/s"
    return f"{mbps}Mb/s"
