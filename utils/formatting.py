"""Display helpers shared by the CLI and the dashboard."""

from datetime import datetime

from storage.base import EPOCH

_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def format_bytes(num_bytes: int, decimals: int = 2) -> str:
    """Human-readable size using 1024-based units, e.g. ``1.5 MB``."""
    if num_bytes <= 0:
        return "0 B"
    value = float(num_bytes)
    unit = 0
    while value >= 1024 and unit < len(_UNITS) - 1:
        value /= 1024
        unit += 1
    if unit == 0:
        return f"{int(value)} B"
    text = f"{value:.{decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"{text} {_UNITS[unit]}"


def format_timestamp(value: datetime) -> str:
    if value == EPOCH:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M")
