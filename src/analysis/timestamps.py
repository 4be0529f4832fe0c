"""MM:SS / HH:MM:SS timestamp helpers."""

from __future__ import annotations

import math


def parse_timestamp(timestamp: str) -> int:
    """Parse ``"MM:SS"`` or ``"HH:MM:SS"`` into whole seconds.

    Fields that are not numbers count as zero; any other shape parses to 0.
    """
    parts = [_parse_field(p) for p in timestamp.strip().split(":")]
    if len(parts) == 2:
        return parts[0] * 60 + parts[1]
    if len(parts) == 3:
        return parts[0] * 3600 + parts[1] * 60 + parts[2]
    return 0


def _parse_field(field: str) -> int:
    try:
        value = float(field)
    except ValueError:
        return 0
    if not math.isfinite(value):
        return 0
    return int(value)


def format_timestamp(seconds: float) -> str:
    """Format seconds as ``MM:SS``, switching to ``HH:MM:SS`` past 99:59."""
    total = max(0, math.floor(seconds))
    mins, secs = divmod(total, 60)
    if mins > 99:
        hours, mins = divmod(mins, 60)
        return f"{hours:02d}:{mins:02d}:{secs:02d}"
    return f"{mins:02d}:{secs:02d}"


def remap_timestamp(timestamp: str, offset_seconds: float, ceiling: float | None = None) -> str:
    """Shift a chunk-relative timestamp by *offset_seconds*.

    When *ceiling* is given the local value is clamped to ``[0, ceiling]``
    first, so a timestamp past the end of its chunk cannot leak into the next.
    """
    local = max(0.0, float(parse_timestamp(timestamp)))
    if ceiling is not None:
        local = min(local, ceiling)
    return format_timestamp(local + offset_seconds)
