from __future__ import annotations

import math
from datetime import datetime, timezone


def utcnow() -> datetime:
    # stored timestamps are naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def elapsed_seconds(start: datetime, end: datetime) -> int:
    """Whole seconds between two instants, rounded down."""
    return math.floor((end - start).total_seconds())


def format_time(seconds: int | None) -> str | None:
    """Render seconds as H:MM:SS (an hour or more) or M:SS.

    3661 -> "1:01:01", 125 -> "2:05", 59 -> "0:59". Zero and None give None.
    """
    if not seconds:
        return None
    seconds = int(seconds)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_gap(seconds: int) -> str:
    # dead heat with the winner
    return f"+{format_time(seconds) or '0:00'}"


def minutes_until(target: datetime, now: datetime) -> int:
    return round_half_up((target - now).total_seconds() / 60)


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)
