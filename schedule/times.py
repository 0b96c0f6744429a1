"""
GTFS time-of-day arithmetic.

Scheduled times are HH:MM:SS strings measured from the start of the service
day, so "25:30:00" is 01:30 the following morning. Everything here works in
integer seconds-past-midnight and never raises on malformed input: an
unparseable time becomes None and callers propagate that as "not computable".
"""

from datetime import datetime

SECONDS_PER_DAY = 24 * 3600


def time_to_seconds(hms: str | None) -> int | None:
    """Parse HH:MM:SS (hours may exceed 23) into seconds, or None."""
    if not hms:
        return None
    parts = str(hms).strip().split(":")
    if len(parts) != 3:
        return None
    try:
        h, m, s = (int(p) for p in parts)
    except ValueError:
        return None
    return h * 3600 + m * 60 + s


def format_seconds(total_seconds: int | None) -> str | None:
    """Inverse of time_to_seconds. Negative totals keep a leading '-'."""
    if total_seconds is None:
        return None
    sign = "-" if total_seconds < 0 else ""
    remaining = abs(int(total_seconds))
    h, remaining = divmod(remaining, 3600)
    m, s = divmod(remaining, 60)
    return f"{sign}{h:02d}:{m:02d}:{s:02d}"


def seconds_to_minutes(seconds: int | None) -> float | None:
    """Seconds → minutes rounded to one decimal place."""
    if seconds is None:
        return None
    return round(seconds / 60, 1)


def seconds_since_midnight(dt: datetime) -> int:
    return dt.hour * 3600 + dt.minute * 60 + dt.second
