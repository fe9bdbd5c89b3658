"""Local wall-clock helpers.

Every attendance boundary (expected check-in/out, the 2-hour grace, the
23:55 cleanup) is a wall-clock time in the configured office timezone, so
the engine works with naive local datetimes produced by ``local_now``.
Wall-clock values are plain ``datetime.time`` objects; strings are parsed
exactly once, at the API/persistence boundary, by ``parse_wall_clock``.
"""
from datetime import date, datetime, time

import pytz

from attendance_engine.core.config import settings

WALL_CLOCK_FORMATS = ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p")


def office_timezone():
    return pytz.timezone(settings.TIMEZONE)


def local_now() -> datetime:
    """Current time in the office timezone, without tzinfo attached."""
    return datetime.now(office_timezone()).replace(tzinfo=None, microsecond=0)


def parse_wall_clock(value) -> time:
    """Parse ``"9:00 AM"``, ``"09:00"`` or ``"18:00:00"`` into a ``time``.

    Raises ValueError for anything else.
    """
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    if not isinstance(value, str):
        raise ValueError(f"Invalid wall-clock value: {value!r}")

    s = value.strip()
    for fmt in WALL_CLOCK_FORMATS:
        try:
            return datetime.strptime(s, fmt).time().replace(second=0)
        except ValueError:
            continue
    raise ValueError(f"Invalid wall-clock format: {value!r}")


def at_wall_clock(day: date, wall_clock: time) -> datetime:
    """Combine a calendar day with a wall-clock time."""
    return datetime.combine(day, wall_clock.replace(second=0, microsecond=0))


def format_12h(value) -> str:
    """Render a time or datetime as ``6:00 PM``."""
    return value.strftime("%I:%M %p").lstrip("0")


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0
