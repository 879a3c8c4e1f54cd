"""Wall-clock helpers.

Reservation instants are naive local timestamps: the hour a member picks is the
hour that is stored and displayed. Offsets sent by clients are dropped, never
converted, and nothing here normalises to UTC.
"""

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from ..config import get_settings


def local_now() -> datetime:
    """Current wall-clock time in the configured zone, without tzinfo."""
    tz_name = get_settings().app_timezone
    if tz_name:
        return datetime.now(ZoneInfo(tz_name)).replace(tzinfo=None)
    return datetime.now()


def to_wall_clock(dt: datetime) -> datetime:
    return dt.replace(tzinfo=None, microsecond=0)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)
