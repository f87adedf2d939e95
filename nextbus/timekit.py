# nextbus/timekit.py
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from nextbus.config import settings

ONE_DAY = timedelta(days=1)
RFC822Z = "%d %b %y %H:%M %z"
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def agency_tz(tz_name: str | None = None) -> ZoneInfo:
    return ZoneInfo(tz_name or getattr(settings, "TIMEZONE", None) or "America/Los_Angeles")


def now_local(tz_name: str | None = None) -> datetime:
    return datetime.now(agency_tz(tz_name))


def weekday_name(weekday: int) -> str:
    return WEEKDAYS[weekday % 7]


def since_midnight(dt: datetime) -> timedelta:
    """Wall-clock duration since local midnight of ``dt``."""
    return timedelta(hours=dt.hour, minutes=dt.minute, seconds=dt.second)


def midnight_of(day: date | datetime, tz: ZoneInfo) -> datetime:
    if isinstance(day, datetime):
        day = day.date()
    return datetime.combine(day, time(0, 0), tzinfo=tz)


def instant_at(day: date | datetime, offset: timedelta, tz: ZoneInfo) -> datetime:
    """Absolute instant for an offset since local midnight of ``day``.

    Offsets beyond 24h (GTFS "25:10:00") roll into the next day.
    """
    return midnight_of(day, tz) + offset


def parse_gtfs_time(value: str | None) -> timedelta | None:
    """Parse ``HH:MM:SS`` where HH may exceed 23. Blank means unknown."""
    if not value:
        return None
    parts = str(value).strip().split(":")
    if len(parts) != 3:
        return None
    try:
        h, m, s = int(parts[0]), int(parts[1]), int(parts[2])
    except ValueError:
        return None
    if h < 0 or not (0 <= m <= 59) or not (0 <= s <= 59):
        return None
    return timedelta(hours=h, minutes=m, seconds=s)


def parse_yyyymmdd(value: str | None) -> date | None:
    s = (value or "").strip()
    if len(s) != 8 or not s.isdigit():
        return None
    try:
        return date(int(s[:4]), int(s[4:6]), int(s[6:]))
    except ValueError:
        return None


def format_rfc822z(dt: datetime) -> str:
    return dt.strftime(RFC822Z)


def parse_rfc822z(value: str, tz: ZoneInfo | None = None) -> datetime:
    dt = datetime.strptime(value.strip(), RFC822Z)
    return dt.astimezone(tz) if tz else dt
