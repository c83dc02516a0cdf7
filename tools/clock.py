"""
Clock and timezone helpers
All persisted timestamps are naive UTC datetimes.
"""

from datetime import date, datetime, time, timezone
from typing import Callable, Union
from zoneinfo import ZoneInfo


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_time_of_day(value: Union[str, time]) -> time:
    """Parse 'HH:MM' (or 'HH:MM:SS') into a time"""
    if isinstance(value, time):
        return value
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).time()
        except (TypeError, ValueError):
            continue
    raise ValueError(f"Invalid time of day: {value!r}")


def resolve_local_time(day: date, time_of_day: Union[str, time], tz_name: str) -> datetime:
    """
    Combine a calendar day and a clock time in the given timezone and
    return the absolute instant as naive UTC.
    """
    local = datetime.combine(day, parse_time_of_day(time_of_day), tzinfo=ZoneInfo(tz_name or "UTC"))
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(moment: datetime, tz_name: str) -> datetime:
    """Convert a naive UTC datetime into the given timezone"""
    return moment.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name or "UTC"))


def local_today(tz_name: str, now: datetime) -> date:
    """Calendar date in the given timezone at the naive UTC instant `now`"""
    return to_local(now, tz_name).date()


def epoch_ms(moment: datetime) -> int:
    """Milliseconds since the epoch for a naive UTC datetime"""
    return int(moment.replace(tzinfo=timezone.utc).timestamp() * 1000)


def as_naive_utc(moment: datetime) -> datetime:
    """Normalise an aware datetime to naive UTC; naive values are taken as UTC already"""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)
