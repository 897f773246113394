# medreminder/civil_time.py
# Fixed-offset civil time (default WIB, UTC+7, no daylight saving).
# Every "today" in the engine is computed here so the dispatcher and the
# confirmation lookback agree on day boundaries.
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

from .config import get_settings

ONE_MS = timedelta(milliseconds=1)


def _offset(offset_hours: Optional[int] = None) -> timedelta:
    if offset_hours is None:
        offset_hours = get_settings().civil_utc_offset_hours
    return timedelta(hours=offset_hours)


def civil_tz(offset_hours: Optional[int] = None) -> timezone:
    return timezone(_offset(offset_hours))


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_civil(now_utc: datetime, offset_hours: Optional[int] = None) -> datetime:
    return as_utc(now_utc).astimezone(civil_tz(offset_hours))


def civil_today(now_utc: datetime, offset_hours: Optional[int] = None) -> date:
    return to_civil(now_utc, offset_hours).date()


def civil_midnight_utc(day: date, offset_hours: Optional[int] = None) -> datetime:
    """UTC instant at which the civil day starts (previous day 17:00 UTC for +7)."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc) - _offset(offset_hours)


def civil_day_window(day: date, offset_hours: Optional[int] = None) -> Tuple[datetime, datetime]:
    """Return (start, end) in UTC; end is the last millisecond of the civil day."""
    start = civil_midnight_utc(day, offset_hours)
    return start, start + timedelta(days=1) - ONE_MS


def parse_hhmm(value: str) -> time:
    try:
        hours, minutes = value.strip().split(":")[:2]
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid time of day '{value}', expected HH:MM") from exc


def is_due(
    scheduled_time: str,
    now_utc: datetime,
    tolerance_minutes: int = 0,
    offset_hours: Optional[int] = None,
) -> bool:
    """True once civil "now" has reached the scheduled minute (minus tolerance).

    There is no upper bound: an occurrence missed by one cycle is still due on
    the next cycle of the same civil day.
    """
    civil_now = to_civil(now_utc, offset_hours)
    scheduled = datetime.combine(civil_now.date(), parse_hhmm(scheduled_time), tzinfo=civil_now.tzinfo)
    return civil_now >= scheduled - timedelta(minutes=tolerance_minutes)
