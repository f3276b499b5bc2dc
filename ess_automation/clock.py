"""Local civil time helpers - every time-of-day decision goes through the user's timezone"""

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = 'Australia/Sydney'


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_timezone(name: Optional[str], default: str = DEFAULT_TIMEZONE) -> tzinfo:
    """Return the zone for an IANA identifier, falling back to the default zone"""
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone '{candidate}', falling back")
    return ZoneInfo(DEFAULT_TIMEZONE)


def to_local(now: datetime, tz: tzinfo) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz)


def parse_hhmm(value: str) -> int:
    """Parse 'HH:MM' into minutes after midnight"""
    hours, minutes = str(value).strip().split(':')[:2]
    h, m = int(hours), int(minutes)
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError(f"Invalid time of day: {value}")
    return h * 60 + m


def minutes_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def in_daily_window(current_minutes: int, start_minutes: int, end_minutes: int) -> bool:
    """Half-open daily window; start > end wraps over midnight"""
    if start_minutes <= end_minutes:
        return start_minutes <= current_minutes < end_minutes
    return current_minutes >= start_minutes or current_minutes < end_minutes


def add_minutes(moment: datetime, minutes: float) -> datetime:
    """Elapsed-time addition; aware moments are stepped in UTC so DST shifts are honoured"""
    if moment.tzinfo is None:
        return moment + timedelta(minutes=minutes)
    return (moment.astimezone(timezone.utc) + timedelta(minutes=minutes)).astimezone(moment.tzinfo)


def next_hour_boundary(moment: datetime) -> datetime:
    """Start of the next full hour; a moment exactly on the hour is its own boundary"""
    floored = moment.replace(minute=0, second=0, microsecond=0)
    if floored == moment:
        return floored
    return add_minutes(floored, 60)


def look_ahead_minutes(value: float, unit: str) -> int:
    if unit == 'days':
        return int(value * 24 * 60)
    if unit == 'hours':
        return int(value * 60)
    return int(value)
