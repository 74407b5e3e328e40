from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from stable_automation.config.settings import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def naive_utc_now() -> datetime:
    """Current UTC time without tzinfo; DateTime columns store naive UTC."""
    return utc_now().replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime for storage and comparison with stored columns.

    Naive values are taken to be UTC already.
    """
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def local_today(now: datetime, zone: str = settings.TIMEZONE) -> date:
    """
    Calendar date of ``now`` in the stable's timezone.

    Args:
        now: Aware datetime, or naive UTC
        zone: IANA timezone name (default: settings.TIMEZONE)

    Returns:
        date: The local calendar date
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(zone)).date()


def calculate_end_time(start_time: str, duration_minutes: int) -> str:
    """``HH:MM`` start plus a duration, wrapping past midnight."""
    hours, minutes = (int(part) for part in start_time.split(":")[:2])
    total_minutes = hours * 60 + minutes + int(duration_minutes or 0)
    return f"{(total_minutes // 60) % 24:02d}:{total_minutes % 60:02d}"
