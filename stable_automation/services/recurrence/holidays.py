from datetime import date
from typing import Iterable, Optional

from stable_automation.config.settings import settings


def is_holiday_or_weekend(day: date, holiday_dates: Optional[Iterable[str]] = None) -> bool:
    """
    Weekend days and the fixed holiday calendar (``MM-DD`` entries, default
    settings.HOLIDAY_DATES) count as holiday shifts.
    """
    if day.weekday() >= 5:
        return True

    if holiday_dates is None:
        holiday_dates = settings.HOLIDAY_DATES

    return day.strftime("%m-%d") in set(holiday_dates)


def effective_weight(
    base_weight: float, is_holiday_shift: bool, is_holiday_multiplied: bool
) -> float:
    if is_holiday_shift and is_holiday_multiplied:
        return base_weight * settings.HOLIDAY_WEIGHT_MULTIPLIER
    return base_weight
