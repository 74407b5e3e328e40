from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Tuple

from stable_automation.utils.errors import RecurrenceRuleParseError
from stable_automation.utils.logging import get_logger

FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")

# Python weekday() numbering: Monday is 0
WEEKDAY_CODES = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}


@dataclass(frozen=True)
class RecurrenceRule:
    """Structured form of an RRULE-like string."""

    freq: str = "DAILY"
    interval: int = 1
    by_day: Optional[Tuple[int, ...]] = None
    by_month_day: Optional[int] = None
    count: Optional[int] = None
    until: Optional[date] = None


def parse_recurrence_rule(rule: Optional[str]) -> RecurrenceRule:
    """
    Parse a ``KEY=VALUE;KEY=VALUE`` recurrence string.

    Never raises: unknown keys are ignored and malformed values fall back to
    their defaults (``FREQ=DAILY``, ``INTERVAL=1``, everything else unset).

    Examples:
    - "FREQ=WEEKLY;BYDAY=MO,WE,FR" -> weekly on Monday, Wednesday and Friday
    - "RRULE:FREQ=MONTHLY;BYMONTHDAY=15" -> monthly on the 15th
    """
    logger = get_logger()

    freq = "DAILY"
    interval = 1
    by_day: Optional[Tuple[int, ...]] = None
    by_month_day: Optional[int] = None
    count: Optional[int] = None
    until: Optional[date] = None

    text = (rule or "").strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:") :]

    for part in text.split(";"):
        if "=" not in part:
            continue
        key, value = (token.strip() for token in part.split("=", 1))
        key = key.upper()

        try:
            if key == "FREQ":
                if value.upper() in FREQUENCIES:
                    freq = value.upper()
                else:
                    raise RecurrenceRuleParseError(f"Unknown FREQ value '{value}'")
            elif key == "INTERVAL":
                interval = _parse_positive_int(key, value)
            elif key == "BYDAY":
                days = []
                for code in value.split(","):
                    weekday = WEEKDAY_CODES.get(code.strip().upper())
                    if weekday is not None and weekday not in days:
                        days.append(weekday)
                by_day = tuple(sorted(days)) or None
            elif key == "BYMONTHDAY":
                by_month_day = _parse_positive_int(key, value)
                if by_month_day > 31:
                    by_month_day = None
                    raise RecurrenceRuleParseError(
                        f"BYMONTHDAY out of range: '{value}'"
                    )
            elif key == "COUNT":
                count = _parse_positive_int(key, value)
            elif key == "UNTIL":
                until = _parse_until(value)
        except RecurrenceRuleParseError as e:
            logger.warning(
                "Ignoring malformed recurrence rule value",
                rule=rule,
                key=key,
                error=e.message,
            )

    return RecurrenceRule(
        freq=freq,
        interval=interval,
        by_day=by_day,
        by_month_day=by_month_day,
        count=count,
        until=until,
    )


def _parse_positive_int(key: str, value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise RecurrenceRuleParseError(f"{key} is not an integer: '{value}'")
    if parsed < 1:
        raise RecurrenceRuleParseError(f"{key} must be positive: '{value}'")
    return parsed


def _parse_until(value: str) -> date:
    """Accepts ``YYYYMMDD`` or ``YYYYMMDDTHHMMSSZ``; only the date is kept."""
    try:
        return datetime.strptime(value[:8], "%Y%m%d").date()
    except ValueError:
        raise RecurrenceRuleParseError(f"UNTIL is not a date: '{value}'")
