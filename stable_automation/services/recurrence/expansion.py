from datetime import date, timedelta
from typing import List, Optional

from dateutil.relativedelta import relativedelta

from stable_automation.config.settings import settings
from stable_automation.services.recurrence.rule_parser import RecurrenceRule
from stable_automation.utils.logging import get_logger


def expand_dates(
    window_start: date,
    window_end: date,
    rule: RecurrenceRule,
    pattern_start: date,
    pattern_end: Optional[date] = None,
    max_iterations: Optional[int] = None,
) -> List[date]:
    """
    Expand a recurrence rule into the ascending list of occurrence dates that
    fall inside ``[window_start, window_end]`` (both inclusive).

    The effective end is the earliest of the window end, the pattern end and
    the rule's UNTIL.

    The series is always phased from ``pattern_start``: the cursor jumps
    straight to the first step on or after ``window_start``, so running the
    expansion every day over a sliding window yields the same dates as one
    expansion over the whole range. WEEKLY rules with BYDAY walk every day of
    the window and keep only weeks that are a multiple of INTERVAL away from
    the week of ``pattern_start``.

    Monthly and yearly steps are measured from the series base rather than
    chained, so a series anchored on the 31st clamps to the end of short
    months and returns to the 31st afterwards (Jan 31, Feb 29, Mar 31).

    The loop is bounded by ``max_iterations``; when the cap is hit a warning is
    logged and the dates collected so far are returned.
    """
    if max_iterations is None:
        max_iterations = settings.RECURRENCE_MAX_ITERATIONS

    effective_end = window_end
    if pattern_end is not None:
        effective_end = min(effective_end, pattern_end)
    if rule.until is not None:
        effective_end = min(effective_end, rule.until)

    if rule.freq == "WEEKLY" and rule.by_day:
        base = window_start
        step = 0
    else:
        base = pattern_start
        if rule.freq == "MONTHLY" and rule.by_month_day:
            base = _align_to_month_day(pattern_start, rule.by_month_day)
        step = _first_step_on_or_after(base, window_start, rule)

    dates: List[date] = []
    cursor = _step_date(base, step, rule)
    iterations = 0

    while cursor <= effective_end:
        if iterations >= max_iterations:
            get_logger().warning(
                "Recurrence expansion reached iteration limit",
                max_iterations=max_iterations,
                collected=len(dates),
                freq=rule.freq,
            )
            break
        iterations += 1

        if (
            cursor >= window_start
            and cursor >= pattern_start
            and _matches(cursor, rule)
            and _in_active_week(cursor, pattern_start, rule)
        ):
            dates.append(cursor)
            if rule.count and len(dates) >= rule.count:
                break

        step += 1
        cursor = _step_date(base, step, rule)

    return dates


def _matches(candidate: date, rule: RecurrenceRule) -> bool:
    if rule.by_day and candidate.weekday() not in rule.by_day:
        return False
    if rule.by_month_day and candidate.day != rule.by_month_day:
        return False
    return True


def _in_active_week(candidate: date, pattern_start: date, rule: RecurrenceRule) -> bool:
    if rule.freq != "WEEKLY" or not rule.by_day or rule.interval == 1:
        return True
    candidate_monday = candidate - timedelta(days=candidate.weekday())
    pattern_monday = pattern_start - timedelta(days=pattern_start.weekday())
    return ((candidate_monday - pattern_monday).days // 7) % rule.interval == 0


def _step_date(base: date, step: int, rule: RecurrenceRule) -> date:
    if rule.freq == "WEEKLY":
        if rule.by_day:
            return base + timedelta(days=step)
        return base + timedelta(days=7 * rule.interval * step)
    if rule.freq == "MONTHLY":
        # relativedelta clamps to the last valid day of the target month
        return base + relativedelta(months=step * rule.interval)
    if rule.freq == "YEARLY":
        return base + relativedelta(years=step * rule.interval)
    return base + timedelta(days=rule.interval * step)


def _first_step_on_or_after(base: date, target: date, rule: RecurrenceRule) -> int:
    """Smallest step whose date is on or after ``target``."""
    if target <= base:
        return 0

    if rule.freq in ("DAILY", "WEEKLY"):
        step_days = rule.interval * (7 if rule.freq == "WEEKLY" else 1)
        return -(-(target - base).days // step_days)

    if rule.freq == "MONTHLY":
        elapsed = (target.year - base.year) * 12 + target.month - base.month
    else:
        elapsed = target.year - base.year
    # Start one step early; clamped month ends can land short of the target
    step = max(0, elapsed // rule.interval - 1)
    while _step_date(base, step, rule) < target:
        step += 1
    return step


def _align_to_month_day(start: date, month_day: int) -> date:
    """First date on or after ``start`` whose day of month is ``month_day``."""
    month_start = start.replace(day=1)
    for offset in range(0, 12):
        candidate_month = month_start + relativedelta(months=offset)
        candidate = candidate_month + relativedelta(day=month_day)
        if candidate.day == month_day and candidate >= start:
            return candidate
    return start
