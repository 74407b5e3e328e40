from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, Optional

from stable_automation.db.models import ExceptionType, RecurringActivityException


@dataclass(frozen=True)
class OccurrenceDefaults:
    title: str
    scheduled_time: str


@dataclass(frozen=True)
class ResolvedOccurrence:
    """Effective values for one occurrence after applying its exception."""

    title: str
    scheduled_time: str
    assignee_override: Optional[str] = None
    is_exception: bool = False
    exception_note: Optional[str] = None


def build_exception_map(
    exceptions: Iterable[RecurringActivityException],
    window_start: date,
    window_end: date,
) -> Dict[str, RecurringActivityException]:
    """Index exceptions inside the window by ISO date (``YYYY-MM-DD``)."""
    return {
        exception.exception_date.isoformat(): exception
        for exception in exceptions
        if window_start <= exception.exception_date <= window_end
    }


def resolve_occurrence(
    occurrence_date: date,
    exception_map: Dict[str, RecurringActivityException],
    defaults: OccurrenceDefaults,
) -> Optional[ResolvedOccurrence]:
    """
    Overlay the exception for ``occurrence_date`` onto the definition defaults.

    Returns None when the date is skipped.
    """
    exception = exception_map.get(occurrence_date.isoformat())

    if exception is None:
        return ResolvedOccurrence(
            title=defaults.title, scheduled_time=defaults.scheduled_time
        )

    if exception.exception_type == ExceptionType.SKIP:
        return None

    return ResolvedOccurrence(
        title=exception.modified_title or defaults.title,
        scheduled_time=exception.modified_time or defaults.scheduled_time,
        assignee_override=exception.modified_assigned_to,
        is_exception=True,
        exception_note=exception.reason,
    )
