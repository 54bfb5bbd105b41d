"""Read-side helpers computing views over a list of events."""
import re
from datetime import date, timedelta
from typing import List, Sequence, Tuple

from timetable.models import Event

COURSE_KINDS = 'TD|TP|CM|COURS|EXAM'
DEFAULT_COURSE_KIND = 'COURS'

_TITLE_PATTERNS = [
    (re.compile(rf'^([A-Z\s]+)\s*-\s*({COURSE_KINDS})', re.IGNORECASE), 1, 2),
    (re.compile(rf'^({COURSE_KINDS})\s*-\s*([A-Z\s]+)', re.IGNORECASE), 2, 1),
    (re.compile(rf'^([A-Z\s]+)\s*\(({COURSE_KINDS})\)', re.IGNORECASE), 1, 2),
]


def _local_day(event: Event) -> date:
    return event.start.astimezone().date()


def events_on(events: Sequence[Event], day: date) -> List[Event]:
    """Events starting on a local calendar day."""
    return [event for event in events if _local_day(event) == day]


def week_start(day: date) -> date:
    """Monday of the week containing ``day``."""
    return day - timedelta(days=day.weekday())


def events_in_week(events: Sequence[Event], start: date) -> List[Event]:
    """Events starting within seven days from ``start``."""
    end = start + timedelta(days=7)
    return [event for event in events if start <= _local_day(event) < end]


def events_in_month(events: Sequence[Event], year: int, month: int) -> List[Event]:
    return [
        event for event in events
        if _local_day(event).year == year and _local_day(event).month == month
    ]


def duration(event: Event) -> timedelta:
    """Event length; malformed events ending before they start count as zero."""
    return max(event.end - event.start, timedelta(0))


def split_title(title: str) -> Tuple[str, str]:
    """
    Extract subject and course kind from a title.

    Args:
        title: Event title, e.g. "ALGO - TD" or "CM - PHYSICS"

    Returns:
        Tuple of (subject, kind); kind defaults to COURS when not recognised
    """
    for pattern, subject_group, kind_group in _TITLE_PATTERNS:
        match = pattern.match(title)
        if match:
            return match.group(subject_group).strip(), match.group(kind_group).upper()
    return title, DEFAULT_COURSE_KIND
