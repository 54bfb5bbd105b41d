"""Turn change records into user-facing notification messages."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Sequence

from timetable.models import ChangeKind, ChangeRecord

TITLES = {
    ChangeKind.ADDED: 'New class',
    ChangeKind.REMOVED: 'Class cancelled',
    ChangeKind.MOVED: 'Class moved',
    ChangeKind.MODIFIED: 'Class updated',
}


@dataclass
class Notification:
    """Message ready to hand to a push-delivery service."""
    title: str
    body: str
    data: dict = field(default_factory=dict)


def format_when(moment: datetime, now: datetime, all_day: bool = False) -> str:
    """
    Describe a time relative to now, in local time.

    Args:
        moment: Time to describe
        now: Reference time
        all_day: Omit the clock time

    Returns:
        "Today 14:00", "Tomorrow 09:30" or "Mon 15 Jan 10:00"
    """
    local = moment.astimezone()
    today = now.astimezone().date()
    clock = '' if all_day else f" {local:%H:%M}"

    if local.date() == today:
        return f"Today{clock}"
    if local.date() == today + timedelta(days=1):
        return f"Tomorrow{clock}"
    return f"{local:%a} {local.day} {local:%b}{clock}"


def build_notification(change: ChangeRecord, now: datetime) -> Notification:
    event = change.event
    when = format_when(event.start, now, event.all_day)

    if change.kind is ChangeKind.MOVED and change.previous is not None:
        before = format_when(change.previous.start, now, change.previous.all_day)
        body = f"{event.title}\n{before} -> {when}"
        if change.previous.location != event.location and event.location:
            body += f"\n{event.location}"
    else:
        body = f"{event.title}\n{when}"

    return Notification(
        title=TITLES[change.kind],
        body=body,
        data={
            'type': 'course_change',
            'change_type': change.kind.value,
            'event_id': event.id,
        },
    )


def build_notifications(changes: Sequence[ChangeRecord], now: datetime) -> List[Notification]:
    return [build_notification(change, now) for change in changes]
