"""Data models for timetable synchronization."""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


def generate_event_id(title: str, start: datetime) -> str:
    """
    Generate a deterministic identifier for an event without a UID.

    Args:
        title: Event title
        start: Event start time

    Returns:
        SHA256 hex digest of title + start time
    """
    composite = f"{title}|{start.isoformat()}"
    return hashlib.sha256(composite.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class Event:
    """One calendar occurrence parsed from a feed."""
    id: str
    title: str
    start: datetime
    end: datetime
    description: str = ''
    location: str = ''
    all_day: bool = False

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'location': self.location,
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'all_day': self.all_day,
        }

    @staticmethod
    def from_dict(data: dict) -> 'Event':
        return Event(
            id=data['id'],
            title=data['title'],
            description=data.get('description', ''),
            location=data.get('location', ''),
            start=datetime.fromisoformat(data['start']),
            end=datetime.fromisoformat(data['end']),
            all_day=bool(data.get('all_day', False)),
        )


@dataclass
class Snapshot:
    """Cached, timestamped parse result for one subscription."""
    subscription_key: str
    events: List[Event]
    fetched_at: datetime
    raw_digest: Optional[str] = None


class ChangeKind(str, Enum):
    ADDED = 'added'
    REMOVED = 'removed'
    MOVED = 'moved'
    MODIFIED = 'modified'


@dataclass(frozen=True)
class ChangeRecord:
    """One classified difference between two snapshots."""
    kind: ChangeKind
    current: Optional[Event] = None
    previous: Optional[Event] = None

    @property
    def event(self) -> Event:
        return self.current if self.current is not None else self.previous

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'current': self.current.to_dict() if self.current else None,
            'previous': self.previous.to_dict() if self.previous else None,
        }


class ScheduleStatus(str, Enum):
    FRESH = 'fresh'
    DEGRADED = 'degraded'


@dataclass
class ScheduleResult:
    """Result of a get_schedule call."""
    events: List[Event]
    changes: List[ChangeRecord]
    status: ScheduleStatus
    from_cache: bool
    fetched_at: Optional[datetime] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.status is ScheduleStatus.DEGRADED

    def copy(self) -> 'ScheduleResult':
        """Return a result whose lists are not shared with this one."""
        return ScheduleResult(
            events=list(self.events),
            changes=list(self.changes),
            status=self.status,
            from_cache=self.from_cache,
            fetched_at=self.fetched_at,
            warnings=list(self.warnings),
        )
