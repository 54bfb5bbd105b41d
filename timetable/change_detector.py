"""Change detection between successive timetable snapshots."""
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Sequence

from timetable.models import ChangeKind, ChangeRecord, Event

logger = logging.getLogger(__name__)

# Title-based matches only count when starts are closer than this.
DEFAULT_MATCH_WINDOW = timedelta(hours=24)


class ChangeDetector:
    """Classifies differences between two event collections."""

    def __init__(self, match_window: timedelta = DEFAULT_MATCH_WINDOW):
        """
        Initialize the detector.

        Args:
            match_window: Maximum start-time distance for two events with the
                same title (and no shared id) to count as one occurrence
        """
        self.match_window = match_window

    def diff(
        self,
        previous: Sequence[Event],
        current: Sequence[Event]
    ) -> List[ChangeRecord]:
        """
        Compare two event collections.

        Args:
            previous: Events from the last known snapshot
            current: Events from the new snapshot

        Returns:
            REMOVED records in previous order, then ADDED records in current
            order, then MOVED/MODIFIED records in current order
        """
        pairs = self._match(previous, current)
        claimed = set(pairs.values())

        removed = [
            ChangeRecord(kind=ChangeKind.REMOVED, previous=event)
            for index, event in enumerate(previous)
            if index not in claimed
        ]
        added = [
            ChangeRecord(kind=ChangeKind.ADDED, current=event)
            for index, event in enumerate(current)
            if index not in pairs
        ]

        updated = []
        for index, event in enumerate(current):
            if index not in pairs:
                continue
            old_event = previous[pairs[index]]
            kind = self._classify(old_event, event)
            if kind is not None:
                updated.append(
                    ChangeRecord(kind=kind, current=event, previous=old_event)
                )

        logger.info(
            f"Detected {len(removed)} removed, {len(added)} added, "
            f"{len(updated)} moved/modified events"
        )
        return removed + added + updated

    def is_same_occurrence(self, first: Event, second: Event) -> bool:
        """Whether two events describe the same occurrence."""
        if first.id and first.id == second.id:
            return True
        return (
            first.title == second.title and
            abs(first.start - second.start) < self.match_window
        )

    def _match(
        self,
        previous: Sequence[Event],
        current: Sequence[Event]
    ) -> Dict[int, int]:
        """
        Pair current events with previous ones, each used at most once.

        Id matches are made first; remaining events fall back to the
        title + start window rule, taking the first unclaimed candidate.

        Returns:
            Mapping of current index to previous index
        """
        pairs: Dict[int, int] = {}
        claimed = set()

        previous_by_id: Dict[str, List[int]] = {}
        for index, event in enumerate(previous):
            if event.id:
                previous_by_id.setdefault(event.id, []).append(index)

        for index, event in enumerate(current):
            if not event.id:
                continue
            candidates = previous_by_id.get(event.id, [])
            match = next((i for i in candidates if i not in claimed), None)
            if match is not None:
                pairs[index] = match
                claimed.add(match)

        for index, event in enumerate(current):
            if index in pairs:
                continue
            match = self._find_by_title(previous, event, claimed)
            if match is not None:
                pairs[index] = match
                claimed.add(match)

        return pairs

    def _find_by_title(
        self,
        previous: Sequence[Event],
        event: Event,
        claimed: set
    ) -> Optional[int]:
        for index, candidate in enumerate(previous):
            if index in claimed:
                continue
            if (
                candidate.title == event.title and
                abs(candidate.start - event.start) < self.match_window
            ):
                return index
        return None

    def _classify(self, old: Event, new: Event) -> Optional[ChangeKind]:
        if (
            old.start != new.start or
            old.end != new.end or
            old.location != new.location
        ):
            return ChangeKind.MOVED
        if old.title != new.title or old.description != new.description:
            return ChangeKind.MODIFIED
        return None
