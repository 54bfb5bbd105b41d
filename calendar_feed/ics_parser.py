"""Parser for the line-oriented ICS calendar feed format."""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from timetable.models import Event, generate_event_id

logger = logging.getLogger(__name__)

_LINE_BREAK = re.compile(r'\r?\n')
_ESCAPE = re.compile(r'\\([\\,;nN])')
_ESCAPE_MAP = {'\\': '\\', ',': ',', ';': ';', 'n': '\n', 'N': '\n'}
_TRAILING_OFFSET = re.compile(r'[+-]\d{2}:?\d{2}$')


def decode_feed(raw: bytes) -> str:
    """Decode fetched feed bytes, tolerating a BOM and invalid UTF-8."""
    return raw.decode('utf-8-sig', errors='replace')


def unescape_text(value: str) -> str:
    """
    Undo ICS text escaping.

    Args:
        value: Raw property value

    Returns:
        Value with \\n, \\, \\; and \\\\ sequences resolved
    """
    return _ESCAPE.sub(lambda match: _ESCAPE_MAP[match.group(1)], value)


def parse_datetime(value: str) -> Optional[Tuple[datetime, bool]]:
    """
    Decode a DATE or DATE-TIME property value.

    Date-only and floating values are taken as local time; a trailing Z
    means UTC. Numeric offsets are dropped without being applied.

    Args:
        value: Property value such as 20240115, 20240115T100000Z

    Returns:
        Tuple of (aware datetime, is_date_only) or None if the shape is invalid
    """
    raw = _TRAILING_OFFSET.sub('', value.strip())
    is_utc = raw.endswith('Z')
    if is_utc:
        raw = raw[:-1]

    try:
        if len(raw) == 8 and raw.isdigit():
            return datetime.strptime(raw, '%Y%m%d').astimezone(), True

        if len(raw) >= 15 and raw[:8].isdigit() and raw[8] == 'T' and raw[9:15].isdigit():
            parsed = datetime.strptime(raw[:15], '%Y%m%dT%H%M%S')
            if is_utc:
                return parsed.replace(tzinfo=timezone.utc), False
            return parsed.astimezone(), False
    except (ValueError, OverflowError):
        return None

    return None


@dataclass
class _PendingEvent:
    line_number: int
    uid: str = ''
    title: str = ''
    description: str = ''
    location: str = ''
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    invalid: Dict[str, str] = field(default_factory=dict)


class FeedParser:
    """Parser turning raw feed text into normalized Event records."""

    def parse(self, raw_text: str) -> Tuple[List[Event], List[str]]:
        """
        Parse feed text into events.

        Malformed records are skipped and reported as warnings; this method
        never raises on bad input.

        Args:
            raw_text: Feed text

        Returns:
            Tuple of (events sorted by start time, parse warnings)
        """
        events: List[Event] = []
        warnings: List[str] = []
        pending: Optional[_PendingEvent] = None
        nested_depth = 0

        for line_number, line in self._logical_lines(raw_text):
            marker = line.strip()

            if marker == 'BEGIN:VEVENT':
                if pending is not None:
                    warnings.append(
                        f"Event starting at line {pending.line_number} discarded: "
                        f"new BEGIN:VEVENT at line {line_number} before END:VEVENT"
                    )
                pending = _PendingEvent(line_number=line_number)
                nested_depth = 0
                continue

            if pending is None:
                continue

            if marker == 'END:VEVENT':
                event = self._finish(pending, warnings)
                if event is not None:
                    events.append(event)
                pending = None
                continue

            # Sub-components such as VALARM carry their own DESCRIPTION etc.
            if marker.startswith('BEGIN:'):
                nested_depth += 1
                continue
            if marker.startswith('END:'):
                nested_depth = max(nested_depth - 1, 0)
                continue
            if nested_depth:
                continue

            self._apply_property(pending, line)

        if pending is not None:
            warnings.append(
                f"Event starting at line {pending.line_number} discarded: "
                f"feed ended before END:VEVENT"
            )

        events.sort(key=lambda event: event.start)

        logger.info(
            f"Parsed {len(events)} events with {len(warnings)} warnings"
        )
        return events, warnings

    def _logical_lines(self, raw_text: str) -> Iterator[Tuple[int, str]]:
        """Yield (first physical line number, unfolded line) pairs."""
        if raw_text.startswith('\ufeff'):
            raw_text = raw_text[1:]

        current: Optional[str] = None
        current_number = 0
        for number, physical in enumerate(_LINE_BREAK.split(raw_text), start=1):
            if physical[:1] in (' ', '\t') and current is not None:
                current += physical[1:]
                continue
            if current is not None:
                yield current_number, current
            current = physical
            current_number = number

        if current is not None:
            yield current_number, current

    def _apply_property(self, pending: _PendingEvent, line: str) -> None:
        name_part, separator, value = line.partition(':')
        if not separator:
            return

        name, _, params = name_part.partition(';')
        is_date_param = any(
            param.strip().upper() == 'VALUE=DATE'
            for param in params.split(';')
        ) if params else False

        if name == 'UID':
            pending.uid = value.strip()
        elif name == 'SUMMARY':
            pending.title = unescape_text(value)
        elif name == 'DESCRIPTION':
            pending.description = unescape_text(value)
        elif name == 'LOCATION':
            pending.location = unescape_text(value)
        elif name in ('DTSTART', 'DTEND'):
            decoded = parse_datetime(value)
            if decoded is None:
                logger.debug(f"Unparsable {name} value: {value!r}")
                pending.invalid[name] = f"invalid {name} value {value!r}"
                return
            pending.invalid.pop(name, None)
            moment, date_only = decoded
            if name == 'DTSTART':
                pending.start = moment
                pending.all_day = is_date_param or date_only
            else:
                pending.end = moment

    def _finish(self, pending: _PendingEvent, warnings: List[str]) -> Optional[Event]:
        """
        Validate a completed record.

        Args:
            pending: Record collected between BEGIN and END
            warnings: Warning list to append to when the record is dropped

        Returns:
            Event or None if the record is incomplete
        """
        problems = []
        if not pending.title:
            problems.append('missing SUMMARY')
        for name, value in (('DTSTART', pending.start), ('DTEND', pending.end)):
            if name in pending.invalid:
                problems.append(pending.invalid[name])
            elif value is None:
                problems.append(f"missing {name}")

        if problems or pending.start is None or pending.end is None:
            message = (
                f"Event starting at line {pending.line_number} dropped: "
                f"{', '.join(problems)}"
            )
            logger.warning(message)
            warnings.append(message)
            return None

        return Event(
            id=pending.uid or generate_event_id(pending.title, pending.start),
            title=pending.title,
            description=pending.description,
            location=pending.location,
            start=pending.start,
            end=pending.end,
            all_day=pending.all_day,
        )
