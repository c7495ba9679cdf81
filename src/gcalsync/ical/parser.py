"""iCalendar parsing/serialization adapter built on icalendar.

Responsibilities
- Parse raw calendar bytes, recovering from malformed content by dropping the
  offending lines (blank lines, lines that are not content lines) and
  rewriting `TRIGGER;RELATED=...` alarms some phones emit.
- Produce an `EventCollection` of immutable `Event` values plus the VTIMEZONE
  hints needed when converting events for the remote side.
- Build the synthetic placeholder calendar served when the remote side cannot
  be reached, and detect it again downstream via ERROR_MARKER.
- Cut and re-attach VTODO blocks; the remote calendar does not store to-dos.

Public API
- ERROR_MARKER, CalendarParseError
- parse_calendar(data) -> icalendar.Calendar
- parse_events(data) -> EventCollection
- serialize(calendar) -> bytes
- has_error_marker(body) -> bool
- error_calendar(message, *, network_down=False, now=None) -> bytes
- extract_todo_block(data) -> str | None
- attach_todo_block(body, block) -> bytes
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from icalendar import Calendar
from icalendar import Event as VEvent

from .events import Event

__all__ = [
    "ERROR_MARKER",
    "CalendarParseError",
    "EventCollection",
    "attach_todo_block",
    "decode_body",
    "error_calendar",
    "extract_todo_block",
    "has_error_marker",
    "parse_calendar",
    "parse_events",
    "serialize",
]

log = logging.getLogger(__name__)

ERROR_MARKER = "gcalsync-error"

# The marker sits in PRODID, always within the first lines of the document
_MARKER_SCAN_CHARS = 1024

_CONTENT_LINE_RE = re.compile(r'^[A-Za-z0-9-]+(?:;(?:"[^"]*"|[^";:])*)*:')

_PARSE_ERRORS = (ValueError, IndexError, KeyError)


class CalendarParseError(ValueError):
    """Raised when a calendar body cannot be parsed, even after recovery."""


@dataclass(frozen=True)
class EventCollection:
    events: tuple[Event, ...] = ()
    # TZID -> IANA zone name hint (X-LIC-LOCATION when present)
    timezones: dict[str, str] = field(default_factory=dict)
    todo_count: int = 0

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.events)


def decode_body(data: bytes | str) -> str:
    if isinstance(data, str):
        return data
    return data.decode("utf-8-sig", errors="replace")


def _unfold_lines(text: str) -> list[str]:
    lines: list[str] = []
    for raw in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if lines and raw[:1] in (" ", "\t"):
            lines[-1] += raw[1:]
        else:
            lines.append(raw)
    return lines


def _recover(text: str) -> str:
    out: list[str] = []
    dropped = 0
    for line in _unfold_lines(text):
        if not line.strip():
            continue
        if line.startswith("TRIGGER;RELATED"):
            i = line.find(":")
            out.append("TRIGGER;VALUE=DURATION" + (line[i:] if i != -1 else ":-PT1H"))
            continue
        if not _CONTENT_LINE_RE.match(line):
            dropped += 1
            continue
        out.append(line)
    log.debug("calendar-recovery dropped=%d", dropped)
    return "\r\n".join(out) + "\r\n"


def parse_calendar(data: bytes | str) -> Calendar:
    """Parse calendar bytes; one recovery pass is attempted before giving up."""
    text = decode_body(data)
    try:
        return Calendar.from_ical(text)
    except _PARSE_ERRORS as exc:
        first_error: Exception = exc

    try:
        calendar = Calendar.from_ical(_recover(text))
    except _PARSE_ERRORS as exc:
        raise CalendarParseError(f"Unable to parse calendar: {first_error}") from exc
    log.warning("calendar-recovered error=%s", first_error)
    return calendar


def _collect(calendar: Calendar) -> EventCollection:
    events: list[Event] = []
    for component in calendar.walk("VEVENT"):
        try:
            events.append(Event.from_component(component))
        except (ValueError, TypeError, AttributeError) as exc:
            log.warning("event-skipped uid=%s error=%s", component.get("UID"), exc)

    timezones: dict[str, str] = {}
    for tz in calendar.walk("VTIMEZONE"):
        tzid = tz.get("TZID")
        if not tzid:
            continue
        location = tz.get("X-LIC-LOCATION")
        timezones[str(tzid)] = str(location or tzid)

    return EventCollection(
        events=tuple(events),
        timezones=timezones,
        todo_count=len(calendar.walk("VTODO")),
    )


def parse_events(data: bytes | str) -> EventCollection:
    return _collect(parse_calendar(data))


def serialize(calendar: Calendar) -> bytes:
    return calendar.to_ical()


def has_error_marker(body: bytes | str | None) -> bool:
    if not body:
        return False
    head = body[:_MARKER_SCAN_CHARS]
    if isinstance(head, bytes):
        head = head.decode("ascii", errors="replace")
    return ERROR_MARKER in head


def error_calendar(
    message: str | None,
    *,
    network_down: bool = False,
    now: datetime | None = None,
) -> bytes:
    """Single-event placeholder calendar carrying ERROR_MARKER."""
    if network_down:
        title = "NETWORK DOWN"
        content = (
            "Service temporarily unavailable!\n"
            "Please do not modify this calendar! Try clicking on the Reload or "
            "Refresh button. If this doesn't work, try again later."
        )
    else:
        title = "UNAVAILABLE"
        content = "Service unavailable!\nPlease do not modify this calendar!"
    if message:
        content = f"{content}\n[cause: {message}]"

    start = (now or datetime.now(tz=UTC)).replace(microsecond=0)

    calendar = Calendar()
    calendar.add("prodid", ERROR_MARKER)
    calendar.add("version", "2.0")
    calendar.add("calscale", "GREGORIAN")

    event = VEvent()
    event.add("uid", ERROR_MARKER)
    event.add("summary", title)
    event.add("description", content)
    event.add("dtstart", start)
    event.add("dtend", start + timedelta(minutes=45))
    event.add("dtstamp", start)
    calendar.add_component(event)
    return calendar.to_ical()


def extract_todo_block(data: bytes | str) -> str | None:
    """Serialized VTODO components of a calendar body, or None without to-dos."""
    text = decode_body(data)
    if "BEGIN:VTODO" not in text:
        return None
    calendar = parse_calendar(text)
    blocks = [todo.to_ical().decode("utf-8") for todo in calendar.walk("VTODO")]
    return "".join(blocks) or None


def attach_todo_block(body: bytes, block: str | None) -> bytes:
    """Insert a VTODO block in front of the closing END:VCALENDAR line."""
    if not block:
        return body
    text = decode_body(body)
    idx = text.rfind("END:VCALENDAR")
    if idx == -1:
        return body
    if not block.endswith("\n"):
        block += "\r\n"
    return (text[:idx] + block + text[idx:]).encode("utf-8")
