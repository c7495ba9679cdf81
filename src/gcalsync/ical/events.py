"""Normalized, comparable view of a VEVENT.

Responsibilities
- Turn an icalendar VEVENT component into an immutable `Event` value holding
  exactly what the comparator, matcher and remote mapping need.
- Derive the identity key: the UID, suffixed with `!<epoch millis>` of the
  RECURRENCE-ID when the component overrides one occurrence of a series.

Normalization rules
- Timestamps are epoch milliseconds (see utils.timezones.to_epoch_millis).
- Attendees: `mailto:` prefix dropped, values without '@' dropped, sorted
  case-insensitively.
- Alarm: minutes before start of the first VALARM, snapped to the closest
  remote-supported lead time; 0 marks a trigger that is not a negative
  duration (absolute or "at start"), None means no alarm at all.
- Categories whose text starts with "http" are treated as absent (feed links
  that some clients store there).
- Exception dates are flattened over every EXDATE property and sorted.

Public API
- Event (frozen dataclass), Event.from_component(component) -> Event
- ALARM_MINUTES, snap_alarm_minutes(minutes) -> int
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from ..utils.timezones import to_epoch_millis

__all__ = ["ALARM_MINUTES", "Event", "snap_alarm_minutes"]

# Lead times accepted by the remote reminder UI
ALARM_MINUTES: tuple[int, ...] = (5, 10, 15, 20, 25, 30, 45, 60, 120, 180, 1440, 2880, 10080)


def snap_alarm_minutes(minutes: int) -> int:
    """Closest allowed lead time; the first one wins on equal distance."""
    if minutes <= 0:
        return minutes
    best = minutes
    best_dif: int | None = None
    for allowed in ALARM_MINUTES:
        dif = abs(allowed - minutes)
        if dif == 0:
            return minutes
        if best_dif is None or dif < best_dif:
            best_dif = dif
            best = allowed
    return best


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _all(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _text(component: Any, name: str) -> str | None:
    value = _first(component.get(name))
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None


def _tzid_of(prop: Any) -> str | None:
    params = getattr(prop, "params", None)
    if params is not None and params.get("TZID"):
        return str(params.get("TZID"))
    dt = getattr(prop, "dt", None)
    if isinstance(dt, datetime) and dt.tzinfo is not None:
        key = getattr(dt.tzinfo, "key", None) or getattr(dt.tzinfo, "zone", None)
        if key:
            return str(key)
    return None


def _millis(prop: Any, tzid: str | None = None) -> int | None:
    prop = _first(prop)
    if prop is None:
        return None
    dt = getattr(prop, "dt", prop)
    if not isinstance(dt, date):
        return None
    return to_epoch_millis(dt, _tzid_of(prop) or tzid)


def _attendees(component: Any) -> tuple[str, ...]:
    emails: list[str] = []
    for raw in _all(component.get("ATTENDEE")):
        value = str(raw).strip()
        if "@" not in value:
            continue
        if value.lower().startswith("mailto:"):
            value = value[7:].strip()
        emails.append(value)
    return tuple(sorted(emails, key=str.lower))


def _alarm_minutes(component: Any) -> int | None:
    alarms = [c for c in getattr(component, "subcomponents", []) if c.name == "VALARM"]
    if not alarms:
        return None
    trigger = alarms[0].get("TRIGGER")
    if trigger is None:
        return None
    value = getattr(trigger, "dt", None)
    if not isinstance(value, timedelta) or value >= timedelta(0):
        return 0
    seconds = int(-value.total_seconds())
    minutes = seconds // 60 + (1 if seconds % 60 else 0)
    return snap_alarm_minutes(minutes)


def _categories(component: Any) -> str | None:
    values: list[str] = []
    for prop in _all(component.get("CATEGORIES")):
        cats = getattr(prop, "cats", None)
        if cats is None:
            values.append(str(prop))
        else:
            values.extend(str(c) for c in cats)
    text = ",".join(v for v in values if v)
    if not text or text.startswith("http"):
        return None
    return text


def _exdates(component: Any, tzid: str | None) -> tuple[int, ...]:
    out: list[int] = []
    for prop in _all(component.get("EXDATE")):
        prop_tz = _tzid_of(prop) or tzid
        for item in getattr(prop, "dts", None) or [prop]:
            millis = _millis(item, prop_tz)
            if millis is not None:
                out.append(millis)
    return tuple(sorted(out))


def _rrule(component: Any) -> str | None:
    prop = _first(component.get("RRULE"))
    if prop is None:
        return None
    raw = prop.to_ical() if hasattr(prop, "to_ical") else prop
    text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
    return text.strip() or None


@dataclass(frozen=True)
class Event:
    uid: str | None
    base_uid: str | None = None
    recurrence_id: int | None = None
    title: str | None = None
    description: str | None = None
    start: int | None = None
    end: int | None = None
    all_day: bool = False
    location: str | None = None
    status: str | None = None
    classification: str | None = None
    transparency: str | None = None
    attendees: tuple[str, ...] = ()
    alarm_minutes: int | None = None
    categories: str | None = None
    priority: str | None = None
    url: str | None = None
    rrule: str | None = None
    exdates: tuple[int, ...] = ()
    tzid: str | None = None
    created: int | None = None
    last_modified: int | None = None

    @property
    def is_instance(self) -> bool:
        """True for a single overridden occurrence of a recurring series."""
        return self.uid is not None and "!" in self.uid

    @property
    def has_recurrence(self) -> bool:
        return self.rrule is not None

    def display_title(self) -> str:
        """Short title for log lines."""
        title = (self.title or "").replace("\r", " ").replace("\n", " ").strip()
        if not title:
            return "No Subject"
        if len(title) > 20:
            return title[:20] + "..."
        return title

    @classmethod
    def from_component(cls, component: Any) -> Event:
        base_uid = _text(component, "UID")
        if base_uid is not None:
            base_uid = base_uid.strip() or None

        start_prop = _first(component.get("DTSTART"))
        tzid = _tzid_of(start_prop) if start_prop is not None else None
        start = _millis(start_prop, tzid)
        all_day = start_prop is not None and not isinstance(start_prop.dt, datetime)

        end = _millis(component.get("DTEND"), tzid)
        if end is None and start is not None:
            duration = _first(component.get("DURATION"))
            if duration is not None and isinstance(getattr(duration, "dt", None), timedelta):
                end = start + int(duration.dt / timedelta(milliseconds=1))

        recurrence_id = _millis(component.get("RECURRENCE-ID"), tzid)
        uid = base_uid
        if uid is not None and recurrence_id is not None:
            uid = f"{uid}!{recurrence_id}"

        status = _text(component, "STATUS")
        classification = _text(component, "CLASS")
        transparency = _text(component, "TRANSP")

        return cls(
            uid=uid,
            base_uid=base_uid,
            recurrence_id=recurrence_id,
            title=_text(component, "SUMMARY"),
            description=_text(component, "DESCRIPTION"),
            start=start,
            end=end,
            all_day=all_day,
            location=_text(component, "LOCATION"),
            status=status.upper() if status else None,
            classification=classification.upper() if classification else None,
            transparency=transparency.upper() if transparency else None,
            attendees=_attendees(component),
            alarm_minutes=_alarm_minutes(component),
            categories=_categories(component),
            priority=_text(component, "PRIORITY"),
            url=_text(component, "URL"),
            rrule=_rrule(component),
            exdates=_exdates(component, tzid),
            tzid=tzid,
            created=_millis(component.get("CREATED")),
            last_modified=_millis(component.get("LAST-MODIFIED")),
        )
