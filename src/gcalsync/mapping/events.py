"""iCalendar Event <-> remote (Google Calendar v3) event mapping.

Rules
- The local UID travels in the private extended property `gcalsync-uid`;
  priority, URL and categories (not starting with "http") travel in their own
  extended properties since the remote model has no field for them.
- Start defaults to the creation time (else now), end defaults to start; a
  start after the end is swapped.
- Status: CANCELLED -> cancelled, CONFIRMED -> confirmed, anything else
  tentative. CLASS PUBLIC/PRIVATE -> visibility public/private, else default.
  TRANSP OPAQUE -> opaque, anything else (or absent) transparent.
- Recurrence: the RRULE line plus one EXDATE line per exception date (UTC).
  An overridden occurrence is bound to its parent series through
  recurringEventId + originalStartTime.
- Reminders: one override per configured method. Lead time snapped to what
  the remote reminder UI offers: up to 45 minutes a multiple of 5 (35/40 ->
  45, 0 -> 5), else 1-3 hours, else 1, 2 or 7 days. An alarm without relative
  trigger (minutes 0) clears the remote reminders.

Public API
- remote_reminder_minutes(minutes) -> int
- event_to_remote(event, *, timezones, alarm_methods, parent=None, now=None) -> RemoteEvent
- remote_from_google(item) -> RemoteEvent
- remote_to_google(remote, *, send_invitations=False) -> dict
- insert_extensions(body, entries) -> bytes
"""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from datetime import timedelta
from typing import Any

from icalendar import Alarm

from ..ical.events import Event
from ..ical.parser import decode_body, parse_calendar, serialize
from ..remote import EXT_CATEGORIES, EXT_PRIORITY, EXT_UID, EXT_URL, Reminder, RemoteEvent
from ..utils.timezones import (
    from_epoch_millis,
    google_datetime_payload,
    parse_google_datetime,
    parse_rfc3339_millis,
    to_epoch_millis,
)

__all__ = [
    "event_to_remote",
    "insert_extensions",
    "remote_from_google",
    "remote_reminder_minutes",
    "remote_to_google",
]

_STATUS = {"CANCELLED": "cancelled", "CONFIRMED": "confirmed"}
_VISIBILITY = {"PUBLIC": "public", "PRIVATE": "private"}


def remote_reminder_minutes(minutes: int) -> int:
    """Snap an alarm lead time to a value the remote reminder UI accepts."""
    if minutes <= 45:
        mins = minutes // 5 * 5
        if mins in (35, 40):
            return 45
        return mins or 5
    hours = minutes // 60 or 1
    if hours <= 3:
        return hours * 60
    days = hours // 24 or 1
    if days > 2 and days != 7:
        days = 7
    return days * 1440


def _reminder_duration(minutes: int) -> timedelta:
    return timedelta(minutes=remote_reminder_minutes(minutes))


def _utc_stamp(millis: int, all_day: bool) -> str:
    value = from_epoch_millis(millis)
    if all_day:
        return value.strftime("%Y%m%d")
    return value.strftime("%Y%m%dT%H%M%SZ")


def _recurrence_lines(event: Event) -> tuple[str, ...]:
    if not event.rrule:
        return ()
    lines = [f"RRULE:{event.rrule}"]
    for millis in event.exdates:
        if event.all_day:
            lines.append(f"EXDATE;VALUE=DATE:{_utc_stamp(millis, True)}")
        else:
            lines.append(f"EXDATE:{_utc_stamp(millis, False)}")
    return tuple(lines)


def _extended(event: Event) -> dict[str, str]:
    extended: dict[str, str] = {}
    if event.uid:
        extended[EXT_UID] = event.uid
    if event.priority:
        extended[EXT_PRIORITY] = event.priority
    if event.url:
        extended[EXT_URL] = event.url
    if event.categories and not event.categories.startswith("http"):
        extended[EXT_CATEGORIES] = event.categories
    return extended


def _reminders(event: Event, methods: Sequence[str]) -> tuple[tuple[Reminder, ...], bool]:
    """(reminders, clear flag) for the event's alarm."""
    minutes = event.alarm_minutes
    if minutes is None or not methods:
        return (), False
    if minutes == 0:
        return (), True
    lead = remote_reminder_minutes(minutes)
    return tuple(Reminder(method=m, minutes=lead) for m in methods), False


def event_to_remote(
    event: Event,
    *,
    timezones: Mapping[str, str] | None = None,
    alarm_methods: Sequence[str] = ("popup",),
    parent: RemoteEvent | None = None,
    now: int | None = None,
) -> RemoteEvent:
    """Remote representation of a local event, ready for insert or update."""
    start = event.start
    if start is None:
        start = event.created if event.created is not None else (now or int(time.time() * 1000))
    end = event.end if event.end is not None else start
    if start > end:
        start, end = end, start

    time_zone = None
    if event.tzid:
        time_zone = (timezones or {}).get(event.tzid, event.tzid)

    reminders, clear = _reminders(event, alarm_methods)

    recurring_event_id = None
    original_start = None
    if parent is not None and event.recurrence_id is not None:
        recurring_event_id = parent.id
        original_start = event.recurrence_id

    return RemoteEvent(
        title=event.title,
        description=event.description,
        location=event.location,
        start=start,
        end=end,
        all_day=event.all_day,
        time_zone=time_zone,
        status=_STATUS.get(event.status or "", "tentative") if event.status else None,
        visibility=_VISIBILITY.get(event.classification or "", "default"),
        transparency="opaque" if event.transparency == "OPAQUE" else "transparent",
        attendees=event.attendees,
        reminders=reminders,
        clear_reminders=clear,
        recurrence=_recurrence_lines(event),
        recurring_event_id=recurring_event_id,
        original_start=original_start,
        created=event.created,
        extended=_extended(event),
    )


# ----------------------------
# Google Calendar v3 payloads
# ----------------------------


def _payload_millis(payload: Mapping[str, Any] | None) -> tuple[int | None, bool, str | None]:
    if not payload:
        return None, False, None
    value, all_day, tzid = parse_google_datetime(payload)
    return to_epoch_millis(value), all_day, payload.get("timeZone") or (None if all_day else tzid)


def remote_from_google(item: Mapping[str, Any]) -> RemoteEvent:
    start, all_day, time_zone = _payload_millis(item.get("start"))
    end, _end_all_day, _ = _payload_millis(item.get("end"))
    original_start, _, _ = _payload_millis(item.get("originalStartTime"))

    reminders = tuple(
        Reminder(method=str(r.get("method")), minutes=int(r.get("minutes") or 0))
        for r in ((item.get("reminders") or {}).get("overrides") or [])
    )
    attendees = tuple(
        sorted(
            (str(a["email"]) for a in item.get("attendees") or [] if a.get("email")),
            key=str.lower,
        )
    )
    extended = dict(((item.get("extendedProperties") or {}).get("private")) or {})

    return RemoteEvent(
        id=item.get("id"),
        uid=item.get("iCalUID"),
        title=item.get("summary"),
        description=item.get("description"),
        location=item.get("location"),
        start=start,
        end=end,
        all_day=all_day,
        time_zone=time_zone,
        status=item.get("status"),
        visibility=item.get("visibility"),
        transparency=item.get("transparency"),
        attendees=attendees,
        reminders=reminders,
        recurrence=tuple(item.get("recurrence") or ()),
        recurring_event_id=item.get("recurringEventId"),
        original_start=original_start,
        created=parse_rfc3339_millis(item.get("created")),
        updated=parse_rfc3339_millis(item.get("updated")),
        extended={str(k): str(v) for k, v in extended.items()},
        can_edit=not (item.get("locked") or item.get("privateCopy")),
    )


def remote_to_google(remote: RemoteEvent, *, send_invitations: bool = False) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if remote.id:
        body["id"] = remote.id
    if remote.uid:
        body["iCalUID"] = remote.uid
    for key, value in (
        ("summary", remote.title),
        ("description", remote.description),
        ("location", remote.location),
        ("status", remote.status),
        ("visibility", remote.visibility),
        ("transparency", remote.transparency),
    ):
        if value is not None:
            body[key] = value

    if remote.start is not None:
        body["start"] = google_datetime_payload(remote.start, remote.all_day, remote.time_zone)
    if remote.end is not None:
        body["end"] = google_datetime_payload(remote.end, remote.all_day, remote.time_zone)
    if remote.original_start is not None:
        body["originalStartTime"] = google_datetime_payload(
            remote.original_start, remote.all_day, remote.time_zone
        )
    if remote.recurring_event_id:
        body["recurringEventId"] = remote.recurring_event_id
    if remote.recurrence:
        body["recurrence"] = list(remote.recurrence)

    if remote.attendees:
        # Without invitations guests are added silently and have not answered yet
        status = "needsAction" if send_invitations else "tentative"
        body["attendees"] = [{"email": e, "responseStatus": status} for e in remote.attendees]

    if remote.clear_reminders:
        body["reminders"] = {"useDefault": False, "overrides": []}
    elif remote.reminders:
        body["reminders"] = {
            "useDefault": False,
            "overrides": [{"method": r.method, "minutes": r.minutes} for r in remote.reminders],
        }

    if remote.extended:
        body["extendedProperties"] = {"private": dict(remote.extended)}
    return body


# ----------------------------
# Extended synchronization
# ----------------------------


def insert_extensions(body: bytes, entries: Mapping[str, RemoteEvent]) -> bytes:
    """Re-insert categories, priority, URL and alarm into a downloaded remote body.

    `entries` maps the body's event UIDs (suffixed for overridden occurrences)
    to the remote entries bound to them. Existing CATEGORIES/PRIORITY/URL lines
    are replaced; an alarm is only added when the body carries none at all.
    """
    if not entries:
        return body
    calendar = parse_calendar(body)
    has_alarms = "BEGIN:VALARM" in decode_body(body)

    for component in calendar.walk("VEVENT"):
        uid = component.get("UID")
        if uid is None:
            continue
        uid = str(uid)
        rid = component.get("RECURRENCE-ID")
        if rid is not None:
            millis = to_epoch_millis(rid.dt)
            uid = f"{uid}!{millis}"
        entry = entries.get(uid)
        if entry is None:
            continue

        for name in ("CATEGORIES", "PRIORITY", "URL"):
            component.pop(name, None)
        if entry.extended.get(EXT_CATEGORIES):
            component.add("categories", entry.extended[EXT_CATEGORIES].split(","))
        priority = entry.extended.get(EXT_PRIORITY, "")
        if priority.isdigit():
            component.add("priority", int(priority))
        if entry.extended.get(EXT_URL):
            component.add("url", entry.extended[EXT_URL])

        if entry.reminders and not has_alarms:
            alarm = Alarm()
            alarm.add("action", "AUDIO")
            alarm.add("trigger", -_reminder_duration(entry.reminders[0].minutes))
            component.add_component(alarm)

    return serialize(calendar)
