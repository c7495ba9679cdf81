"""Timezone and timestamp helpers for iCalendar <-> Google Calendar mapping.

Responsibilities
- Normalize/resolve TZIDs using stdlib zoneinfo (with tzdata fallback).
- Convert iCalendar DATE / DATE-TIME values to epoch milliseconds, the unit the
  comparator, matcher and registry work in.
- Parse Google Calendar event date/datetime payloads and RFC 3339 timestamps.
- Render epoch milliseconds back into Google Calendar payloads.

Google Calendar payloads (examples)
- All-day:
  {"date": "2025-08-23"}
- Timed:
  {"dateTime": "2025-08-23T14:00:00-04:00", "timeZone": "America/New_York"}

Public API
- get_zoneinfo(tzid: str | None) -> ZoneInfo | None
- ensure_tz(dt: datetime, tzid: str | None, default_tz: str = "UTC") -> datetime
- to_epoch_millis(value: date | datetime | None, tzid: str | None = None) -> int | None
- from_epoch_millis(millis: int) -> datetime
- parse_rfc3339_millis(text: str | None) -> int | None
- parse_google_datetime(payload) -> tuple[date | datetime, bool, str]
- google_datetime_payload(millis, all_day, tzid) -> dict[str, str]

Notes
- A DATE (all-day) value maps to midnight UTC of that day so the same calendar
  day compares equal on both sides regardless of the viewer's zone.
- A floating DATE-TIME (no zone) is localized with the supplied TZID, else UTC.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dtparser

__all__ = [
    "ensure_tz",
    "from_epoch_millis",
    "get_zoneinfo",
    "google_datetime_payload",
    "parse_google_datetime",
    "parse_rfc3339_millis",
    "to_epoch_millis",
]

DateOrDateTime = date | datetime

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def get_zoneinfo(tzid: str | None) -> ZoneInfo | None:
    """Resolve a TZID to ZoneInfo, returning None if not found or not provided."""
    if not tzid:
        return None
    try:
        return ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError):
        if tzid.upper() in {"UTC", "Z", "GMT"}:
            return ZoneInfo("UTC")
        return None


def ensure_tz(dt: datetime, tzid: str | None, default_tz: str = "UTC") -> datetime:
    """Ensure a datetime is timezone-aware.

    - If dt already timezone-aware, return as-is.
    - If naive, try tzid; else default_tz; else UTC.
    """
    if dt.tzinfo is not None:
        return dt
    z = get_zoneinfo(tzid) or get_zoneinfo(default_tz) or ZoneInfo("UTC")
    return dt.replace(tzinfo=z)


def to_epoch_millis(value: DateOrDateTime | None, tzid: str | None = None) -> int | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        aware = ensure_tz(value, tzid)
        return int((aware - _EPOCH) / timedelta(milliseconds=1))
    if isinstance(value, date):
        return int((datetime(value.year, value.month, value.day, tzinfo=UTC) - _EPOCH) / timedelta(milliseconds=1))
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


def from_epoch_millis(millis: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=millis)


def parse_rfc3339_millis(text: str | None) -> int | None:
    """Parse an RFC 3339 timestamp ("2024-01-02T03:04:05.000Z") to epoch millis."""
    if not text:
        return None
    try:
        return to_epoch_millis(dtparser.isoparse(text))
    except (ValueError, OverflowError):
        return None


def _parse_all_day(payload: Mapping[str, object]) -> tuple[date, bool, str]:
    s = str(payload.get("date"))
    y, m, d = [int(x) for x in s.split("-")]
    tzid = str(payload.get("timeZone")) if payload.get("timeZone") else "UTC"
    return date(y, m, d), True, tzid


def _parse_timed(payload: Mapping[str, object], default_tz: str) -> tuple[datetime, bool, str]:
    raw = str(payload.get("dateTime"))
    tzid = str(payload.get("timeZone")) if payload.get("timeZone") else None
    dt = dtparser.isoparse(raw)
    dt = ensure_tz(dt, tzid, default_tz=default_tz)
    return dt, False, (tzid or default_tz or "UTC")


def parse_google_datetime(
    payload: Mapping[str, object], default_tz: str = "UTC"
) -> tuple[DateOrDateTime, bool, str]:
    """Parse Google Calendar 'start'/'end' payload to (value, is_all_day, tzid_used).

    - If payload contains "date" => return date object, is_all_day=True (tzid is informational).
    - If payload contains "dateTime" => return timezone-aware datetime, is_all_day=False (tzid used).
    """
    if "date" in payload and payload.get("date") is not None:
        return _parse_all_day(payload)
    if "dateTime" in payload and payload.get("dateTime") is not None:
        return _parse_timed(payload, default_tz=default_tz)
    raise ValueError("Google datetime payload must contain either 'date' or 'dateTime'.")


def google_datetime_payload(millis: int, all_day: bool, tzid: str | None = None) -> dict[str, str]:
    """Inverse of parse_google_datetime for values held as epoch millis."""
    utc = from_epoch_millis(millis)
    if all_day:
        return {"date": utc.date().isoformat()}
    zone = get_zoneinfo(tzid)
    if zone is None:
        return {"dateTime": utc.isoformat().replace("+00:00", "Z"), "timeZone": "UTC"}
    return {"dateTime": utc.astimezone(zone).isoformat(), "timeZone": tzid or "UTC"}
