"""Structural event comparison.

Responsibilities
- `EventComparator.is_equivalent(old, new, extended)` decides whether `new`
  is unchanged relative to `old`. Fields are compared in a fixed order and the
  first mismatch wins:
    title, description, start, end, location, recurrence instances,
    exception dates
  and, in extended mode only:
    attendees, status, classification, transparency (each of these three only
    when `new` carries a value), alarm lead time, categories, priority, URL
- `AlarmRegistry` remembers the last alarm seen per (calendar URL, UID). The
  remote iCalendar export does not carry reminders, so without this memory a
  locally removed alarm would never be noticed. When a removal is detected
  the registry records a "clear reminders" mark the mutation layer consumes.

Notes
- Strings are compared after line-break normalization; empty equals absent.
- Categories, priority and URL are only stored on the remote side when
  extended synchronization is on; the engine builds its comparator with
  `compare_extensions` following that setting so unmatched fields do not
  trigger an update on every cycle.
"""

from __future__ import annotations

import logging

from ..ical.events import Event
from ..utils.hashing import texts_equal
from .recurrence import RecurrenceNormalizer

__all__ = ["AlarmRegistry", "EventComparator"]

log = logging.getLogger(__name__)


class AlarmRegistry:
    def __init__(self, max_entries: int = 100) -> None:
        self.max_entries = max_entries
        self._alarms: dict[tuple[str, str], int] = {}
        self._cleared: set[tuple[str, str]] = set()

    def __len__(self) -> int:
        return len(self._alarms)

    def get(self, url: str, uid: str) -> int | None:
        return self._alarms.get((url, uid))

    def put(self, url: str, uid: str, minutes: int) -> None:
        if len(self._alarms) > self.max_entries:
            self._alarms.clear()
        self._alarms[(url, uid)] = minutes

    def remove(self, url: str, uid: str) -> None:
        self._alarms.pop((url, uid), None)

    def mark_cleared(self, url: str, uid: str) -> None:
        if len(self._cleared) > self.max_entries:
            self._cleared.clear()
        self._cleared.add((url, uid))

    def is_cleared(self, url: str, uid: str) -> bool:
        return (url, uid) in self._cleared

    def pop_cleared(self, url: str, uid: str) -> bool:
        """Consume the clear-reminders mark of an event."""
        key = (url, uid)
        if key in self._cleared:
            self._cleared.discard(key)
            return True
        return False

    def clear(self) -> None:
        self._alarms.clear()
        self._cleared.clear()


class EventComparator:
    def __init__(
        self,
        normalizer: RecurrenceNormalizer | None = None,
        alarm_registry: AlarmRegistry | None = None,
        *,
        compare_extensions: bool = True,
    ) -> None:
        self.normalizer = normalizer or RecurrenceNormalizer()
        self.alarm_registry = alarm_registry
        self.compare_extensions = compare_extensions

    def _recurrence(self, event: Event) -> tuple[str, ...] | None:
        if event.rrule is None:
            return None
        if event.start is None:
            return (event.rrule,)
        return self.normalizer.expand(event.start, event.rrule)

    def is_equivalent(
        self,
        old: Event,
        new: Event,
        extended: bool = False,
        calendar_url: str | None = None,
    ) -> bool:
        if not texts_equal(old.title, new.title):
            return False
        if not texts_equal(old.description, new.description):
            return False
        if old.start != new.start:
            return False
        if old.end != new.end:
            return False
        if not texts_equal(old.location, new.location):
            return False
        if self._recurrence(old) != self._recurrence(new):
            return False
        if RecurrenceNormalizer.exception_key(old.exdates) != RecurrenceNormalizer.exception_key(
            new.exdates
        ):
            return False

        if not extended:
            return True

        if old.attendees != new.attendees:
            return False
        if new.status is not None and not texts_equal(old.status, new.status):
            return False
        if new.classification is not None and not texts_equal(
            old.classification, new.classification
        ):
            return False
        if new.transparency is not None and not texts_equal(old.transparency, new.transparency):
            return False
        if not self._alarms_equal(old, new, calendar_url or ""):
            return False

        if self.compare_extensions:
            if not texts_equal(old.categories, new.categories):
                return False
            if not texts_equal(old.priority, new.priority):
                return False
            if not texts_equal(old.url, new.url):
                return False
        return True

    def _alarms_equal(self, old: Event, new: Event, url: str) -> bool:
        if not old.uid:
            return True
        registry = self.alarm_registry
        old_minutes = old.alarm_minutes
        new_minutes = new.alarm_minutes
        if old_minutes is None and registry is not None:
            old_minutes = registry.get(url, old.uid)

        if new_minutes is None:
            if registry is not None:
                registry.remove(url, old.uid)
            if old_minutes is not None:
                if registry is not None and new.uid:
                    registry.mark_cleared(url, new.uid)
                log.debug("alarm-removed uid=%s", new.uid)
                return False
            return True

        if old_minutes != new_minutes:
            if registry is not None:
                registry.put(url, old.uid, new_minutes)
            return False
        return True
