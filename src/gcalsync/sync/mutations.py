"""Remote insert/update/delete with per-event failure isolation.

Responsibilities
- Turn classified local events into remote mutations (`event_to_remote`),
  resolving each event's remote counterpart through the `EventMatcher`.
- Apply the failure policy to every call:
  - transient errors are retried with a fixed interval (`RetryPolicy`);
    once exhausted the event is abandoned and logged;
  - API rejections mentioning "read-only" or "no instances" (insert/delete),
    "read-only" or "cannot override" (update) are not retried;
  - an update rejected with "no instances" removes the broken series together
    with its overridden occurrences;
  - "many reminder" strips the reminders before the single retry;
  - any other rejection is retried once after the retry interval.
- Keep counters of what happened (`MutationStats`).

Notes
- A failing event never aborts the batch; unexpected errors are logged with
  the traceback and counted.
- Identity maps are invalidated after every batch that creates or removes
  remote entries.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from ..cache import CalendarSnapshot
from ..ical.events import Event
from ..ical.parser import CalendarParseError, parse_events
from ..mapping.events import event_to_remote
from ..remote import (
    RemoteApiError,
    RemoteCalendarClient,
    RemoteError,
    RemoteEvent,
    RemoteNotFoundError,
    RemoteUnavailableError,
    RetryPolicy,
    SyncInterrupted,
    call_with_retries,
)
from .compare import AlarmRegistry
from .matcher import EventMatcher

__all__ = ["MutationStats", "RemoteMutator"]

log = logging.getLogger(__name__)

NO_INSTANCES = "no instances"
READ_ONLY = "read-only"
CANNOT_OVERRIDE = "cannot override"
MANY_REMINDERS = "many reminder"

_SKIP_INSERT = (NO_INSTANCES, READ_ONLY)
_SKIP_UPDATE = (CANNOT_OVERRIDE, READ_ONLY)
_SKIP_DELETE = (NO_INSTANCES, READ_ONLY)


@dataclass
class MutationStats:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def changes(self) -> int:
        return self.inserted + self.updated + self.deleted


class RemoteMutator:
    def __init__(
        self,
        client: RemoteCalendarClient,
        matcher: EventMatcher,
        *,
        retry: RetryPolicy | None = None,
        alarm_methods: Sequence[str] = ("popup",),
        extended_sync: bool = False,
        alarm_registry: AlarmRegistry | None = None,
    ) -> None:
        self.client = client
        self.matcher = matcher
        self.retry = retry or RetryPolicy()
        self.alarm_methods = tuple(alarm_methods)
        self.extended_sync = extended_sync
        self.alarm_registry = alarm_registry

    # ----------------------------
    # Failure policy
    # ----------------------------

    def _attempt(
        self,
        what: str,
        event: Event,
        action: Callable[[RemoteEvent], Any],
        remote: RemoteEvent,
        skip_markers: tuple[str, ...],
        stats: MutationStats,
        on_no_instances: Callable[[], None] | None = None,
    ) -> bool:
        """Run `action(remote)` under the retry policy; True when it went through."""
        title = event.display_title()
        try:
            call_with_retries(lambda: action(remote), self.retry, what=what)
            return True
        except RemoteNotFoundError:
            log.info("%s-missing title=%s uid=%s", what, title, event.uid)
            stats.skipped += 1
            return False
        except RemoteUnavailableError as exc:
            log.warning("%s-abandoned title=%s error=%s", what, title, exc)
            stats.errors += 1
            return False
        except RemoteApiError as exc:
            message = exc.message.lower()
            if any(marker in message for marker in skip_markers):
                log.debug("%s-skipped title=%s reason=%s", what, title, exc.message)
                stats.skipped += 1
                return False
            if on_no_instances is not None and NO_INSTANCES in message:
                on_no_instances()
                stats.skipped += 1
                return False
            if MANY_REMINDERS in message:
                log.warning("too-many-reminders title=%s", title)
                remote = replace(remote, reminders=(), clear_reminders=False)
            failure = exc.message

        self.retry.pause()
        try:
            action(remote)
            return True
        except RemoteError as exc:
            log.warning("%s-failed title=%s error=%s first=%s", what, title, exc, failure)
            stats.errors += 1
            return False

    # ----------------------------
    # Helpers
    # ----------------------------

    def _parent(self, snapshot: CalendarSnapshot, event: Event) -> RemoteEvent | None:
        if event.recurrence_id is None or not event.base_uid:
            return None
        return self.matcher.find_by_uid(snapshot, event.base_uid)

    def _convert(
        self, snapshot: CalendarSnapshot, event: Event, timezones: Mapping[str, str]
    ) -> RemoteEvent:
        return event_to_remote(
            event,
            timezones=timezones,
            alarm_methods=self.alarm_methods,
            parent=self._parent(snapshot, event),
        )

    # ----------------------------
    # Insert
    # ----------------------------

    def insert_events(
        self,
        snapshot: CalendarSnapshot,
        events: Sequence[Event],
        timezones: Mapping[str, str],
        stats: MutationStats,
    ) -> None:
        found_rrule = any(ev.has_recurrence for ev in events)
        for event in events:
            try:
                self._insert(snapshot, event, timezones, found_rrule, stats)
            except SyncInterrupted:
                raise
            except Exception:
                stats.errors += 1
                log.exception("event-insert-error", extra={"uid": event.uid})
        self.matcher.invalidate(snapshot.url)

    def _insert(
        self,
        snapshot: CalendarSnapshot,
        event: Event,
        timezones: Mapping[str, str],
        found_rrule: bool,
        stats: MutationStats,
    ) -> None:
        target = snapshot
        pristine = found_rrule and event.recurrence_id is not None
        if pristine:
            # The series was just created: bind against the local body instead
            self.matcher.invalidate(snapshot.url)
            target = replace(snapshot, previous_body=snapshot.body)

        remote = self._convert(target, event, timezones)
        if remote.clear_reminders:
            remote = replace(remote, clear_reminders=False)

        log.debug("event-insert title=%s uid=%s", event.display_title(), event.uid)
        calendar_id = snapshot.calendar_id
        if self._attempt(
            "remote-insert",
            event,
            lambda r: self.client.insert(calendar_id, r),
            remote,
            _SKIP_INSERT,
            stats,
        ):
            stats.inserted += 1
        if pristine:
            self.matcher.invalidate(snapshot.url)

    # ----------------------------
    # Update
    # ----------------------------

    def update_events(
        self,
        snapshot: CalendarSnapshot,
        events: Sequence[Event],
        timezones: Mapping[str, str],
        stats: MutationStats,
    ) -> None:
        found_rrule: bool | None = None
        for event in events:
            try:
                old = self.matcher.find_remote_event(snapshot, event)
                if old is None:
                    if found_rrule is None:
                        found_rrule = any(ev.has_recurrence for ev in events)
                    self._insert(snapshot, event, timezones, found_rrule, stats)
                    self.matcher.invalidate(snapshot.url)
                    continue
                self._update(snapshot, event, old, timezones, stats)
            except SyncInterrupted:
                raise
            except Exception:
                stats.errors += 1
                log.exception("event-update-error", extra={"uid": event.uid})

    def _reminders_for(
        self, snapshot: CalendarSnapshot, event: Event, old: RemoteEvent, new: RemoteEvent
    ) -> RemoteEvent:
        if new.reminders or new.clear_reminders:
            return new
        if self.alarm_registry is not None and event.uid:
            if self.alarm_registry.pop_cleared(snapshot.url, event.uid):
                return replace(new, clear_reminders=True)
        if not self.extended_sync and old.reminders:
            return replace(new, reminders=old.reminders)
        return new

    def _update(
        self,
        snapshot: CalendarSnapshot,
        event: Event,
        old: RemoteEvent,
        timezones: Mapping[str, str],
        stats: MutationStats,
    ) -> None:
        title = event.display_title()
        if not old.can_edit:
            log.warning("event-read-only title=%s uid=%s", title, event.uid)
            stats.skipped += 1
            return

        new = self._convert(snapshot, event, timezones)
        new = replace(new, id=old.id, uid=old.uid)
        new = self._reminders_for(snapshot, event, old, new)
        calendar_id = snapshot.calendar_id

        if old.is_recurring != new.is_recurring:
            log.debug("event-recreate title=%s uid=%s", title, event.uid)
            self.matcher.invalidate(snapshot.url)
            deleted = False

            def recreate(remote: RemoteEvent) -> RemoteEvent:
                nonlocal deleted
                if not deleted:
                    self.client.delete(calendar_id, old.id or "")
                    deleted = True
                return self.client.insert(calendar_id, replace(remote, id=None, uid=None))

            if self._attempt("remote-recreate", event, recreate, new, _SKIP_INSERT, stats):
                stats.updated += 1
            self.matcher.invalidate(snapshot.url)
            return

        log.debug("event-update title=%s uid=%s", title, event.uid)
        if self._attempt(
            "remote-update",
            event,
            lambda r: self.client.update(calendar_id, r),
            new,
            _SKIP_UPDATE,
            stats,
            on_no_instances=lambda: self._remove_faulty_series(snapshot, event),
        ):
            stats.updated += 1

    def _remove_faulty_series(self, snapshot: CalendarSnapshot, event: Event) -> None:
        try:
            self.remove_recurring_event(snapshot, event)
        except RemoteError as exc:
            log.debug("faulty-series-removal-failed title=%s error=%s", event.display_title(), exc)

    def remove_recurring_event(self, snapshot: CalendarSnapshot, event: Event) -> None:
        """Delete a series and every overridden occurrence listed in the remote body."""
        uid = event.uid
        if not uid:
            return
        self.matcher.invalidate(snapshot.url)
        children: tuple[Event, ...] = ()
        if snapshot.previous_body:
            try:
                children = parse_events(snapshot.previous_body).events
            except CalendarParseError as exc:
                log.warning("series-children-unparsable uid=%s error=%s", uid, exc)

        calendar_id = snapshot.calendar_id
        for child in children:
            if not child.uid or child.uid == uid or not child.uid.startswith(uid):
                continue
            entry = self.matcher.find_remote_event(snapshot, child)
            if entry is not None and entry.id:
                self.retry.pause()
                self.client.delete(calendar_id, entry.id)

        parent = self.matcher.find_remote_event(snapshot, event)
        if parent is not None and parent.id:
            self.retry.pause()
            self.client.delete(calendar_id, parent.id)
        log.info("faulty-series-removed uid=%s", uid)
        self.matcher.invalidate(snapshot.url)

    # ----------------------------
    # Delete
    # ----------------------------

    def remove_events(
        self,
        snapshot: CalendarSnapshot,
        events: Sequence[Event],
        stats: MutationStats,
    ) -> None:
        calendar_id = snapshot.calendar_id
        for event in events:
            try:
                entry = self.matcher.find_remote_event(snapshot, event)
                if entry is None:
                    log.warning("event-not-found-remotely title=%s uid=%s", event.display_title(), event.uid)
                    stats.skipped += 1
                    continue
                if not entry.can_edit:
                    log.warning("event-read-only title=%s uid=%s", event.display_title(), event.uid)
                    stats.skipped += 1
                    continue
                log.debug("event-remove title=%s uid=%s", event.display_title(), event.uid)
                if self._attempt(
                    "remote-delete",
                    event,
                    lambda r: self.client.delete(calendar_id, r.id or ""),
                    entry,
                    _SKIP_DELETE,
                    stats,
                ):
                    stats.deleted += 1
            except SyncInterrupted:
                raise
            except Exception:
                stats.errors += 1
                log.exception("event-remove-error", extra={"uid": event.uid})
        self.matcher.invalidate(snapshot.url)
