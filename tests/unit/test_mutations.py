from __future__ import annotations

import pytest

from gcalsync.cache import CalendarSnapshot
from gcalsync.ical.events import Event
from gcalsync.ical.parser import parse_events
from gcalsync.remote import (
    EXT_UID,
    Reminder,
    RemoteApiError,
    RemoteUnavailableError,
    RetryPolicy,
)
from gcalsync.sync.matcher import EventMatcher
from gcalsync.sync.mutations import MutationStats, RemoteMutator

T0 = 1704880800000
HOUR = 3600 * 1000
WEEK = 7 * 24 * HOUR
URL = "https://calendar.google.com/calendar/ical/me/private-abc/basic.ics"


@pytest.fixture
def mutator(remote, no_wait_retry: RetryPolicy) -> RemoteMutator:
    return RemoteMutator(remote, EventMatcher(remote, retry=no_wait_retry), retry=no_wait_retry)


def _snapshot(remote, body: bytes | None = None) -> CalendarSnapshot:
    return CalendarSnapshot(url=URL, body=body, previous_body=remote.export())


def _renamed(title: str = "Renamed", **fields: object) -> Event:
    return Event(uid="r1@google.com", title=title, start=T0, end=T0 + HOUR, **fields)  # type: ignore[arg-type]


class TestUpdate:
    def test_plain_update(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [_renamed()], {}, stats)

        assert stats.updated == 1
        assert remote.events["r1"].title == "Renamed"
        assert remote.events["r1"].local_uid == "r1@google.com"

    def test_read_only_rejection_is_not_retried(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        remote.failures["update"] = [RemoteApiError("The event is Read-Only", 403)]
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [_renamed()], {}, stats)

        assert stats.skipped == 1 and stats.updated == 0
        assert remote.calls_of("update") == ["r1"]

    def test_other_rejection_is_retried_once(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        remote.failures["update"] = [RemoteApiError("Backend error", 400)]
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [_renamed()], {}, stats)

        assert stats.updated == 1
        assert remote.calls_of("update") == ["r1", "r1"]

    def test_second_rejection_counts_as_error(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        remote.failures["update"] = [RemoteApiError("Backend error"), RemoteApiError("Backend error")]
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [_renamed()], {}, stats)

        assert stats.errors == 1 and stats.updated == 0
        assert remote.events["r1"].title == "Dentist"

    def test_too_many_reminders_are_stripped(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        remote.failures["update"] = [RemoteApiError("Too many reminders", 400)]
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [_renamed(alarm_minutes=15)], {}, stats)

        assert stats.updated == 1
        assert remote.events["r1"].reminders == ()

    def test_missing_alarm_keeps_remote_reminders(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR, reminders=(Reminder("popup", 10),))
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [_renamed()], {}, stats)

        assert remote.events["r1"].reminders == (Reminder("popup", 10),)

    def test_uneditable_entry_is_skipped(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR, can_edit=False)
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [_renamed()], {}, stats)

        assert stats.skipped == 1
        assert remote.calls_of("update") == []

    def test_unavailable_remote_is_abandoned(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        remote.failures["update"] = [RemoteUnavailableError("503") for _ in range(3)]
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [_renamed()], {}, stats)

        assert stats.errors == 1
        assert len(remote.calls_of("update")) == 3

    def test_update_without_counterpart_inserts(self, remote, mutator: RemoteMutator) -> None:
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [Event(uid="new-1", title="Gym", start=T0)], {}, stats)

        assert stats.inserted == 1
        assert remote.calls_of("insert") == ["Gym"]

    def test_recurrence_change_recreates_entry(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Standup", start=T0, end=T0 + HOUR)
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [_renamed("Standup", rrule="FREQ=DAILY")], {}, stats)

        assert stats.updated == 1
        assert remote.calls_of("delete") == ["r1"]
        (entry,) = remote.events.values()
        assert entry.recurrence == ("RRULE:FREQ=DAILY",)
        assert entry.id != "r1"

    def test_series_without_instances_is_removed(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Weekly", start=T0, end=T0 + HOUR, recurrence=("RRULE:FREQ=WEEKLY",))
        remote.add(
            id="r2",
            uid="r1@google.com",
            title="Weekly (moved)",
            start=T0 + WEEK + HOUR,
            end=T0 + WEEK + 2 * HOUR,
            recurring_event_id="r1",
            original_start=T0 + WEEK,
        )
        remote.failures["update"] = [RemoteApiError("Recurring event has no instances", 400)]
        stats = MutationStats()

        mutator.update_events(_snapshot(remote), [_renamed("Weekly", rrule="FREQ=WEEKLY;COUNT=0")], {}, stats)

        assert stats.skipped == 1
        assert remote.calls_of("delete") == ["r2", "r1"]
        assert remote.events == {}


class TestInsert:
    def test_insert_carries_local_uid(self, remote, mutator: RemoteMutator) -> None:
        stats = MutationStats()

        mutator.insert_events(_snapshot(remote), [Event(uid="local-1", title="Gym", start=T0)], {}, stats)

        (entry,) = remote.events.values()
        assert stats.inserted == 1
        assert entry.local_uid == "local-1"
        assert entry.end == T0

    def test_read_only_calendar(self, remote, mutator: RemoteMutator) -> None:
        remote.failures["insert"] = [RemoteApiError("This calendar is read-only", 403)]
        stats = MutationStats()

        mutator.insert_events(_snapshot(remote), [Event(uid="local-1", title="Gym", start=T0)], {}, stats)

        assert stats.skipped == 1 and stats.inserted == 0
        assert remote.calls_of("insert") == ["Gym"]

    def test_instance_binds_to_existing_series(self, remote, mutator: RemoteMutator) -> None:
        remote.add(
            id="r1",
            title="Weekly",
            start=T0,
            end=T0 + HOUR,
            recurrence=("RRULE:FREQ=WEEKLY",),
            extended={EXT_UID: "local-s"},
        )
        instance = Event(
            uid=f"local-s!{T0 + WEEK}",
            base_uid="local-s",
            recurrence_id=T0 + WEEK,
            title="Weekly (moved)",
            start=T0 + WEEK + HOUR,
            end=T0 + WEEK + 2 * HOUR,
        )
        stats = MutationStats()

        mutator.insert_events(_snapshot(remote), [instance], {}, stats)

        inserted = [e for e in remote.events.values() if e.id != "r1"]
        assert stats.inserted == 1
        assert inserted[0].recurring_event_id == "r1"
        assert inserted[0].original_start == T0 + WEEK
        assert inserted[0].uid == "r1@google.com"

    def test_instance_binds_to_series_created_in_same_batch(self, remote, mutator: RemoteMutator, ics) -> None:
        body = ics.calendar(
            ics.event("local-s", "Weekly", rrule="FREQ=WEEKLY"),
            ics.event("local-s", "Weekly (moved)", T0 + WEEK + HOUR, recurrence_id=T0 + WEEK),
        )
        events = parse_events(body).events
        stats = MutationStats()

        mutator.insert_events(_snapshot(remote, body), list(events), {}, stats)

        assert stats.inserted == 2
        series = next(e for e in remote.events.values() if e.is_recurring)
        instance = next(e for e in remote.events.values() if not e.is_recurring)
        assert instance.recurring_event_id == series.id


class TestRemove:
    def test_remove_counts_outcomes(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="Gone", start=T0)
        remote.add(id="r2", title="Locked", start=T0, can_edit=False)
        snapshot = _snapshot(remote)
        stats = MutationStats()

        mutator.remove_events(
            snapshot,
            [Event(uid="r1@google.com"), Event(uid="r2@google.com"), Event(uid="nowhere")],
            stats,
        )

        assert stats.deleted == 1
        assert stats.skipped == 2
        assert list(remote.events) == ["r2"]

    def test_unexpected_error_does_not_abort_batch(self, remote, mutator: RemoteMutator) -> None:
        remote.add(id="r1", title="First", start=T0)
        remote.add(id="r2", title="Second", start=T0 + HOUR)
        remote.failures["delete"] = [KeyError("boom")]
        stats = MutationStats()

        mutator.remove_events(_snapshot(remote), [Event(uid="r1@google.com"), Event(uid="r2@google.com")], stats)

        assert stats.errors == 1
        assert stats.deleted == 1
        assert list(remote.events) == ["r1"]
