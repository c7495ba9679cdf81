from __future__ import annotations

import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest

from gcalsync.cache import CalendarSnapshot
from gcalsync.ical.parser import error_calendar, parse_events
from gcalsync.remote import EXT_PRIORITY, EXT_UID, RemoteUnavailableError, RetryPolicy
from gcalsync.state import OfflineEventRegistry
from gcalsync.sync.synchronizer import Synchronizer

T0 = 1704880800000
HOUR = 3600 * 1000
URL = "https://calendar.google.com/calendar/ical/me/private-abc/basic.ics"


@pytest.fixture
def registry(tmp_path: Path) -> OfflineEventRegistry:
    return OfflineEventRegistry(tmp_path / "event-registry.txt")


@pytest.fixture
def sync(remote, registry: OfflineEventRegistry, no_wait_retry: RetryPolicy) -> Synchronizer:
    return Synchronizer(remote, remote.export, registry, retry=no_wait_retry)


def _snapshot(remote, body: bytes) -> CalendarSnapshot:
    return CalendarSnapshot(url=URL, body=body, previous_body=remote.export())


def _uids(body: bytes) -> set[str]:
    return {ev.uid for ev in parse_events(body).events if ev.uid}


class TestOnDemand:
    def test_new_local_event_is_inserted_then_converges(self, remote, sync: Synchronizer, ics) -> None:
        local = ics.calendar(ics.event("local-1", "Gym"))

        merged = sync.synchronize_now(_snapshot(remote, local))

        assert remote.calls_of("insert") == ["Gym"]
        assert sync.last_stats is not None and sync.last_stats.inserted == 1
        assert _uids(merged) == {"r1@google.com"}
        assert sync.registry.contains(URL, "r1@google.com")

        again = sync.synchronize_now(_snapshot(remote, merged))

        assert remote.calls_of("insert") == ["Gym"]
        assert sync.last_stats.changes == 0
        assert _uids(again) == {"r1@google.com"}

    def test_no_delta_returns_previous_body(self, remote, sync: Synchronizer) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        body = remote.export()

        assert sync.synchronize_now(CalendarSnapshot(url=URL, body=body, previous_body=body)) == body
        assert remote.calls_of("list") == []
        assert sync.registry.contains(URL, "r1@google.com")

    def test_local_deletion_is_pushed(self, remote, sync: Synchronizer, ics) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        sync.registry.update(URL, remote.export())

        merged = sync.synchronize_now(_snapshot(remote, ics.calendar()))

        assert remote.calls_of("delete") == ["r1"]
        assert _uids(merged) == set()

    def test_local_deletion_kept_remote_when_delete_disabled(
        self, remote, registry: OfflineEventRegistry, no_wait_retry: RetryPolicy, ics
    ) -> None:
        sync = Synchronizer(remote, remote.export, registry, delete_enabled=False, retry=no_wait_retry)
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        registry.update(URL, remote.export())

        merged = sync.synchronize_now(_snapshot(remote, ics.calendar()))

        assert remote.calls_of("delete") == []
        assert _uids(merged) == {"r1@google.com"}

    def test_remote_deletion_is_not_reinserted(self, remote, sync: Synchronizer) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        local = remote.export()
        sync.registry.update(URL, local)
        del remote.events["r1"]

        merged = sync.synchronize_now(_snapshot(remote, local))

        assert remote.calls_of("insert") == []
        assert _uids(merged) == set()

    def test_remote_deletion_survives_restart(
        self, remote, registry: OfflineEventRegistry, no_wait_retry: RetryPolicy
    ) -> None:
        remote.add(id="r1", uid="réunion-1@example.org", title="Dentist", start=T0, end=T0 + HOUR)
        local = remote.export()
        registry.update(URL, local)
        del remote.events["r1"]
        restarted = Synchronizer(
            remote, remote.export, OfflineEventRegistry(registry.path), retry=no_wait_retry
        )

        merged = restarted.synchronize_now(_snapshot(remote, local))

        assert remote.calls_of("insert") == []
        assert _uids(merged) == set()

    def test_new_remote_event_is_absorbed(self, remote, sync: Synchronizer, ics) -> None:
        remote.add(id="r1", title="From phone", start=T0)

        merged = sync.synchronize_now(_snapshot(remote, ics.calendar()))

        assert remote.calls_of("delete") == []
        assert _uids(merged) == {"r1@google.com"}

    def test_local_change_is_pushed(self, remote, sync: Synchronizer, ics) -> None:
        entry = remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        sync.registry.update(URL, remote.export())
        local = ics.calendar(ics.event("r1@google.com", "Dentist at 11", created=entry.created))

        sync.synchronize_now(_snapshot(remote, local))

        assert remote.calls_of("update") == ["r1"]
        assert remote.events["r1"].title == "Dentist at 11"

    def test_remote_change_wins_over_stale_local_copy(self, remote, sync: Synchronizer) -> None:
        entry = remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)
        local = remote.export()
        sync.registry.update(URL, local)
        remote.events["r1"] = replace(entry, title="Dentist (moved)", updated=entry.updated + 60_000)

        merged = sync.synchronize_now(_snapshot(remote, local))

        assert remote.calls_of("update") == []
        assert [ev.title for ev in parse_events(merged).events] == ["Dentist (moved)"]

    def test_read_only_entry_is_skipped(self, remote, sync: Synchronizer, ics) -> None:
        remote.add(id="r1", title="Holiday", start=T0, end=T0 + HOUR, can_edit=False)
        sync.registry.update(URL, remote.export())
        local = ics.calendar(ics.event("r1@google.com", "My holiday"))

        sync.synchronize_now(_snapshot(remote, local))

        assert remote.calls_of("update") == []
        assert sync.last_stats is not None and sync.last_stats.skipped == 1

    def test_marked_previous_body_skips_cycle(self, remote, sync: Synchronizer, ics) -> None:
        marked = error_calendar("timeout", network_down=True)
        snapshot = CalendarSnapshot(url=URL, body=ics.calendar(ics.event("x")), previous_body=marked)

        assert sync.synchronize_now(snapshot) == marked
        assert remote.calls == []


class TestExtendedSync:
    def test_extended_fields_are_reinserted(
        self, remote, registry: OfflineEventRegistry, no_wait_retry: RetryPolicy
    ) -> None:
        sync = Synchronizer(remote, remote.export, registry, extended_sync=True, retry=no_wait_retry)
        remote.add(id="r1", title="Review", start=T0, extended={EXT_UID: "local-1", EXT_PRIORITY: "3"})

        body = sync.load_remote(CalendarSnapshot(url=URL))

        (event,) = parse_events(body).events
        assert event.priority == "3"

    def test_plain_mode_returns_body_as_is(self, remote, sync: Synchronizer) -> None:
        remote.add(id="r1", title="Review", start=T0, extended={EXT_PRIORITY: "3"})

        assert sync.load_remote(CalendarSnapshot(url=URL)) == remote.export()
        assert remote.calls_of("list") == []


class TestBackground:
    def test_local_addition_is_inserted(self, remote, sync: Synchronizer, ics) -> None:
        stats = sync.process_changed(_snapshot(remote, ics.calendar(ics.event("local-1", "Gym"))))

        assert stats.inserted == 1
        assert remote.events["r1"].local_uid == "local-1"

    def test_local_removal_is_deleted(self, remote, sync: Synchronizer, ics) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR)

        stats = sync.process_changed(_snapshot(remote, ics.calendar()))

        assert stats.deleted == 1
        assert remote.events == {}

    def test_worker_processes_queue(self, remote, sync: Synchronizer, ics) -> None:
        sync.start()
        try:
            sync.notify_changed(_snapshot(remote, ics.calendar(ics.event("local-1", "Gym"))))
            sync.join()
        finally:
            sync.stop()

        assert remote.calls_of("insert") == ["Gym"]
        assert not sync.running

    def test_worker_continues_after_failed_item(self, remote, sync: Synchronizer, ics) -> None:
        sync.start()
        try:
            sync.notify_changed(_snapshot(remote, b"definitely not a calendar"))
            sync.notify_changed(_snapshot(remote, ics.calendar(ics.event("local-1", "Gym"))))
            sync.join()

            assert sync.running
            assert sync.pending() == 0
        finally:
            sync.stop()

        assert remote.calls_of("insert") == ["Gym"]

    def test_stop_interrupts_retry_pause(self, remote, registry: OfflineEventRegistry, ics) -> None:
        sync = Synchronizer(remote, remote.export, registry, retry=RetryPolicy(max_retries=5, interval_sec=30))
        remote.failures["insert"] = [RemoteUnavailableError("503") for _ in range(6)]
        inserting = threading.Event()
        original = remote.insert

        def insert(calendar_id, event):  # type: ignore[no-untyped-def]
            inserting.set()
            return original(calendar_id, event)

        remote.insert = insert
        sync.start()
        sync.notify_changed(_snapshot(remote, ics.calendar(ics.event("local-1", "Gym"))))
        assert inserting.wait(5)

        started = time.monotonic()
        sync.stop(timeout=5)

        assert time.monotonic() - started < 5
        assert not sync.running
        assert len(remote.calls_of("insert")) == 1
