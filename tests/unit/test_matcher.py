from __future__ import annotations

import pytest

from gcalsync.cache import CalendarSnapshot
from gcalsync.ical.events import Event
from gcalsync.remote import EXT_UID, RemoteEvent, RemoteUnavailableError, RetryPolicy
from gcalsync.sync.matcher import EventMatcher, match_score

T0 = 1704880800000
HOUR = 3600 * 1000
URL = "https://calendar.google.com/calendar/ical/me/private-abc/basic.ics"

LOCAL = Event(uid="local-1", title="Dentist", description="Bring card", start=T0, end=T0 + HOUR, created=T0)


def _candidate(remote_id: str, **fields: object) -> RemoteEvent:
    fields.setdefault("created", T0)
    return RemoteEvent(id=remote_id, uid=f"{remote_id}@google.com", **fields)  # type: ignore[arg-type]


@pytest.fixture
def matcher(remote, no_wait_retry: RetryPolicy) -> EventMatcher:
    return EventMatcher(remote, retry=no_wait_retry)


class TestScore:
    def test_full_match(self) -> None:
        candidate = _candidate("r1", title="Dentist", description="Bring card", start=T0, end=T0 + HOUR)

        assert match_score(LOCAL, candidate) == 5

    def test_creation_compared_at_second_precision(self) -> None:
        candidate = _candidate("r1", created=T0 + 999)

        assert match_score(LOCAL, candidate) == 1

    def test_candidate_created_earlier_is_pruned(self) -> None:
        candidate = _candidate("r1", title="Dentist", start=T0, created=T0 - 60_000)

        assert match_score(LOCAL, candidate) is None

    def test_empty_description_does_not_score(self) -> None:
        event = Event(uid="e", description=None, start=T0)
        candidate = RemoteEvent(id="r1", description=None, start=T0)

        assert match_score(event, candidate) == 1


class TestPoolMatching:
    def test_exact_uid_wins_over_content(self, matcher: EventMatcher) -> None:
        lookalike = _candidate("r1", title="Dentist", start=T0, end=T0 + HOUR)
        bound = _candidate("r2", title="Something else", extended={EXT_UID: "local-1"})
        pool = [lookalike, bound]

        assert matcher.match(pool, LOCAL) is bound
        assert pool == [lookalike]

    def test_remote_uid_binds_exactly(self, matcher: EventMatcher) -> None:
        event = Event(uid="r7@google.com", title="x")
        entry = _candidate("r7")

        assert matcher.match([entry], event) is entry

    def test_below_threshold_is_unmatched(self, matcher: EventMatcher) -> None:
        pool = [RemoteEvent(id="r1", title="Dentist")]

        assert matcher.match(pool, Event(uid="u", title="Dentist")) is None
        assert len(pool) == 1

    def test_threshold_reached(self, matcher: EventMatcher) -> None:
        pool = [RemoteEvent(id="r1", title="Dentist", start=T0)]

        assert matcher.match(pool, Event(uid="u", title="Dentist", start=T0)) is not None

    def test_tie_keeps_first_candidate(self, matcher: EventMatcher) -> None:
        first = RemoteEvent(id="r1", title="Dentist", start=T0)
        second = RemoteEvent(id="r2", title="Dentist", start=T0)

        assert matcher.match([first, second], Event(uid="u", title="Dentist", start=T0)) is first

    def test_entry_is_never_bound_twice(self, matcher: EventMatcher) -> None:
        pool = [RemoteEvent(id="r1", title="Dentist", start=T0)]
        a = Event(uid="a", title="Dentist", start=T0)
        b = Event(uid="b", title="Dentist", start=T0)

        bound = matcher.match_all(pool, [a, b])

        assert list(bound) == ["a"]
        assert pool == []


class TestIdentityMap:
    def test_local_uid_resolves_through_remote_body(self, remote, matcher: EventMatcher) -> None:
        remote.add(id="r1", title="Dentist", start=T0, end=T0 + HOUR, extended={EXT_UID: "local-1"})
        snapshot = CalendarSnapshot(url=URL, previous_body=remote.export())

        assert matcher.remote_uid(snapshot, "local-1") == "r1@google.com"
        found = matcher.find_by_uid(snapshot, "local-1")

        assert found is not None and found.id == "r1"
        assert remote.calls_of("get") == ["r1"]

    def test_map_is_built_once_per_cycle(self, remote, matcher: EventMatcher) -> None:
        remote.add(id="r1", title="Dentist", start=T0)
        snapshot = CalendarSnapshot(url=URL, previous_body=remote.export())

        matcher.find_by_uid(snapshot, "r1@google.com")
        matcher.find_by_uid(snapshot, "r1@google.com")
        assert len(remote.calls_of("list")) == 1

        matcher.invalidate(URL)
        matcher.find_by_uid(snapshot, "r1@google.com")
        assert len(remote.calls_of("list")) == 2

    def test_entry_missing_from_export_binds_by_own_uid(self, remote, matcher: EventMatcher) -> None:
        remote.add(id="r1", title="Fresh", extended={EXT_UID: "local-9"})
        snapshot = CalendarSnapshot(url=URL, previous_body=None)

        found = matcher.find_by_uid(snapshot, "local-9")

        assert found is not None and found.id == "r1"

    def test_vanished_entry_rebuilds_map_once(self, remote, matcher: EventMatcher) -> None:
        remote.add(id="r1", title="Dentist", start=T0)
        snapshot = CalendarSnapshot(url=URL, previous_body=remote.export())
        matcher.identity_map(snapshot)
        del remote.events["r1"]

        assert matcher.find_by_uid(snapshot, "r1@google.com") is None
        assert len(remote.calls_of("list")) == 2

    def test_unavailable_remote_gives_no_match(self, remote, matcher: EventMatcher) -> None:
        remote.add(id="r1", title="Dentist", start=T0)
        snapshot = CalendarSnapshot(url=URL, previous_body=remote.export())
        remote.failures["get"] = [RemoteUnavailableError("timeout") for _ in range(3)]

        assert matcher.find_by_uid(snapshot, "r1@google.com") is None
        assert len(remote.calls_of("get")) == 3

    def test_unknown_uid(self, remote, matcher: EventMatcher) -> None:
        snapshot = CalendarSnapshot(url=URL, previous_body=remote.export())

        assert matcher.find_remote_event(snapshot, Event(uid="nobody")) is None
        assert matcher.find_remote_event(snapshot, Event(uid=None)) is None
