from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from gcalsync.remote import RemoteEvent, RemoteNotFoundError, RetryPolicy

# 2024-01-10T10:00:00Z
T0 = 1704880800000
HOUR = 3600 * 1000


def stamp(millis: int) -> str:
    return (datetime(1970, 1, 1, tzinfo=UTC) + timedelta(milliseconds=millis)).strftime(
        "%Y%m%dT%H%M%SZ"
    )


class Ics:
    """Small iCalendar text builder for tests."""

    @staticmethod
    def event(
        uid: str | None,
        summary: str = "Meeting",
        start: int = T0,
        end: int | None = None,
        *,
        description: str | None = None,
        created: int | None = None,
        last_modified: int | None = None,
        rrule: str | None = None,
        exdates: tuple[int, ...] = (),
        recurrence_id: int | None = None,
        extra: tuple[str, ...] = (),
    ) -> str:
        lines = ["BEGIN:VEVENT"]
        if uid is not None:
            lines.append(f"UID:{uid}")
        lines.append(f"SUMMARY:{summary}")
        if description:
            lines.append(f"DESCRIPTION:{description}")
        lines.append(f"DTSTART:{stamp(start)}")
        lines.append(f"DTEND:{stamp(end if end is not None else start + HOUR)}")
        if created is not None:
            lines.append(f"CREATED:{stamp(created)}")
        if last_modified is not None:
            lines.append(f"LAST-MODIFIED:{stamp(last_modified)}")
        if rrule:
            lines.append(f"RRULE:{rrule}")
        for ex in exdates:
            lines.append(f"EXDATE:{stamp(ex)}")
        if recurrence_id is not None:
            lines.append(f"RECURRENCE-ID:{stamp(recurrence_id)}")
        lines.extend(extra)
        lines.append("END:VEVENT")
        return "\r\n".join(lines)

    @staticmethod
    def calendar(*events: str, todos: tuple[str, ...] = ()) -> bytes:
        parts = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//tests//gcalsync//EN"]
        parts.extend(events)
        parts.extend(todos)
        parts.append("END:VCALENDAR")
        return ("\r\n".join(parts) + "\r\n").encode("utf-8")

    @staticmethod
    def todo(uid: str, summary: str = "Buy milk") -> str:
        return "\r\n".join(["BEGIN:VTODO", f"UID:{uid}", f"SUMMARY:{summary}", "END:VTODO"])


class FakeRemoteClient:
    """In-memory remote calendar recording every call.

    `failures[op]` holds exceptions raised, in order, by the next calls of `op`.
    `export()` renders the calendar the way the remote iCalendar export does.
    """

    def __init__(self, now: int = T0 + 24 * HOUR) -> None:
        self.events: dict[str, RemoteEvent] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.now = now
        self._seq = 0

    def _fail(self, op: str) -> None:
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)

    def _tick(self) -> int:
        self.now += 1000
        return self.now

    def calls_of(self, op: str) -> list[str | None]:
        return [arg for name, arg in self.calls if name == op]

    def add(self, **fields: object) -> RemoteEvent:
        self._seq += 1
        remote_id = str(fields.pop("id", f"r{self._seq}"))
        fields.setdefault("uid", f"{remote_id}@google.com")
        fields.setdefault("created", self.now)
        fields.setdefault("updated", self.now)
        event = RemoteEvent(id=remote_id, **fields)  # type: ignore[arg-type]
        self.events[remote_id] = event
        return event

    def list(self, calendar_id: str) -> list[RemoteEvent]:
        self.calls.append(("list", calendar_id))
        self._fail("list")
        return list(self.events.values())

    def get(self, calendar_id: str, remote_id: str) -> RemoteEvent:
        self.calls.append(("get", remote_id))
        self._fail("get")
        try:
            return self.events[remote_id]
        except KeyError:
            raise RemoteNotFoundError(remote_id) from None

    def insert(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        self.calls.append(("insert", event.title))
        self._fail("insert")
        self._seq += 1
        remote_id = f"r{self._seq}"
        uid = f"{remote_id}@google.com"
        parent = self.events.get(event.recurring_event_id or "")
        if parent is not None:
            uid = parent.uid or uid
        now = self._tick()
        stored = replace(event, id=remote_id, uid=uid, created=now, updated=now)
        self.events[remote_id] = stored
        return stored

    def update(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        self.calls.append(("update", event.id))
        self._fail("update")
        old = self.events.get(event.id or "")
        if old is None:
            raise RemoteNotFoundError(event.id or "")
        stored = replace(event, created=old.created, updated=self._tick())
        self.events[old.id or ""] = stored
        return stored

    def delete(self, calendar_id: str, remote_id: str) -> None:
        self.calls.append(("delete", remote_id))
        self._fail("delete")
        if self.events.pop(remote_id, None) is None:
            raise RemoteNotFoundError(remote_id)

    def export(self, url: str | None = None) -> bytes:
        blocks = []
        for ev in self.events.values():
            blocks.append(
                Ics.event(
                    ev.uid,
                    ev.title or "",
                    ev.start if ev.start is not None else T0,
                    ev.end,
                    description=ev.description,
                    created=ev.created,
                    last_modified=ev.updated,
                    rrule=next(
                        (line[6:] for line in ev.recurrence if line.startswith("RRULE:")), None
                    ),
                    recurrence_id=ev.original_start if ev.recurring_event_id else None,
                )
            )
        return Ics.calendar(*blocks)


@pytest.fixture
def ics() -> type[Ics]:
    return Ics


@pytest.fixture
def remote() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest.fixture
def no_wait_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=2, interval_sec=0)
