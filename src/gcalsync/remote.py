"""Remote calendar contract consumed by the reconciliation engine.

Responsibilities
- `RemoteEvent`: the engine's view of one remote calendar entry, independent
  of the wire format used by a concrete client.
- `RemoteCalendarClient`: the narrow list/get/insert/update/delete protocol.
- Error taxonomy: transient failures (retry), missing entries (skip) and API
  rejections carrying the server's human readable message (inspected for the
  non-retryable markers).

Extended properties
- EXT_UID binds the local UID to the remote entry; EXT_CATEGORIES,
  EXT_PRIORITY and EXT_URL carry iCalendar fields the remote model lacks.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

__all__ = [
    "EXT_CATEGORIES",
    "EXT_PRIORITY",
    "EXT_UID",
    "EXT_URL",
    "RemoteApiError",
    "RemoteCalendarClient",
    "RemoteError",
    "RemoteEvent",
    "RemoteNotFoundError",
    "RemoteUnavailableError",
    "Reminder",
    "RetryPolicy",
    "SyncInterrupted",
    "call_with_retries",
]

log = logging.getLogger(__name__)

T = TypeVar("T")

EXT_UID = "gcalsync-uid"
EXT_CATEGORIES = "gcalsync-categories"
EXT_PRIORITY = "gcalsync-priority"
EXT_URL = "gcalsync-url"


class RemoteError(RuntimeError):
    """Base class for remote calendar failures."""


class RemoteUnavailableError(RemoteError):
    """Transient failure: timeout, refused connection, 5xx, rate limiting."""


class RemoteNotFoundError(RemoteError):
    """The addressed remote entry does not exist (any more)."""


class RemoteApiError(RemoteError):
    """The remote side rejected the call; `message` holds its explanation."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


@dataclass(frozen=True)
class Reminder:
    method: str
    minutes: int


@dataclass(frozen=True)
class RemoteEvent:
    id: str | None = None
    uid: str | None = None
    title: str | None = None
    description: str | None = None
    location: str | None = None
    start: int | None = None
    end: int | None = None
    all_day: bool = False
    time_zone: str | None = None
    status: str | None = None
    visibility: str | None = None
    transparency: str | None = None
    attendees: tuple[str, ...] = ()
    reminders: tuple[Reminder, ...] = ()
    # Explicitly remove every reminder instead of keeping the remote ones
    clear_reminders: bool = False
    recurrence: tuple[str, ...] = ()
    recurring_event_id: str | None = None
    original_start: int | None = None
    created: int | None = None
    updated: int | None = None
    extended: dict[str, str] = field(default_factory=dict)
    can_edit: bool = True

    @property
    def local_uid(self) -> str | None:
        """UID stored by this tool in the private extended properties."""
        return self.extended.get(EXT_UID)

    @property
    def identity_key(self) -> str | None:
        """UID as it appears in the remote iCalendar export."""
        if not self.uid:
            return None
        if self.recurring_event_id and self.original_start is not None:
            return f"{self.uid}!{self.original_start}"
        return self.uid

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence)


class RemoteCalendarClient(Protocol):
    def list(self, calendar_id: str) -> list[RemoteEvent]: ...

    def get(self, calendar_id: str, remote_id: str) -> RemoteEvent: ...

    def insert(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent: ...

    def update(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent: ...

    def delete(self, calendar_id: str, remote_id: str) -> None: ...


# ----------------------------
# Retry helpers
# ----------------------------


class SyncInterrupted(RuntimeError):
    """Raised from an interruptible retry pause once synchronization is stopped."""


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-interval retry budget for transient remote failures."""

    max_retries: int = 5
    interval_sec: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def pause(self) -> None:
        if self.interval_sec > 0:
            self.sleep(self.interval_sec)


def call_with_retries(fn: Callable[[], T], policy: RetryPolicy, *, what: str = "remote-call") -> T:
    """Run `fn`, retrying RemoteUnavailableError up to `policy.max_retries` times."""
    attempt = 0
    while True:
        try:
            return fn()
        except RemoteUnavailableError as exc:
            attempt += 1
            if attempt > policy.max_retries:
                raise
            log.debug("%s-retry attempt=%d error=%s", what, attempt, exc)
            policy.pause()
