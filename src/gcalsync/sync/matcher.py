"""Local-to-remote identity resolution.

Responsibilities
- Build, once per cache cycle and calendar URL, an identity map from one full
  remote listing: every event of the snapshot's remote body is bound to the
  remote entry that represents it.
- Resolve a local event to its remote entry in O(1) through that map, then
  fetch the entry by id so edits start from the current remote state.

Matching rules (`EventMatcher.match`)
- Exact: the remote entry carries the event's UID in its extended properties,
  or its own iCalendar UID (plus original start for an overridden instance)
  equals the event's UID. Wins immediately.
- Scored fallback: +1 equal creation time, +1 title, +1 description (only
  when both are non-empty), +1 start, +1 end. A candidate created before the
  local event is pruned. The strictly best score wins (the first candidate
  keeps ties) and must reach the threshold (default 2); below it the event has
  no remote counterpart and will be inserted rather than overwrite a wrong one.
- Every matched candidate leaves the pool, so one remote entry is never bound
  to two local events within a pass.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..cache import CalendarSnapshot
from ..ical.events import Event
from ..ical.parser import CalendarParseError, has_error_marker, parse_events
from ..remote import (
    RemoteCalendarClient,
    RemoteEvent,
    RemoteNotFoundError,
    RemoteUnavailableError,
    RetryPolicy,
    call_with_retries,
)
from ..utils.hashing import texts_equal

__all__ = ["EventMatcher", "IdentityMap", "match_score"]

log = logging.getLogger(__name__)


@dataclass
class IdentityMap:
    # remote body UID -> remote entry id
    remote_ids: dict[str, str] = field(default_factory=dict)
    # local (extended property) UID -> remote body UID, only where they differ
    remote_uids: dict[str, str] = field(default_factory=dict)
    # remote entry id -> entry as listed
    remotes: dict[str, RemoteEvent] = field(default_factory=dict)

    def resolve_id(self, uid: str) -> str | None:
        body_uid = self.remote_uids.get(uid, uid)
        return self.remote_ids.get(body_uid) or self.remote_ids.get(uid)


def _seconds(millis: int | None) -> int | None:
    return None if millis is None else millis // 1000


def match_score(event: Event, candidate: RemoteEvent) -> int | None:
    """Content score of `candidate` for `event`; None when the candidate is pruned."""
    score = 0
    local_created = _seconds(event.created)
    remote_created = _seconds(candidate.created)
    if local_created is not None and remote_created is not None:
        if local_created == remote_created:
            score += 1
        elif local_created > remote_created:
            return None
    if event.title and texts_equal(event.title, candidate.title):
        score += 1
    if event.description and candidate.description and texts_equal(
        event.description, candidate.description
    ):
        score += 1
    if event.start is not None and event.start == candidate.start:
        score += 1
    if event.end is not None and event.end == candidate.end:
        score += 1
    return score


class EventMatcher:
    def __init__(
        self,
        client: RemoteCalendarClient,
        *,
        threshold: int = 2,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.client = client
        self.threshold = threshold
        self.retry = retry or RetryPolicy()
        self._maps: dict[str, IdentityMap] = {}

    # ----------------------------
    # Pool matching
    # ----------------------------

    def match(self, pool: list[RemoteEvent], event: Event) -> RemoteEvent | None:
        """Pick (and remove from `pool`) the remote entry representing `event`."""
        if event.uid:
            for idx, candidate in enumerate(pool):
                if candidate.local_uid == event.uid or candidate.identity_key == event.uid:
                    return pool.pop(idx)

        best_idx = -1
        best_score = 0
        for idx, candidate in enumerate(pool):
            score = match_score(event, candidate)
            if score is not None and score > best_score:
                best_score = score
                best_idx = idx

        if best_idx < 0 or best_score < self.threshold:
            return None
        log.debug("event-matched uid=%s score=%d", event.uid, best_score)
        return pool.pop(best_idx)

    def match_all(self, pool: list[RemoteEvent], events: Iterable[Event]) -> dict[str, RemoteEvent]:
        """Bind every event with a UID; events without counterpart are left out."""
        bound: dict[str, RemoteEvent] = {}
        for event in events:
            if not event.uid:
                continue
            entry = self.match(pool, event)
            if entry is not None:
                bound[event.uid] = entry
        return bound

    # ----------------------------
    # Identity map
    # ----------------------------

    def invalidate(self, url: str | None = None) -> None:
        if url is None:
            self._maps.clear()
        else:
            self._maps.pop(url, None)

    def list_remote(self, snapshot: CalendarSnapshot) -> list[RemoteEvent]:
        return call_with_retries(
            lambda: self.client.list(snapshot.calendar_id), self.retry, what="remote-list"
        )

    def build_identity_map(self, snapshot: CalendarSnapshot) -> IdentityMap:
        identity = IdentityMap()
        pool = self.list_remote(snapshot)
        for entry in pool:
            if entry.id:
                identity.remotes[entry.id] = entry

        body = snapshot.previous_body
        events: tuple[Event, ...] = ()
        if body and not has_error_marker(body):
            try:
                events = parse_events(body).events
            except CalendarParseError as exc:
                log.warning("identity-map-parse-failed url=%s error=%s", snapshot.url, exc)

        candidates = [entry for entry in pool if entry.id]
        for uid, entry in self.match_all(candidates, events).items():
            identity.remote_ids[uid] = entry.id  # type: ignore[assignment]
            local_uid = entry.local_uid
            if local_uid and local_uid != uid:
                identity.remote_uids[local_uid] = uid

        # Entries the remote export does not list yet still bind through their own UIDs
        for entry in candidates:
            for key in (entry.local_uid, entry.identity_key):
                if key and key not in identity.remote_ids and key not in identity.remote_uids:
                    identity.remote_ids[key] = entry.id  # type: ignore[assignment]

        log.debug(
            "identity-map-built url=%s remotes=%d bound=%d",
            snapshot.url,
            len(identity.remotes),
            len(identity.remote_ids),
        )
        return identity

    def identity_map(self, snapshot: CalendarSnapshot) -> IdentityMap:
        identity = self._maps.get(snapshot.url)
        if identity is None:
            identity = self.build_identity_map(snapshot)
            self._maps[snapshot.url] = identity
        return identity

    def remote_uid(self, snapshot: CalendarSnapshot, uid: str) -> str | None:
        """Remote body UID bound to a local UID, when the two differ."""
        return self.identity_map(snapshot).remote_uids.get(uid)

    # ----------------------------
    # Lookup
    # ----------------------------

    def find_remote_event(self, snapshot: CalendarSnapshot, event: Event) -> RemoteEvent | None:
        if not event.uid:
            return None
        return self.find_by_uid(snapshot, event.uid)

    def find_by_uid(self, snapshot: CalendarSnapshot, uid: str) -> RemoteEvent | None:
        """Current remote entry bound to `uid`, or None."""
        for attempt in range(2):
            remote_id = self.identity_map(snapshot).resolve_id(uid)
            if remote_id is None:
                return None
            try:
                return call_with_retries(
                    lambda: self.client.get(snapshot.calendar_id, remote_id),
                    self.retry,
                    what="remote-get",
                )
            except RemoteNotFoundError:
                log.debug("remote-entry-vanished uid=%s attempt=%d", uid, attempt + 1)
                self.invalidate(snapshot.url)
            except RemoteUnavailableError as exc:
                log.warning("remote-get-failed uid=%s error=%s", uid, exc)
                return None
        return None
