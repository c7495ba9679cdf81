"""Delta classification between two event collections.

`compute_delta(old, new, find_new, comparator)` returns the events of `new`
without an equivalent event in `old`.

Ordering
- find_new=True  (local additions/changes): whole events first, overridden
  occurrences (UID with '!') last, so a series exists before its exceptions.
- find_new=False (removals): overridden occurrences first, whole events last,
  so exceptions disappear before their series.
- Events without UID are always appended.

Running it with (remote, local, True) gives the local delta; with
(local, remote, False) the remote delta. The reverse pass never compares the
extended attributes.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from ..ical.events import Event
from .compare import EventComparator

__all__ = ["compute_delta"]


def compute_delta(
    old: Iterable[Event],
    new: Iterable[Event],
    find_new: bool,
    comparator: EventComparator | None = None,
    calendar_url: str | None = None,
) -> list[Event]:
    cmp = comparator or EventComparator()
    old_events = list(old)
    result: deque[Event] = deque()

    for candidate in new:
        if any(
            cmp.is_equivalent(previous, candidate, find_new, calendar_url if find_new else None)
            for previous in old_events
        ):
            continue
        if candidate.uid is None:
            result.append(candidate)
        elif candidate.is_instance == find_new:
            # instance in find-new mode, whole event in find-removed mode
            result.append(candidate)
        else:
            result.appendleft(candidate)
    return list(result)
