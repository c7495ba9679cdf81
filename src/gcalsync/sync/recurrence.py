"""Recurrence rule expansion used for equality checks.

Two RRULEs are considered equal when they generate the same occurrences over
a bounded horizon, whatever their textual form (e.g. COUNT vs. UNTIL, BYDAY
order). Expansion is deterministic and memoized per normalizer instance.

Notes
- Expansion runs on naive UTC datetimes (`ignoretz=True`); both sides of a
  comparison are expanded the same way, so zone handling cancels out.
- Horizon: 2 years from DTSTART, 10 years for FREQ=YEARLY.
- A rule dateutil cannot parse expands to its own text, so such rules still
  compare textually instead of failing the whole comparison.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from dateutil.rrule import rrulestr

from ..utils.timezones import from_epoch_millis, to_epoch_millis

__all__ = ["RecurrenceNormalizer"]

log = logging.getLogger(__name__)

_YEAR = timedelta(days=365)


class RecurrenceNormalizer:
    def __init__(self, max_entries: int = 100, max_instances: int = 10000) -> None:
        self.max_entries = max_entries
        self.max_instances = max_instances
        self._cache: dict[tuple[int, str], tuple[str, ...]] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        self._cache.clear()

    def expand(self, start: int, rule: str) -> tuple[str, ...]:
        """Sorted instance timestamps (epoch millis as text) of `rule` from `start`."""
        key = (start, rule)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        instances = self._expand(start, rule)
        if len(self._cache) >= self.max_entries:
            self._cache.clear()
        self._cache[key] = instances
        return instances

    def _expand(self, start: int, rule: str) -> tuple[str, ...]:
        dtstart = from_epoch_millis(start).replace(tzinfo=None)
        horizon = _YEAR * 2
        if "FREQ=YEARLY" in rule.upper():
            horizon *= 5
        until = dtstart + horizon

        try:
            recurrence = rrulestr(rule, dtstart=dtstart, ignoretz=True)
        except (ValueError, TypeError) as exc:
            log.debug("rrule-unparsable rule=%s error=%s", rule, exc)
            return (rule,)

        values: list[str] = []
        try:
            for occurrence in recurrence:
                if occurrence >= until or len(values) >= self.max_instances:
                    break
                values.append(str(to_epoch_millis(occurrence, "UTC")))
        except (ValueError, OverflowError) as exc:
            log.debug("rrule-expansion-failed rule=%s error=%s", rule, exc)
            return (rule,)
        values.sort(key=str.lower)
        return tuple(values)

    @staticmethod
    def exception_key(exdates: tuple[int, ...] | list[int]) -> tuple[int, ...]:
        """Exception dates in the canonical (numeric) order used for comparison."""
        return tuple(sorted(exdates))
