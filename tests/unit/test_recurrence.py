from __future__ import annotations

from gcalsync.sync.recurrence import RecurrenceNormalizer

T0 = 1704880800000  # 2024-01-10T10:00:00Z
DAY = 24 * 3600 * 1000


def test_expand_is_deterministic_and_memoized() -> None:
    normalizer = RecurrenceNormalizer()

    first = normalizer.expand(T0, "FREQ=DAILY;COUNT=4")
    second = normalizer.expand(T0, "FREQ=DAILY;COUNT=4")

    assert first == second
    assert first is second
    assert len(normalizer) == 1
    assert sorted(int(v) for v in first) == [T0 + n * DAY for n in range(4)]


def test_separate_instances_do_not_share_cache() -> None:
    a, b = RecurrenceNormalizer(), RecurrenceNormalizer()

    assert a.expand(T0, "FREQ=WEEKLY;COUNT=2") == b.expand(T0, "FREQ=WEEKLY;COUNT=2")
    assert len(a) == len(b) == 1


def test_cache_is_dropped_when_full() -> None:
    normalizer = RecurrenceNormalizer(max_entries=2)

    normalizer.expand(T0, "FREQ=DAILY;COUNT=1")
    normalizer.expand(T0, "FREQ=DAILY;COUNT=2")
    normalizer.expand(T0, "FREQ=DAILY;COUNT=3")

    assert len(normalizer) == 1


def test_unbounded_rule_stops_at_horizon() -> None:
    values = RecurrenceNormalizer().expand(T0, "FREQ=WEEKLY")

    # two years of weekly occurrences
    assert 104 <= len(values) <= 105
    assert max(int(v) for v in values) < T0 + 2 * 365 * DAY


def test_yearly_rule_uses_longer_horizon() -> None:
    values = RecurrenceNormalizer().expand(T0, "FREQ=YEARLY")

    assert len(values) == 10


def test_instance_cap() -> None:
    values = RecurrenceNormalizer(max_instances=50).expand(T0, "FREQ=MINUTELY")

    assert len(values) == 50


def test_unparsable_rule_expands_to_itself() -> None:
    assert RecurrenceNormalizer().expand(T0, "FREQ=SOMETIMES") == ("FREQ=SOMETIMES",)


def test_exception_key_sorts_numerically() -> None:
    assert RecurrenceNormalizer.exception_key([T0 + DAY, T0]) == (T0, T0 + DAY)
