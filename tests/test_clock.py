"""Tests for the clock abstraction."""

from datetime import UTC, datetime, timedelta

from repairhub.clock import FrozenClock, SystemClock, ensure_aware


def test_frozen_clock_only_moves_when_told() -> None:
    start = datetime(2026, 1, 1, tzinfo=UTC)
    clock = FrozenClock(start)
    assert clock.now() == start
    assert clock.now() == start

    clock.advance(hours=25)
    assert clock.now() == start + timedelta(hours=25)

    clock.set(start)
    assert clock.now() == start


def test_frozen_clock_treats_naive_as_utc() -> None:
    clock = FrozenClock(datetime(2026, 1, 1, 12, 0))
    assert clock.now().tzinfo is UTC


def test_system_clock_is_aware() -> None:
    assert SystemClock().now().tzinfo is not None


def test_ensure_aware_keeps_aware_values() -> None:
    value = datetime(2026, 1, 1, tzinfo=UTC)
    assert ensure_aware(value) is value
    assert ensure_aware(datetime(2026, 1, 1)).tzinfo is UTC
