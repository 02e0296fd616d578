"""Tests for the TTL cell."""

from conftest import FakeClock

from stop_search.data.cache import TTLCell


def test_cache_ttl_expiration():
    """Cell should return None once the TTL has elapsed."""
    clock = FakeClock()
    cell: TTLCell[str] = TTLCell(ttl=60, clock=clock)

    cell.set("value")
    assert cell.get() == "value"

    clock.advance_ms(59_000)
    assert cell.get() == "value"

    clock.advance_ms(1_000)
    assert cell.get() is None


def test_cache_empty_by_default():
    cell: TTLCell[str] = TTLCell(ttl=10.0)
    assert cell.get() is None


def test_cache_clear():
    """Clear should forget the value and its timestamp."""
    cell: TTLCell[str] = TTLCell(ttl=10.0)

    cell.set("value")
    cell.clear()

    assert cell.get() is None


def test_cache_overwrite_restamps():
    """Setting a new value replaces the old one and restarts the TTL."""
    clock = FakeClock()
    cell: TTLCell[str] = TTLCell(ttl=10, clock=clock)

    cell.set("first")
    clock.advance_ms(9_000)
    cell.set("second")
    clock.advance_ms(9_000)

    assert cell.get() == "second"
    clock.advance_ms(1_000)
    assert cell.get() is None
