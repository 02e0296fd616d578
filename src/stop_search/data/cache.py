"""Single-value TTL cell for process-level memoization."""

import time
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class TTLCell(Generic[T]):
    """Holds one value together with the time it was computed.

    Values are replaced wholesale, never mutated in place. There is no lock:
    concurrent refreshes may race, but they compute the same value.
    """

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        """Initialize the cell.

        Args:
            ttl: Time-to-live in seconds for the stored value.
            clock: Monotonic clock in seconds (injectable for tests).
        """
        self._ttl = ttl
        self._clock = clock
        self._value: T | None = None
        self._computed_at: float | None = None

    def get(self) -> T | None:
        """Get the stored value if it is younger than the TTL.

        Returns:
            The value if fresh, None if stale or never set.
        """
        if self._computed_at is None:
            return None
        if self._clock() - self._computed_at >= self._ttl:
            return None
        return self._value

    def set(self, value: T) -> None:
        """Store a new value, stamped with the current time."""
        self._value = value
        self._computed_at = self._clock()

    def clear(self) -> None:
        """Forget the stored value."""
        self._value = None
        self._computed_at = None
