"""Wall-clock budget shared by the sequential stages of one search call."""

import time
from collections.abc import Callable
from dataclasses import dataclass, field

# Floor for the whole-call budget
MIN_BUDGET_MS = 200


@dataclass
class Budget:
    """Absolute deadline for a search call, handing out bounded stage timeouts.

    The budget never aborts a stage that is already running. It only decides
    how long the next stage may take, or that it must be skipped.

    Usage:
        budget = Budget.create(1800)
        timeout_ms = budget.timeout_for(900, 80)
        if timeout_ms:
            ...  # run the stage with timeout_ms
    """

    deadline: float  # seconds on the clock below
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @classmethod
    def create(cls, total_ms: float, clock: Callable[[], float] = time.monotonic) -> "Budget":
        """Start a budget of total_ms (at least 200ms) from now."""
        total = max(MIN_BUDGET_MS, float(total_ms))
        return cls(deadline=clock() + total / 1000, clock=clock)

    def remaining(self) -> float:
        """Milliseconds left before the deadline (negative once it has passed)."""
        return (self.deadline - self.clock()) * 1000

    def timeout_for(self, stage_max_ms: float, stage_min_ms: float) -> int:
        """Timeout for the next stage, or 0 if it must be skipped.

        Returns remaining time clamped to [stage_min_ms, stage_max_ms], or 0
        once less than stage_min_ms is left.
        """
        remaining = self.remaining()
        if remaining < stage_min_ms:
            return 0
        return round(min(max(remaining, stage_min_ms), stage_max_ms))
