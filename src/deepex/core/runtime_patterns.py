"""
Deadline helpers for time-boxed invocations.
"""

import time
from collections.abc import Callable


def remaining_budget(deadline: float, clock: Callable[[], float] = time.monotonic) -> float:
    """Calculate remaining time budget from an absolute deadline."""
    return max(0.0, deadline - clock())


class TimeBudget:
    """Wall-clock allowance for one invocation, checked cooperatively."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self.started = clock()
        self.deadline = self.started + seconds

    def elapsed(self) -> float:
        return self._clock() - self.started

    def remaining(self) -> float:
        return remaining_budget(self.deadline, self._clock)

    def exceeded(self) -> bool:
        return self._clock() >= self.deadline
