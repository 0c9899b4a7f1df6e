from __future__ import annotations

import time


class SliceDeadline:
    """Wall-clock budget for one provider slice (monotonic clock)."""

    def __init__(self, budget_s: float) -> None:
        self.budget_s = float(budget_s)
        self._started = time.monotonic()

    @property
    def elapsed_s(self) -> float:
        return time.monotonic() - self._started

    @property
    def remaining_s(self) -> float:
        return max(0.0, self.budget_s - self.elapsed_s)

    @property
    def expired(self) -> bool:
        return self.elapsed_s >= self.budget_s
