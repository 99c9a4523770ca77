"""Rolling request-weight budget (Binance `x-mbx-used-weight-1m`).

Usage:
    budget = WeightBudget(limit=1200, window_s=60)
    if budget.fits(weight):
        budget.consume(weight)

Thread-safety: none. The market data client mutates it from a single
event loop under its own lock.
"""
from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class WeightBudget:
    limit: int = 1200
    window_s: float = 60.0
    used: int = 0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    window_start: float = field(default=-1.0)

    def __post_init__(self) -> None:
        if self.window_start < 0:
            self.window_start = self.clock()

    def roll(self) -> bool:
        """Resets the counter once the window has elapsed. Returns True on reset."""
        now = self.clock()
        if now - self.window_start >= self.window_s:
            self.used = 0
            self.window_start = now
            return True
        return False

    def fits(self, weight: int) -> bool:
        self.roll()
        return self.used + weight <= self.limit

    def consume(self, weight: int) -> None:
        self.used += weight

    def refund(self, weight: int) -> None:
        self.used = max(0, self.used - weight)

    def observe(self, server_used: int) -> None:
        # The exchange's own count replaces the local estimate.
        self.roll()
        self.used = server_used

    def seconds_until_reset(self) -> float:
        return max(0.0, self.window_start + self.window_s - self.clock())

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


__all__ = ["WeightBudget"]
