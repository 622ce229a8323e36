"""
Fixed-window rate limiter keyed by arbitrary strings.

Process-local only: the poller runs as a single instance, so there is nothing
to coordinate across processes.
"""

import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # Epoch seconds when the current window closes


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.time):
        self.limit = max(0, limit)
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def try_consume(self, key: str) -> RateLimitResult:
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now >= window.reset_at:
            reset_at = now + self.window_seconds
            self._windows[key] = _Window(count=1, reset_at=reset_at)
            return RateLimitResult(
                allowed=self.limit > 0,
                remaining=max(self.limit - 1, 0),
                reset_at=reset_at,
            )

        next_count = window.count + 1
        allowed = next_count <= self.limit
        # A rejected attempt is not charged against the window
        if allowed:
            window.count = next_count
        return RateLimitResult(
            allowed=allowed,
            remaining=self.limit - next_count if allowed else 0,
            reset_at=window.reset_at,
        )

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)
