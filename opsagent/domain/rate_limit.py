"""Per-user rate limiting of model round-trips.

Fixed window: the first increment of a window starts it, the counter resets
when the window elapses.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int


class RateLimiter(Protocol):
    def check(self, user_id: str) -> RateLimitStatus:
        ...

    def increment(self, user_id: str) -> RateLimitStatus:
        ...


class InMemoryRateLimiter:
    def __init__(self, max_calls: int = 100, window_seconds: int = 3600, clock: Clock = utcnow) -> None:
        self.max_calls = max_calls
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[int, datetime]] = {}

    def _current(self, user_id: str, now: datetime) -> tuple[int, datetime]:
        count, reset_at = self._windows.get(user_id, (0, now + self.window))
        if reset_at <= now:
            return 0, now + self.window
        return count, reset_at

    def _status(self, count: int, reset_at: datetime) -> RateLimitStatus:
        return RateLimitStatus(
            allowed=count < self.max_calls,
            remaining=max(0, self.max_calls - count),
            reset_at=reset_at,
            limit=self.max_calls,
        )

    def check(self, user_id: str) -> RateLimitStatus:
        with self._lock:
            return self._status(*self._current(user_id, self._clock()))

    def increment(self, user_id: str) -> RateLimitStatus:
        with self._lock:
            count, reset_at = self._current(user_id, self._clock())
            count += 1
            self._windows[user_id] = (count, reset_at)
            return self._status(count, reset_at)

    def reset(self, user_id: str) -> None:
        with self._lock:
            self._windows.pop(user_id, None)

