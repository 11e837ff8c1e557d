"""
Rate limiting for the public emergency endpoints

Fixed window per key (source IP): the first hit opens a window of
``window_seconds``; up to ``limit`` hits are admitted inside it and the rest
are refused until the window closes.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


@dataclass
class _Window:
    started_at: float
    count: int = 0


class FixedWindowRateLimiter:
    """
    Fixed window rate limiter.

    Thread-safe; the lock is only held for the counter update.
    """

    def __init__(self, limit: int, window_seconds: float = 60,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize rate limiter.

        Args:
            limit: Maximum requests per window
            window_seconds: Window size in seconds (default 60)
            clock: Monotonic time source, injectable for tests
        """
        self.limit = max(1, limit)
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.RLock()

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        """
        Count a request for ``key`` and report whether it is admitted.

        Refused requests are not counted.
        """
        now = self._clock()

        with self._lock:
            window = self._windows.get(key)
            if window is None or now - window.started_at >= self.window_seconds:
                window = _Window(started_at=now)
                self._windows[key] = window

            reset_at = window.started_at + self.window_seconds

            if window.count >= self.limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, reset_at - now)
                )

            window.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=self.limit - window.count,
                reset_at=reset_at
            )

    def get_stats(self, key: str) -> Dict[str, float]:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            count = 0
            if window is not None and now - window.started_at < self.window_seconds:
                count = window.count
            return {
                "current": count,
                "limit": self.limit,
                "remaining": max(0, self.limit - count),
                "window_seconds": self.window_seconds
            }

    def reset(self, key: Optional[str] = None) -> None:
        """
        Reset rate limit counters.

        Args:
            key: Specific key to reset, or None to reset all
        """
        with self._lock:
            if key:
                self._windows.pop(key, None)
            else:
                self._windows.clear()

    def cleanup_expired(self) -> int:
        """Drop closed windows. Returns the number of keys removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items()
                       if now - window.started_at >= self.window_seconds]
            for key in expired:
                del self._windows[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
