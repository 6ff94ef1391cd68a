"""Per-sender fixed-window rate limiting for inbound email."""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .logger import get_logger

logger = get_logger("rate_limiter")

CLEANUP_THRESHOLD = 10_000


@dataclass
class RateLimitResult:
    allowed: bool
    remaining_requests: int
    reset_time: float  # epoch seconds


@dataclass
class _Entry:
    count: int
    reset_time: float


class RateLimiter:
    """Allow ``max_requests`` per identifier within a fixed window.

    A denied request does not count against the window. State is process local
    and guarded by a lock, so one instance can be shared by worker threads.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_minutes: float = 15,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_minutes * 60
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def is_allowed(self, identifier: str) -> RateLimitResult:
        with self._lock:
            now = self._clock()
            if len(self._entries) > CLEANUP_THRESHOLD:
                self._cleanup(now)

            entry = self._entries.get(identifier)
            if entry is None or now > entry.reset_time:
                entry = _Entry(count=1, reset_time=now + self.window_seconds)
                self._entries[identifier] = entry
                return RateLimitResult(True, self.max_requests - 1, entry.reset_time)

            if entry.count >= self.max_requests:
                logger.warning(f"Rate limit exceeded for {identifier}")
                return RateLimitResult(False, 0, entry.reset_time)

            entry.count += 1
            return RateLimitResult(True, self.max_requests - entry.count, entry.reset_time)

    def get_status(self, identifier: str) -> RateLimitResult:
        """Current allowance without consuming a request."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(identifier)
            if entry is None or now > entry.reset_time:
                return RateLimitResult(True, self.max_requests, now + self.window_seconds)
            remaining = max(0, self.max_requests - entry.count)
            return RateLimitResult(remaining > 0, remaining, entry.reset_time)

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(identifier, None)

    def _cleanup(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now > entry.reset_time]
        for key in expired:
            del self._entries[key]
        logger.debug(f"Rate limiter cleanup removed {len(expired)} expired entries")

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["RateLimiter", "RateLimitResult"]
