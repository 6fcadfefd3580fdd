"""
Sliding-window rate limiting keyed by caller and operation.

Each key owns an ordered sequence of request timestamps. A check prunes
timestamps that fell out of the window, rejects the call when the remaining
count is at the limit, and otherwise records the call. Check and record
happen under one lock so concurrent callers cannot both slip under the limit.
"""

import threading
import time
import logging
from typing import Callable, Dict, Optional
from dataclasses import dataclass
from collections import deque

from .exceptions import RateLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """Request budget for one operation."""

    limit: int
    window_seconds: float = 60.0

    def __post_init__(self):
        """Validate configuration."""
        if self.limit <= 0:
            raise ValueError("limit must be positive")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


class SlidingWindowRateLimiter:
    """Process-local sliding-window limiter."""

    def __init__(self, clock: Optional[Callable[[], float]] = None, sweep_interval: float = 60.0):
        self._clock = clock or time.monotonic
        self._buckets: Dict[str, deque] = {}
        self._windows: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._last_sweep = self._clock()

    def _prune(self, key: str, now: float, window_seconds: float) -> Optional[deque]:
        """Drop expired timestamps; a bucket left empty is removed."""
        bucket = self._buckets.get(key)
        if bucket is None:
            return None
        cutoff = now - window_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()
        if not bucket:
            del self._buckets[key]
            self._windows.pop(key, None)
            return None
        return bucket

    def _sweep(self, now: float) -> None:
        # Idle keys are never pruned by their own calls
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        for key in list(self._buckets):
            self._prune(key, now, self._windows.get(key, 60.0))

    def tracked_keys(self) -> int:
        """Number of keys holding timestamps."""
        with self._lock:
            return len(self._buckets)

    def enforce(self, key: str, limit: int, window_seconds: float = 60.0) -> None:
        """
        Record one call for ``key`` or reject it.

        Raises:
            RateLimitError: If ``limit`` calls already happened inside the window
        """
        with self._lock:
            now = self._clock()
            self._sweep(now)
            bucket = self._prune(key, now, window_seconds)

            if bucket is not None and len(bucket) >= limit:
                retry_after = max(0.0, bucket[0] + window_seconds - now)
                logger.warning(
                    f"Rate limit exceeded for {key}",
                    extra={
                        "metadata": {
                            "key": key,
                            "limit": limit,
                            "window_seconds": window_seconds,
                            "retry_after": round(retry_after, 3),
                        }
                    },
                )
                raise RateLimitError(
                    "Too many requests. Please retry shortly.",
                    key=key,
                    limit=limit,
                    window_seconds=window_seconds,
                )

            if bucket is None:
                bucket = self._buckets[key] = deque()
            bucket.append(now)
            self._windows[key] = window_seconds

    def enforce_rule(self, key: str, rule: RateLimitRule) -> None:
        """Apply a predefined rule to ``key``."""
        self.enforce(key, rule.limit, rule.window_seconds)

    def get_usage(self, key: str, window_seconds: float = 60.0) -> int:
        """Number of recorded calls for ``key`` still inside the window."""
        with self._lock:
            bucket = self._prune(key, self._clock(), window_seconds)
            return len(bucket) if bucket is not None else 0

    def reset(self, key: Optional[str] = None) -> None:
        """Forget recorded calls for one key, or for every key."""
        with self._lock:
            if key is None:
                self._buckets.clear()
                self._windows.clear()
            else:
                self._buckets.pop(key, None)
                self._windows.pop(key, None)


_default_limiter = SlidingWindowRateLimiter()


def get_rate_limiter() -> SlidingWindowRateLimiter:
    """Return the process-wide limiter."""
    return _default_limiter
