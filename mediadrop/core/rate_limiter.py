"""Sliding window admission control keyed by client identity.

Each key keeps the instants of its admissions inside a trailing window.
A call is admitted while fewer than ``max_requests`` instants remain in the
window; rejected calls are not recorded.
"""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class SlidingWindowRateLimiter:
    """Per-key sliding window rate limiter.

    The prune, count and record steps of :meth:`admit` run under a single lock,
    so two concurrent callers can never both take the last free slot. The lock
    is a ``threading.Lock`` because FastAPI may call sync dependencies from its
    worker thread pool.

    Example:
        limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=3600)
        if not limiter.admit(client_ip):
            # Return 429 with Retry-After header
            pass
    """

    def __init__(
        self,
        max_requests: int = 5,
        window_seconds: float = 3600.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        """Initialize rate limiter.

        Args:
            max_requests: Admissions allowed per key inside one window.
            window_seconds: Length of the trailing window in seconds.
            clock: Monotonic time source, injectable for tests.
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self._clock = clock or time.monotonic
        self._buckets: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, bucket: Deque[float], now: float) -> None:
        """Drop instants that left the window. Caller holds the lock."""
        cutoff = now - self.window_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def admit(self, key: str) -> bool:
        """Check and record one admission for ``key``.

        Args:
            key: Client identity, usually the remote IP address.

        Returns:
            True if the call is admitted, False if the window is full.
        """
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = deque()
                self._buckets[key] = bucket

            self._prune(bucket, now)

            if len(bucket) >= self.max_requests:
                logger.debug(
                    "rate_limit_window_full",
                    admitted_in_window=len(bucket),
                    max_requests=self.max_requests,
                )
                return False

            bucket.append(now)
            return True

    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` gets a free slot (0.0 if one is free now)."""
        with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0.0
            now = self._clock()
            self._prune(bucket, now)
            if len(bucket) < self.max_requests:
                return 0.0
            return max(0.0, bucket[0] + self.window_seconds - now)

    def remaining(self, key: str) -> int:
        """Admissions still available to ``key`` in the current window."""
        with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return self.max_requests
            self._prune(bucket, self._clock())
            return max(0, self.max_requests - len(bucket))

    def purge_idle(self) -> int:
        """Forget keys with no admissions left in the window.

        Returns:
            Number of keys removed.
        """
        with self._lock:
            now = self._clock()
            idle = []
            for key, bucket in self._buckets.items():
                self._prune(bucket, now)
                if not bucket:
                    idle.append(key)
            for key in idle:
                del self._buckets[key]

        if idle:
            logger.debug("rate_limit_idle_keys_purged", count=len(idle))
        return len(idle)

    def reset(self, key: Optional[str] = None) -> None:
        """Reset one key's bucket, or every bucket when ``key`` is None."""
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

    def get_key_count(self) -> int:
        """Number of keys currently tracked."""
        return len(self._buckets)
