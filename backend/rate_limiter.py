"""
In-memory upload rate limiter.
Limits uploads per client IP and per authenticated owner with a sliding window.

Thread-safe implementation suitable for a single-process deployment.
"""

import time
from collections import defaultdict, deque
from threading import Lock


class RateLimiter:
    """
    Thread-safe sliding-window limiter over named buckets.

    A request is admitted only if every bucket it touches is under its limit;
    admitted requests are recorded in all of them.
    """

    def __init__(self) -> None:
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def _trim(self, bucket: str, cutoff: float) -> deque[float]:
        """Drop timestamps older than cutoff. Must be called with lock held."""
        hits = self._hits[bucket]
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits

    def is_allowed(
        self,
        buckets: dict[str, int],
        window: int = 60,
    ) -> tuple[bool, str, dict[str, int]]:
        """
        Check and record one request.

        Args:
            buckets: bucket name (e.g. "ip:1.2.3.4", "owner:alice") -> limit
            window: Time window in seconds

        Returns:
            Tuple of (allowed, reason, details); details maps each bucket to
            its request count in the window.
        """
        now = time.time()
        cutoff = now - window

        with self._lock:
            counts = {name: len(self._trim(name, cutoff)) for name in buckets}

            for name, limit in buckets.items():
                if counts[name] >= limit:
                    return (
                        False,
                        f"Rate limit exceeded for {name.split(':', 1)[0]} "
                        f"({limit} uploads per {window}s)",
                        {**counts, "window_seconds": window},
                    )

            for name in buckets:
                self._hits[name].append(now)
                counts[name] += 1

            # Keep the map from growing with idle buckets
            for name in [n for n, hits in self._hits.items() if not hits]:
                del self._hits[name]

            return True, "", {**counts, "window_seconds": window}

    def clear(self) -> None:
        """Clear all tracked requests (for testing)."""
        with self._lock:
            self._hits.clear()


# Global rate limiter instance
rate_limiter = RateLimiter()
