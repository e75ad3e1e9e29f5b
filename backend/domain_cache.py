"""
Thread-safe cache of DNS domain verdicts with TTL.
Lets the domain-risk validator skip repeated MX lookups for the same domain
within one upload (lists are usually dominated by a few providers).
"""

import threading
import time


class DomainCache:
    """
    Thread-safe cache mapping a domain to the outcome of its MX lookup.

    Only definitive verdicts should be stored; inconclusive results (DNS
    timeouts) are retried on the next record.
    """

    def __init__(self, ttl_minutes: int = 30):
        self._cache: dict[str, tuple[tuple[str, str] | None, float]] = {}
        self._lock = threading.Lock()
        self.ttl_seconds = ttl_minutes * 60

    def get(self, domain: str) -> tuple[bool, tuple[str, str] | None]:
        """
        Look up a cached verdict.

        Returns:
            (hit, verdict). verdict is None for a domain that resolved fine
            (no rejection to report).
        """
        domain_lower = domain.lower()
        with self._lock:
            entry = self._cache.get(domain_lower)
            if entry is None:
                return False, None

            verdict, checked_at = entry
            if time.monotonic() - checked_at > self.ttl_seconds:
                del self._cache[domain_lower]
                return False, None

            return True, verdict

    def set(self, domain: str, verdict: tuple[str, str] | None) -> None:
        """Store the verdict for a domain (None means the domain has mail servers)."""
        with self._lock:
            self._cache[domain.lower()] = (verdict, time.monotonic())

    def clear(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            self._cache.clear()

    def size(self) -> int:
        """Get number of entries in cache."""
        with self._lock:
            return len(self._cache)
