"""
Simple In-Memory TTL Store
Key-value store with per-entry expiry, used for short-lived counters such as
the anti-fraud suspicious-activity tally. Injected into services so tests can
drive time through the clock argument.
"""

import time
import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class SimpleCache:
    """In-memory cache with TTL support and explicit eviction"""

    def __init__(self, default_ttl: int = 300, clock: Optional[Callable[[], float]] = None):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self.default_ttl = default_ttl
        self._clock = clock or time.time
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache"""
        self._cleanup_expired()

        if key in self._cache:
            self.stats["hits"] += 1
            return self._cache[key]["value"]

        self.stats["misses"] += 1
        return default

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl

        now = self._clock()
        self._cache[key] = {
            "value": value,
            "created_at": now,
            "expires_at": now + ttl,
        }
        self.stats["sets"] += 1

    def increment(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int:
        """
        Increment a counter. The expiry is fixed when the counter is created and
        is not extended by later increments.
        """
        self._cleanup_expired()
        entry = self._cache.get(key)
        if entry is None:
            self.set(key, amount, ttl)
            return amount

        entry["value"] += amount
        return entry["value"]

    def ttl_remaining(self, key: str) -> Optional[float]:
        self._cleanup_expired()
        entry = self._cache.get(key)
        if entry is None:
            return None
        return entry["expires_at"] - self._clock()

    def delete(self, key: str) -> bool:
        """Delete key from cache"""
        if key in self._cache:
            del self._cache[key]
            self.stats["deletes"] += 1
            return True
        return False

    def clear(self) -> None:
        """Clear all cache entries"""
        cleared_count = len(self._cache)
        self._cache.clear()
        self.stats["deletes"] += cleared_count

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired"""
        self._cleanup_expired()
        return key in self._cache

    def evict_expired(self) -> int:
        """Explicit eviction pass; returns how many entries were dropped"""
        before = self.stats["evictions"]
        self._cleanup_expired()
        return self.stats["evictions"] - before

    def _cleanup_expired(self) -> None:
        """Remove expired entries"""
        current_time = self._clock()
        expired_keys = [
            key
            for key, entry in self._cache.items()
            if entry["expires_at"] <= current_time
        ]

        for key in expired_keys:
            del self._cache[key]
            self.stats["evictions"] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (
            (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        )

        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._cache),
        }
