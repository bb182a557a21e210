"""
Simple In-Memory Caching System
Process-local, explicitly time-bounded storage for ephemeral signals
(attempt counters, throttling windows). Nothing here is relied on for
correctness of money movement; entries simply vanish when they expire.
"""

import threading
import time
import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class ExpiringCache:
    """Thread-safe in-memory cache with TTL support"""

    def __init__(self, default_ttl: float = 300, clock: Optional[Callable[[], float]] = None):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._clock = clock or time.monotonic
        self.default_ttl = default_ttl
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                if entry["expires_at"] > self._clock():
                    self.stats["hits"] += 1
                    return entry["value"]
                del self._cache[key]
                self.stats["evictions"] += 1

            self.stats["misses"] += 1
            return default

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl

        with self._lock:
            now = self._clock()
            self._cache[key] = {
                "value": value,
                "created_at": now,
                "expires_at": now + ttl,
            }
            self.stats["sets"] += 1
            self._cleanup_expired(now)

    def increment(self, key: str, ttl: Optional[float] = None) -> int:
        """
        Increment a counter and return the new value.
        The window starts at the first increment and is not extended by later ones.
        """
        with self._lock:
            now = self._clock()
            entry = self._cache.get(key)
            if entry is None or entry["expires_at"] <= now:
                self.set(key, 1, ttl)
                return 1
            entry["value"] += 1
            return entry["value"]

    def remaining_ttl(self, key: str) -> float:
        """Seconds until the key expires, 0 when absent"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return 0.0
            return max(0.0, entry["expires_at"] - self._clock())

    def delete(self, key: str) -> bool:
        """Delete key from cache"""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                self.stats["deletes"] += 1
                return True
            return False

    def clear(self) -> None:
        """Clear all cache entries"""
        with self._lock:
            cleared_count = len(self._cache)
            self._cache.clear()
            self.stats["deletes"] += cleared_count

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired"""
        return self.get(key, None) is not None

    def __len__(self) -> int:
        with self._lock:
            self._cleanup_expired(self._clock())
            return len(self._cache)

    def _cleanup_expired(self, current_time: float) -> None:
        """Remove expired entries"""
        expired_keys = [
            key
            for key, entry in self._cache.items()
            if entry["expires_at"] <= current_time
        ]

        for key in expired_keys:
            del self._cache[key]
            self.stats["evictions"] += 1

        if expired_keys:
            logger.debug(f"Cache evicted {len(expired_keys)} expired entries")
