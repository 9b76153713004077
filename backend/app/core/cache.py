"""
In-memory bounded cache with TTL support.

Used as the webhook deduplication store. Entries expire after a fixed TTL and
the cache never holds more than ``capacity`` keys: inserting into a full cache
evicts the single oldest entry by insertion time (reads never reorder).

This cache lives in process memory only. Two replicas of the service each keep
their own copy, so deduplication is only guaranteed within one process.
"""
import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Hashable, Optional
import logging

logger = logging.getLogger(__name__)


class BoundedTTLCache:
    """Insertion-ordered key store with lazy expiry and oldest-first eviction."""

    DEFAULT_CAPACITY = 10000
    DEFAULT_TTL_SECONDS = 3600

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[Hashable, float]" = OrderedDict()
        self._lock = threading.Lock()
        self._evictions = 0

    def _purge_expired(self, now: float):
        """Drop expired entries. Caller holds the lock.

        TTL is uniform, so insertion order is expiry order and expired
        entries are always at the front.
        """
        while self._entries:
            key, first_seen = next(iter(self._entries.items()))
            if now - first_seen < self.ttl_seconds:
                break
            self._entries.popitem(last=False)

    def contains(self, key: Hashable) -> bool:
        """True if key was added and has not expired."""
        with self._lock:
            self._purge_expired(self._clock())
            return key in self._entries

    def add(self, key: Hashable) -> bool:
        """Insert key. Returns False (and changes nothing) if already present."""
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            if key in self._entries:
                return False
            if len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.warning(f"Dedup cache full ({self.capacity}), evicted oldest entry {evicted}")
            self._entries[key] = now
            return True

    def discard(self, key: Hashable):
        with self._lock:
            self._entries.pop(key, None)

    def first_seen(self, key: Hashable) -> Optional[float]:
        with self._lock:
            self._purge_expired(self._clock())
            return self._entries.get(key)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._entries)

    def stats(self) -> Dict[str, float]:
        """Get cache statistics."""
        with self._lock:
            self._purge_expired(self._clock())
            return {
                "size": len(self._entries),
                "capacity": self.capacity,
                "ttl_seconds": self.ttl_seconds,
                "evictions": self._evictions,
            }
