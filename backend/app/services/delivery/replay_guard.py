"""Replay protection for inbound webhooks: timestamp skew and event-id dedup."""

import logging
import time
from typing import Any, Callable, Optional

from app.core.cache import BoundedTTLCache

logger = logging.getLogger(__name__)

# Epoch values above this are milliseconds (10^10 seconds is the year 2286)
MILLISECOND_THRESHOLD = 10 ** 10


def normalize_timestamp(timestamp: Any) -> Optional[float]:
    """Epoch seconds from a seconds/milliseconds number or numeric string."""
    if timestamp is None or isinstance(timestamp, bool):
        return None
    try:
        value = float(timestamp)
    except (TypeError, ValueError):
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    if abs(value) > MILLISECOND_THRESHOLD:
        value = value / 1000.0
    return value


class ReplayGuard:
    """Timestamp freshness check plus a bounded, TTL-expiring set of seen event ids.

    One instance is shared by every webhook request of the process.
    """

    def __init__(
        self,
        max_skew_seconds: int = 300,
        capacity: int = BoundedTTLCache.DEFAULT_CAPACITY,
        ttl_seconds: float = BoundedTTLCache.DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.max_skew_seconds = max_skew_seconds
        self._clock = clock
        self._seen = BoundedTTLCache(capacity=capacity, ttl_seconds=ttl_seconds, clock=clock)

    def is_fresh(self, timestamp: Any, max_skew_seconds: Optional[int] = None) -> bool:
        skew = self.max_skew_seconds if max_skew_seconds is None else max_skew_seconds
        ts = normalize_timestamp(timestamp)
        if ts is None:
            return False
        return abs(self._clock() - ts) <= skew

    def is_duplicate(self, event_id: str) -> bool:
        return self._seen.contains(event_id)

    def mark_processed(self, event_id: str):
        self._seen.add(event_id)

    def claim(self, event_id: str) -> bool:
        """Atomically check and mark. False means another delivery already holds it."""
        return self._seen.add(event_id)

    def release(self, event_id: str):
        """Forget a claim whose processing failed so the upstream retry is accepted."""
        self._seen.discard(event_id)

    def stats(self) -> dict:
        return self._seen.stats()
