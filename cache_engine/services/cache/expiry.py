"""
Expiry Manager

TTL arithmetic for cache entries. Expiry is lazy: every read re-checks
liveness, so no background sweep is needed for correctness.
"""

from typing import Optional, Union

from ...core.clock import Clock, SystemClock
from ...domain.cache.entities import CacheEntry
from ...domain.cache.value_objects import TTL

TTLLike = Union[None, int, float, TTL]


def compute_expires_at(created_at: float, ttl: TTLLike) -> Optional[float]:
    """
    Absolute expiry for an entry created at ``created_at``.

    Returns None when ``ttl`` is None. Raises InvalidTTL for ttl <= 0.
    """
    resolved = TTL.coerce(ttl)
    if resolved is None:
        return None
    return created_at + resolved.seconds


def is_live(expires_at: Optional[float], now: float) -> bool:
    """An entry is live strictly before its expiry instant."""
    return expires_at is None or now < expires_at


class ExpiryManager:
    """Binds the expiry functions to a clock."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def now(self) -> float:
        return self.clock.monotonic()

    def needs_refresh(
        self, entry: CacheEntry, fraction: float, now: Optional[float] = None
    ) -> bool:
        """
        True when a live entry has less than ``fraction`` of its original
        TTL left. Entries without a TTL never need refreshing.
        """
        if entry.ttl is None or entry.expires_at is None:
            return False
        current = self.now() if now is None else now
        if not is_live(entry.expires_at, current):
            return False
        return (entry.expires_at - current) < fraction * entry.ttl
