"""
Entry Store

Bounded map from key to CacheEntry with LRU recency tracking.
Single source of truth for "is this key present and live".
"""

import itertools
import threading
from collections import OrderedDict
from typing import Any, Iterable, List, Optional, Tuple

import structlog

from ...core.clock import Clock, SystemClock
from ...core.config import validate_capacity
from ...domain.cache.entities import CacheEntry
from ...domain.cache.value_objects import TTL, CacheTag
from ...monitoring.cache_metrics import MetricsCollector
from .expiry import ExpiryManager, TTLLike, compute_expires_at, is_live
from .invalidation import InvalidationIndex

logger = structlog.get_logger(__name__)


class EntryStore:
    """
    Bounded, thread-safe LRU entry store.

    ``_entries`` is ordered from least to most recently used; every
    successful get/touch/put moves the key to the end. Entry and tag index
    updates for one operation happen under ``_lock`` so the index never
    disagrees with the entries.
    """

    def __init__(
        self,
        capacity: int,
        clock: Optional[Clock] = None,
        index: Optional[InvalidationIndex] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._capacity = validate_capacity(capacity)
        self.clock = clock or SystemClock()
        self.expiry = ExpiryManager(self.clock)
        self.index = index or InvalidationIndex()
        self.metrics = metrics or MetricsCollector()

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._recency = itertools.count(1)
        self._lock = threading.RLock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, key: str) -> Tuple[Any, bool]:
        """Return ``(value, found)``. Expired entries are purged and reported absent."""
        entry = self.get_entry(key)
        if entry is None:
            return None, False
        return entry.value, True

    def get_entry(self, key: str, touch: bool = True) -> Optional[CacheEntry]:
        """
        Live entry snapshot for ``key`` or None.

        With ``touch`` the key becomes most recently used.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if not is_live(entry.expires_at, self.clock.monotonic()):
                self._discard(key, entry)
                return None

            if touch:
                entry = entry.touched(next(self._recency))
                self._entries[key] = entry
                self._entries.move_to_end(key)
            return entry

    def put(
        self,
        key: str,
        value: Any,
        ttl: TTLLike = None,
        tags: Optional[Iterable[str]] = None,
    ) -> CacheEntry:
        """
        Insert or replace ``key``.

        A new key arriving at capacity evicts the least recently used entry
        first. Tags no longer present on the entry are removed from the index.
        """
        tag_set = frozenset(CacheTag.coerce(tag).value for tag in (tags or ()))
        now = self.clock.monotonic()
        # Raises InvalidTTL before anything is mutated.
        resolved = TTL.coerce(ttl)
        expires_at = compute_expires_at(now, resolved)

        with self._lock:
            previous = self._entries.pop(key, None)
            if previous is None:
                while len(self._entries) >= self._capacity:
                    self._evict_one(now)

            entry = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                expires_at=expires_at,
                ttl=None if resolved is None else resolved.seconds,
                tags=tag_set,
                recency_marker=next(self._recency),
            )
            self._entries[key] = entry

            if previous is not None:
                self.index.untag(key, previous.tags - tag_set)
            self.index.tag(key, tag_set)

        return entry

    def remove(self, key: str) -> bool:
        """Delete ``key``. Returns True only if a live entry was removed."""
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self.index.untag(key, entry.tags)
            return is_live(entry.expires_at, self.clock.monotonic())

    def remove_all(self, keys: Iterable[str]) -> int:
        """Batch remove. Returns how many live entries were removed."""
        with self._lock:
            return sum(1 for key in keys if self.remove(key))

    def touch(self, key: str) -> bool:
        """Mark ``key`` recently used without changing value or TTL."""
        return self.get_entry(key, touch=True) is not None

    def purge_expired(self) -> int:
        """Drop every expired entry. Only bounds memory; reads already ignore them."""
        with self._lock:
            now = self.clock.monotonic()
            expired = [
                (key, entry)
                for key, entry in self._entries.items()
                if not is_live(entry.expires_at, now)
            ]
            for key, entry in expired:
                self._discard(key, entry)

        if expired:
            logger.debug("cache_expired_purged", count=len(expired))
        return len(expired)

    def resize(self, capacity: int) -> int:
        """Change capacity, evicting LRU entries if needed. Returns evicted count."""
        capacity = validate_capacity(capacity)
        evicted = 0
        with self._lock:
            self._capacity = capacity
            now = self.clock.monotonic()
            while len(self._entries) > self._capacity:
                self._evict_one(now)
                evicted += 1
        return evicted

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self.index.clear()
            return count

    def keys(self) -> List[str]:
        """Live keys from least to most recently used."""
        with self._lock:
            now = self.clock.monotonic()
            return [
                key
                for key, entry in self._entries.items()
                if is_live(entry.expires_at, now)
            ]

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return self.get_entry(key, touch=False) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_one(self, now: float) -> None:
        victim_key, victim = self._entries.popitem(last=False)
        self.index.untag(victim_key, victim.tags)
        if is_live(victim.expires_at, now):
            self.metrics.record_eviction()
            logger.debug("cache_entry_evicted", key=victim_key)

    def _discard(self, key: str, entry: CacheEntry) -> None:
        del self._entries[key]
        self.index.untag(key, entry.tags)
