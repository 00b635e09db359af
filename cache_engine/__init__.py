"""
Cache Engine

Bounded asyncio key/value cache that sits between application code and a
slower backing store. Provides LRU eviction, TTL expiration, tag-based
invalidation, single-flight stampede protection and write-behind persistence.
"""

from .core.clock import Clock, ManualClock, SystemClock
from .core.config import CacheSettings, get_settings
from .core.logging import configure_logging
from .domain.cache.entities import CacheEntry, CacheStats, FlushReport, PendingWrite
from .domain.cache.exceptions import (
    BackingStoreError,
    BackingStoreTimeout,
    CacheClosedException,
    CacheException,
    CapacityMisconfigured,
    FlushExhausted,
    InvalidTTL,
    NotFound,
)
from .domain.cache.repository_interfaces import BackingStore
from .domain.cache.value_objects import TTL, CacheKey, CacheTag, WriteMode
from .infrastructure.backing_store.memory_store import InMemoryBackingStore
from .services.cache.cache_manager import CacheManager

__all__ = [
    "BackingStore",
    "BackingStoreError",
    "BackingStoreTimeout",
    "CacheClosedException",
    "CacheEntry",
    "CacheException",
    "CacheKey",
    "CacheManager",
    "CacheSettings",
    "CacheStats",
    "CacheTag",
    "CapacityMisconfigured",
    "Clock",
    "FlushExhausted",
    "FlushReport",
    "InMemoryBackingStore",
    "InvalidTTL",
    "ManualClock",
    "NotFound",
    "PendingWrite",
    "SystemClock",
    "TTL",
    "WriteMode",
    "configure_logging",
    "get_settings",
]
