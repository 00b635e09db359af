"""
Cache Domain Entities

Immutable records owned by the entry store, write-behind queue and
stampede guard. Entries are replaced on update, never mutated in place.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .value_objects import CacheEntryStatus


@dataclass(frozen=True)
class CacheEntry:
    """
    A cached value and its bookkeeping.

    ``created_at``/``expires_at`` are monotonic clock readings.
    ``expires_at`` of None means the entry never expires.
    ``recency_marker`` increases on every put/get/touch and orders entries
    for LRU eviction.
    """

    key: str
    value: Any
    created_at: float
    expires_at: Optional[float] = None
    ttl: Optional[float] = None
    tags: FrozenSet[str] = frozenset()
    recency_marker: int = 0

    def is_live(self, now: float) -> bool:
        return self.expires_at is None or now < self.expires_at

    def remaining_ttl(self, now: float) -> Optional[float]:
        """Seconds left before expiry, None for entries that never expire."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - now)

    def status(self, now: float) -> CacheEntryStatus:
        return CacheEntryStatus.ACTIVE if self.is_live(now) else CacheEntryStatus.EXPIRED

    def touched(self, recency_marker: int) -> "CacheEntry":
        return replace(self, recency_marker=recency_marker)


@dataclass
class PendingWrite:
    """A write accepted by write-behind and not yet persisted."""

    key: str
    value: Any
    enqueued_at: float
    attempts: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[BaseException] = None

    def is_due(self, now: float) -> bool:
        return now >= self.next_attempt_at


@dataclass
class InFlightFetch:
    """
    One backing-store fetch shared by a leader and its followers.

    Lives only until ``task`` completes.
    """

    key: str
    task: "asyncio.Future[Any]"
    started_at: float
    waiters: int = 1

    @property
    def done(self) -> bool:
        return self.task.done()


@dataclass
class FlushReport:
    """Outcome of one flush or drain."""

    flushed: List[str] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)
    exhausted: List[str] = field(default_factory=list)
    superseded: List[str] = field(default_factory=list)

    def merge(self, other: "FlushReport") -> "FlushReport":
        self.flushed.extend(other.flushed)
        self.retried.extend(other.retried)
        self.exhausted.extend(other.exhausted)
        self.superseded.extend(other.superseded)
        return self

    @property
    def clean(self) -> bool:
        return not self.retried and not self.exhausted

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "flushed": list(self.flushed),
            "retried": list(self.retried),
            "exhausted": list(self.exhausted),
            "superseded": list(self.superseded),
        }


class CacheStats(BaseModel):
    """Point-in-time snapshot of cache counters."""

    model_config = ConfigDict(frozen=True)

    hits: int = Field(0, ge=0, description="Lookups served from the cache")
    misses: int = Field(0, ge=0, description="Lookups that were not cached")
    errors: int = Field(0, ge=0, description="Backing store and refresh failures")
    evictions: int = Field(0, ge=0, description="Live entries evicted for capacity")
    loads: int = Field(0, ge=0, description="Backing store loads started")
    refreshes: int = Field(0, ge=0, description="Refresh-ahead loads started")
    flushed_writes: int = Field(0, ge=0, description="Write-behind writes persisted")
    flush_exhausted: int = Field(
        0, ge=0, description="Write-behind writes that failed every retry"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total
