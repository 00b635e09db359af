"""
Cache Metrics Collector

Thread-safe counters for hits, misses, errors and evictions plus the
write-behind and refresh-ahead counters. Counters only grow until an
explicit reset(). When a prometheus CollectorRegistry is supplied every
increment is mirrored to a prometheus Counter.
"""

import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import structlog
from prometheus_client import CollectorRegistry, Counter

from ..constants import MAX_RECORDED_FAILURES, METRICS_NAMESPACE
from ..domain.cache.entities import CacheStats

logger = structlog.get_logger(__name__)

_COUNTERS = {
    "hits": "Lookups served from the cache",
    "misses": "Lookups that were not cached",
    "errors": "Backing store and refresh failures",
    "evictions": "Live entries evicted to respect capacity",
    "loads": "Backing store loads started",
    "refreshes": "Refresh-ahead loads started",
    "flushed_writes": "Write-behind writes persisted",
    "flush_exhausted": "Write-behind writes that failed every retry",
}


class MetricsCollector:
    """
    Collects cache counters.

    Any component may increment concurrently; readers get consistent
    snapshots through stats().
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        namespace: str = METRICS_NAMESPACE,
        max_failures: int = MAX_RECORDED_FAILURES,
    ):
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {name: 0 for name in _COUNTERS}
        self._failures: Deque[Dict[str, Any]] = deque(maxlen=max_failures)
        self._prometheus: Dict[str, Counter] = {}

        if registry is not None:
            for name, documentation in _COUNTERS.items():
                self._prometheus[name] = Counter(
                    f"{namespace}_{name}", documentation, registry=registry
                )

    def _increment(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        with self._lock:
            self._counts[name] += amount
        counter = self._prometheus.get(name)
        if counter is not None:
            counter.inc(amount)

    def record_hit(self) -> None:
        self._increment("hits")

    def record_miss(self) -> None:
        self._increment("misses")

    def record_error(self) -> None:
        self._increment("errors")

    def record_eviction(self) -> None:
        self._increment("evictions")

    def record_load(self) -> None:
        self._increment("loads")

    def record_refresh(self) -> None:
        self._increment("refreshes")

    def record_flushed(self, count: int = 1) -> None:
        self._increment("flushed_writes", count)

    def report_failure(
        self,
        kind: str,
        error: BaseException,
        key: Optional[str] = None,
        count_as_error: bool = True,
    ) -> None:
        """
        Record a failure that has no caller to propagate to.

        Used for refresh-ahead errors and exhausted write-behind entries.
        """
        record = {
            "kind": kind,
            "key": key,
            "error": str(error),
            "error_type": type(error).__name__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self._failures.append(record)
        if count_as_error:
            self.record_error()

    def record_flush_exhausted(self, error: BaseException, key: str) -> None:
        self._increment("flush_exhausted")
        self.report_failure("flush_exhausted", error, key=key)

    def failures(self) -> List[Dict[str, Any]]:
        """Reported failures, oldest first."""
        with self._lock:
            return list(self._failures)

    def stats(self) -> CacheStats:
        with self._lock:
            counts = dict(self._counts)
        return CacheStats(**counts)

    def reset(self) -> None:
        """
        Zero every counter and forget reported failures.

        Prometheus counters are monotonic by contract and are left as is.
        """
        with self._lock:
            for name in self._counts:
                self._counts[name] = 0
            self._failures.clear()
        logger.info("cache_metrics_reset")
