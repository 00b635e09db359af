"""
Cache Manager Service

Explicit cache instance that wires the entry store, stampede guard,
backing store gateway and write-behind queue together, and exposes the
administrative surface: stats, invalidation, configure and shutdown.
"""

from typing import Any, Dict, Iterable, List, Optional

import structlog
from prometheus_client import CollectorRegistry

from ...core.clock import Clock, SystemClock
from ...core.config import CacheSettings, get_settings, validate_capacity, validate_default_ttl
from ...domain.cache.entities import CacheStats, FlushReport
from ...domain.cache.exceptions import FlushExhaustedException
from ...domain.cache.repository_interfaces import BackingStore
from ...infrastructure.backing_store.gateway import BackingStoreGateway
from ...monitoring.cache_metrics import MetricsCollector
from ..queues.retry import ExponentialBackoffRetry, RetryPolicy
from ..queues.workers import PeriodicWorker
from ..queues.write_behind import WriteBehindQueue
from .entry_store import EntryStore
from .invalidation import CacheInvalidationService
from .stampede import StampedeGuard
from .strategies import CacheStrategies, KeyLike, KeyLoader

logger = structlog.get_logger(__name__)

_UNSET: Any = object()


class CacheManager(CacheStrategies):
    """
    High-level cache service.

    Pass the instance to whatever needs caching; there is no module-level
    cache. Background work (write-behind flush, optional expiry sweep)
    starts on ``start()``, on ``async with`` or on the first write-behind
    set inside an event loop, and stops on ``shutdown()``.
    """

    def __init__(
        self,
        backing_store: BackingStore,
        settings: Optional[CacheSettings] = None,
        *,
        loader: Optional[KeyLoader] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        settings = settings or get_settings()
        clock = clock or SystemClock()
        metrics = metrics or MetricsCollector(registry=registry)

        store = EntryStore(settings.capacity, clock=clock, metrics=metrics)
        gateway = BackingStoreGateway(backing_store, settings.backing_store_timeout)
        write_behind_queue = WriteBehindQueue(
            gateway,
            metrics=metrics,
            retry=ExponentialBackoffRetry(RetryPolicy.from_settings(settings)),
            clock=clock,
            flush_interval=settings.flush_interval,
            batch_size=settings.flush_batch_size,
        )

        super().__init__(
            store=store,
            guard=StampedeGuard(clock),
            gateway=gateway,
            write_behind_queue=write_behind_queue,
            metrics=metrics,
            settings=settings,
            loader=loader,
        )

        self.backing_store = backing_store
        self.clock = clock
        self.invalidation_service = CacheInvalidationService(store)
        self._sweeper = PeriodicWorker(
            "expiry-sweep", self._sweep, lambda: self.settings.sweep_interval or 1.0
        )
        self._shutdown_report: Optional[FlushReport] = None

    # Lifecycle

    def start(self) -> None:
        """Start background workers. Must be called inside a running event loop."""
        if self._closed:
            return
        self.write_behind_queue.start()
        if self.settings.sweep_interval:
            self._sweeper.start()
        logger.info(
            "cache_started",
            capacity=self.store.capacity,
            flush_interval=self.write_behind_queue.flush_interval,
            sweep_interval=self.settings.sweep_interval,
        )

    async def __aenter__(self) -> "CacheManager":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def shutdown(self) -> FlushReport:
        """
        Stop accepting writes, wait for refresh-ahead tasks, drain the
        write-behind queue and stop background workers. Idempotent.
        """
        if self._shutdown_report is not None:
            return self._shutdown_report

        self._closed = True
        logger.info("cache_shutdown_started", pending_writes=len(self.write_behind_queue))

        await self.join_background()

        await self._sweeper.stop()
        report = await self.write_behind_queue.stop(drain=True)
        self._shutdown_report = report

        logger.info(
            "cache_shutdown_completed",
            flushed=len(report.flushed),
            exhausted=len(report.exhausted),
        )
        return report

    @property
    def closed(self) -> bool:
        return self._closed

    # Administrative surface

    def stats(self) -> CacheStats:
        return self.metrics.stats()

    def reset_stats(self) -> None:
        self.metrics.reset()

    def remove(self, key: KeyLike) -> bool:
        """Drop a cached entry. Queued write-behind writes are unaffected."""
        return self.store.remove(self._normalize_key(key))

    def invalidate_tag(self, tag: str) -> int:
        return self.invalidation_service.invalidate_tag(self._normalize_tags([tag])[0])

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        return self.invalidation_service.invalidate_tags(self._normalize_tags(tags))

    def configure(
        self,
        capacity: Optional[int] = None,
        default_ttl: Any = _UNSET,
        flush_interval: Optional[float] = None,
    ) -> CacheSettings:
        """
        Change capacity, default TTL or flush interval at runtime.

        Shrinking capacity evicts least recently used entries immediately.
        Pass ``default_ttl=None`` to make entries without a TTL never expire.
        """
        changes: Dict[str, Any] = {}
        if capacity is not None:
            changes["capacity"] = validate_capacity(capacity)
        if default_ttl is not _UNSET:
            changes["default_ttl"] = validate_default_ttl(default_ttl)
        if flush_interval is not None:
            if flush_interval <= 0:
                raise ValueError("flush_interval must be positive")
            changes["flush_interval"] = float(flush_interval)

        if not changes:
            return self.settings

        if "capacity" in changes:
            evicted = self.store.resize(changes["capacity"])
            if evicted:
                logger.info("cache_resized", capacity=changes["capacity"], evicted=evicted)
        if "flush_interval" in changes:
            self.write_behind_queue.flush_interval = changes["flush_interval"]

        self.settings = self.settings.model_copy(update=changes)
        logger.info("cache_configured", **changes)
        return self.settings

    async def flush(self) -> FlushReport:
        """Flush due write-behind writes now."""
        return await self.write_behind_queue.flush()

    def dead_letters(self) -> List[FlushExhaustedException]:
        """Write-behind writes that exhausted their retries."""
        return self.write_behind_queue.dead_letters()

    def health(self) -> Dict[str, Any]:
        """Operational snapshot for health endpoints and debugging."""
        return {
            "status": "closed" if self._closed else "active",
            "timestamp": self.clock.wall().isoformat(),
            "entries": len(self.store),
            "capacity": self.store.capacity,
            "tags": len(self.store.index),
            "pending_writes": len(self.write_behind_queue),
            "dead_letters": len(self.write_behind_queue.dead_letters()),
            "in_flight": self.guard.pending_keys(),
            "workers": {
                "write_behind_flush": self.write_behind_queue.running,
                "expiry_sweep": self._sweeper.running,
            },
            "stats": self.stats().model_dump(),
        }

    def __len__(self) -> int:
        return len(self.store)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key in self.store

    async def _sweep(self) -> None:
        self.store.purge_expired()
