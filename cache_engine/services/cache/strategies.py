"""
Cache Strategies

Cache-aside, read-through, write-through, write-behind and refresh-ahead
built on the entry store, stampede guard and write-behind queue.
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set, Tuple, Union

import structlog
from opentelemetry import trace

from ...core.config import CacheSettings
from ...domain.cache.entities import CacheEntry
from ...domain.cache.exceptions import (
    CacheClosedException,
    CacheException,
    NotFoundException,
)
from ...domain.cache.value_objects import TTL, CacheKey, CacheTag, WriteMode
from ...infrastructure.backing_store.gateway import BackingStoreGateway
from ...infrastructure.backing_store.resilience import retrying_loader
from ...monitoring.cache_metrics import MetricsCollector
from ..queues.write_behind import WriteBehindQueue
from .entry_store import EntryStore
from .expiry import TTLLike
from .stampede import StampedeGuard

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

KeyLike = Union[str, CacheKey]
TagsLike = Optional[Iterable[Union[str, CacheTag]]]
KeyLoader = Callable[[str], Awaitable[Any]]


class CacheStrategies:
    """
    Read and write policies over one entry store.

    Reads never return a partially written value: entries are immutable
    and replaced atomically by the entry store.
    """

    def __init__(
        self,
        store: EntryStore,
        guard: StampedeGuard,
        gateway: BackingStoreGateway,
        write_behind_queue: WriteBehindQueue,
        metrics: MetricsCollector,
        settings: CacheSettings,
        loader: Optional[KeyLoader] = None,
    ):
        self.store = store
        self.guard = guard
        self.gateway = gateway
        self.write_behind_queue = write_behind_queue
        self.metrics = metrics
        self.settings = settings
        self._closed = False
        self._background: Set["asyncio.Task[Any]"] = set()

        # Read-through loader: configured once per instance, bounded by the
        # gateway timeout on every attempt.
        base_loader = gateway.bind_loader(loader) if loader is not None else gateway.load
        self._read_through_loader = retrying_loader(
            base_loader, attempts=settings.load_retry_attempts
        )

    # Reads

    def lookup(self, key: KeyLike) -> Tuple[Any, bool]:
        """Cache-only read. Returns ``(value, found)`` and never loads."""
        key = self._normalize_key(key)
        entry = self.store.get_entry(key)
        if entry is None:
            self.metrics.record_miss()
            return None, False
        self.metrics.record_hit()
        return entry.value, True

    async def get(
        self,
        key: KeyLike,
        *,
        ttl: TTLLike = None,
        tags: TagsLike = None,
        default: Any = None,
    ) -> Any:
        """
        Read-through get using the loader configured for this cache.

        Returns ``default`` when the backing store has no value.
        """
        return await self._read(key, self._read_through_loader, ttl, tags, default)

    async def get_or_load(
        self,
        key: KeyLike,
        loader: Callable[[], Awaitable[Any]],
        *,
        ttl: TTLLike = None,
        tags: TagsLike = None,
        default: Any = None,
    ) -> Any:
        """
        Cache-aside get with a per-call loader.

        ``loader`` takes no arguments; it is bounded by the backing store
        timeout and shared by concurrent misses on the same key.
        """
        bound = self.gateway.bind_loader(lambda _key: loader())
        return await self._read(key, bound, ttl, tags, default)

    async def _read(
        self,
        key: KeyLike,
        loader: KeyLoader,
        ttl: TTLLike,
        tags: TagsLike,
        default: Any,
    ) -> Any:
        key = self._normalize_key(key)
        with tracer.start_as_current_span("cache.get") as span:
            span.set_attribute("cache.key", key)

            entry = self.store.get_entry(key)
            if entry is not None:
                span.set_attribute("cache.hit", True)
                self.metrics.record_hit()
                self._maybe_refresh_ahead(entry, loader)
                return entry.value

            span.set_attribute("cache.hit", False)
            self.metrics.record_miss()

            # Validate before any backing store call is made.
            resolved_ttl = self._resolve_ttl(ttl)
            tag_values = self._normalize_tags(tags)

            try:
                return await self.guard.fetch_once(
                    key,
                    lambda: self._load(key, loader),
                    on_success=lambda value: self.store.put(
                        key, value, ttl=resolved_ttl, tags=tag_values
                    ),
                )
            except NotFoundException:
                span.set_attribute("cache.not_found", True)
                return default
            except CacheException as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                raise

    async def _load(self, key: str, loader: KeyLoader) -> Any:
        """Run once per fetch, by the stampede guard's leader task."""
        # Unflushed write-behind values are newer than the backing store.
        queued_value, queued = self.write_behind_queue.peek(key)
        if queued:
            return queued_value

        self.metrics.record_load()
        try:
            return await loader(key)
        except NotFoundException:
            raise
        except CacheException as e:
            self.metrics.record_error()
            logger.error(
                "cache_load_failed",
                key=key,
                error=e.message,
                error_code=e.error_code,
            )
            raise

    def _maybe_refresh_ahead(self, entry: CacheEntry, loader: KeyLoader) -> None:
        if self._closed or not self.settings.refresh_ahead_enabled:
            return
        if not self.store.expiry.needs_refresh(
            entry, self.settings.refresh_threshold_fraction
        ):
            return
        if self.guard.in_flight(entry.key) or entry.key in self.write_behind_queue:
            return

        self.metrics.record_refresh()
        self._spawn(self._refresh(entry, loader))
        logger.debug("cache_refresh_ahead_scheduled", key=entry.key)

    async def _refresh(self, entry: CacheEntry, loader: KeyLoader) -> None:
        """Detached refresh; failures are reported, never raised."""
        try:
            await self.guard.fetch_once(
                entry.key,
                lambda: self._load(entry.key, loader),
                on_success=lambda value: self.store.put(
                    entry.key, value, ttl=entry.ttl, tags=entry.tags
                ),
            )
        except NotFoundException as e:
            # The source no longer has the value; stop serving the old copy.
            self.store.remove(entry.key)
            self.metrics.report_failure(
                "refresh_ahead", e, key=entry.key, count_as_error=False
            )
        except Exception as e:
            # Load errors were already counted by _load.
            self.metrics.report_failure(
                "refresh_ahead",
                e,
                key=entry.key,
                count_as_error=not isinstance(e, CacheException),
            )
            logger.warning(
                "cache_refresh_ahead_failed",
                key=entry.key,
                error=str(e),
                error_type=type(e).__name__,
            )

    # Writes

    async def set(
        self,
        key: KeyLike,
        value: Any,
        *,
        ttl: TTLLike = None,
        tags: TagsLike = None,
        mode: Optional[WriteMode] = None,
    ) -> CacheEntry:
        """Write using ``mode`` or the configured default write mode."""
        mode = WriteMode(mode) if mode is not None else self.settings.write_mode
        if mode == WriteMode.WRITE_BEHIND:
            return self.write_behind(key, value, ttl=ttl, tags=tags)
        return await self.write_through(key, value, ttl=ttl, tags=tags)

    async def write_through(
        self,
        key: KeyLike,
        value: Any,
        *,
        ttl: TTLLike = None,
        tags: TagsLike = None,
    ) -> CacheEntry:
        """
        Persist synchronously, then cache.

        If the backing store write fails the cache is left unchanged and
        the error propagates.
        """
        self._ensure_open()
        key = self._normalize_key(key)
        resolved_ttl = self._resolve_ttl(ttl)
        tag_values = self._normalize_tags(tags)

        with tracer.start_as_current_span("cache.set") as span:
            span.set_attribute("cache.key", key)
            span.set_attribute("cache.write_mode", WriteMode.WRITE_THROUGH.value)
            try:
                await self.gateway.save(key, value)
            except CacheException as e:
                self.metrics.record_error()
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                logger.error("cache_write_through_failed", key=key, error=e.message)
                raise

            # An older queued write-behind value must not overwrite this one.
            self.write_behind_queue.discard(key)
            return self.store.put(key, value, ttl=resolved_ttl, tags=tag_values)

    def write_behind(
        self,
        key: KeyLike,
        value: Any,
        *,
        ttl: TTLLike = None,
        tags: TagsLike = None,
    ) -> CacheEntry:
        """
        Cache immediately and queue the backing store write.

        Returns once the entry store is updated. Safe to call from threads.
        """
        self._ensure_open()
        key = self._normalize_key(key)
        entry = self.store.put(
            key, value, ttl=self._resolve_ttl(ttl), tags=self._normalize_tags(tags)
        )
        self.write_behind_queue.enqueue(key, value)
        self._ensure_background()
        return entry

    # Helpers

    def _ensure_open(self) -> None:
        if self._closed:
            raise CacheClosedException()

    def _ensure_background(self) -> None:
        """Start the flush loop when called from inside a running event loop."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.write_behind_queue.start()

    async def join_background(self) -> None:
        """Wait for detached refresh-ahead tasks to finish."""
        while self._background:
            # Refresh tasks report their own failures.
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _resolve_ttl(self, ttl: TTLLike) -> Optional[float]:
        """Validated TTL in seconds, falling back to the configured default."""
        resolved = TTL.coerce(self.settings.default_ttl if ttl is None else ttl)
        return resolved.seconds if resolved is not None else None

    @staticmethod
    def _normalize_key(key: KeyLike) -> str:
        return CacheKey.coerce(key).value

    @staticmethod
    def _normalize_tags(tags: TagsLike) -> List[str]:
        return [CacheTag.coerce(tag).value for tag in (tags or ())]
