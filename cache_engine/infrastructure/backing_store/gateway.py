"""
Backing Store Gateway

Every call the engine makes to the backing store (loads, write-through
saves, write-behind batches) goes through here so it is bounded by a
timeout and fails with the cache error taxonomy.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

import structlog

from ...domain.cache.exceptions import (
    BackingStoreException,
    BackingStoreTimeoutException,
    CacheException,
)
from ...domain.cache.repository_interfaces import BackingStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class BackingStoreGateway:
    """
    Timeout-bounded access to a BackingStore.

    NotFound and other cache exceptions pass through unchanged; asyncio
    timeouts become BackingStoreTimeout and any other failure becomes
    BackingStoreError chained to the original.
    """

    def __init__(self, store: BackingStore, timeout: float):
        if timeout <= 0:
            raise ValueError("Backing store timeout must be positive")
        self.store = store
        self.timeout = timeout

    async def call(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> T:
        """Run ``func()`` under the gateway's timeout and error mapping."""
        limit = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(func(), timeout=limit)
        except asyncio.TimeoutError as e:
            logger.warning(
                "backing_store_timeout", operation=operation, key=key, timeout=limit
            )
            raise BackingStoreTimeoutException(operation, limit, key=key) from e
        except CacheException:
            raise
        except Exception as e:
            logger.error(
                "backing_store_error",
                operation=operation,
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise BackingStoreException(
                message=f"Backing store operation '{operation}' failed: {e}",
                operation=operation,
                key=key,
                original_error=e,
            ) from e

    async def load(self, key: str, timeout: Optional[float] = None) -> Any:
        return await self.call("load", lambda: self.store.load(key), key=key, timeout=timeout)

    async def save(self, key: str, value: Any, timeout: Optional[float] = None) -> None:
        await self.call(
            "save", lambda: self.store.save(key, value), key=key, timeout=timeout
        )

    async def save_batch(
        self, entries: Mapping[str, Any], timeout: Optional[float] = None
    ) -> Dict[str, Optional[Exception]]:
        """
        Persist a batch. A failure of the whole call (timeout, transport
        error) marks every entry in the batch as failed with that error.
        """
        if not entries:
            return {}
        try:
            results = await self.call(
                "save_batch", lambda: self.store.save_batch(entries), timeout=timeout
            )
        except CacheException as e:
            return {key: e for key in entries}

        # Entries the store did not report on are treated as failed.
        missing = BackingStoreException(
            message="Backing store returned no result for entry", operation="save_batch"
        )
        return {key: results[key] if key in results else missing for key in entries}

    def bind_loader(
        self, loader: Callable[[str], Awaitable[Any]], timeout: Optional[float] = None
    ) -> Callable[[str], Awaitable[Any]]:
        """Wrap a per-call cache-aside loader with the same timeout and error mapping."""

        async def bound(key: str) -> Any:
            return await self.call("load", lambda: loader(key), key=key, timeout=timeout)

        return bound
