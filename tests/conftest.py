"""
Main pytest configuration for cache engine tests.

Fixtures, test doubles and markers shared by unit tests.
"""

import asyncio
from typing import Any, Dict, Mapping, Optional

import pytest
import pytest_asyncio

from cache_engine.core.clock import ManualClock
from cache_engine.core.config import CacheSettings
from cache_engine.infrastructure.backing_store.memory_store import InMemoryBackingStore
from cache_engine.monitoring.cache_metrics import MetricsCollector
from cache_engine.services.cache.cache_manager import CacheManager


class FlakyBackingStore(InMemoryBackingStore):
    """
    In-memory store that fails the next N loads/saves per key.

    ``fail_saves[key] = -1`` fails every save for that key.
    """

    def __init__(self, data: Optional[Mapping[str, Any]] = None, latency: float = 0.0):
        super().__init__(data, latency=latency)
        self.fail_loads: Dict[str, int] = {}
        self.fail_saves: Dict[str, int] = {}
        self.load_calls = 0

    def _should_fail(self, table: Dict[str, int], key: str) -> bool:
        remaining = table.get(key, 0)
        if remaining == 0:
            return False
        if remaining > 0:
            table[key] = remaining - 1
        return True

    async def load(self, key: str) -> Any:
        self.load_calls += 1
        if self._should_fail(self.fail_loads, key):
            await self._simulate_latency()
            raise ConnectionError(f"load failed for {key}")
        return await super().load(key)

    async def save(self, key: str, value: Any) -> None:
        if self._should_fail(self.fail_saves, key):
            raise ConnectionError(f"save failed for {key}")
        await super().save(key, value)

    async def save_batch(self, entries: Mapping[str, Any]) -> Dict[str, Optional[Exception]]:
        self.batches.append(dict(entries))
        results: Dict[str, Optional[Exception]] = {}
        for key, value in entries.items():
            if self._should_fail(self.fail_saves, key):
                results[key] = ConnectionError(f"save failed for {key}")
            else:
                self.saves.append((key, value))
                self._data[key] = value
                results[key] = None
        return results


def make_settings(**overrides: Any) -> CacheSettings:
    """Deterministic settings: no jitter, no backoff, short timeouts."""
    values: Dict[str, Any] = {
        "capacity": 100,
        "default_ttl": None,
        "flush_interval": 60.0,
        "backing_store_timeout": 1.0,
        "max_flush_retries": 2,
        "retry_base_delay": 0.0,
        "retry_jitter": False,
        "refresh_ahead_enabled": True,
        "refresh_threshold_fraction": 0.1,
    }
    values.update(overrides)
    return CacheSettings(**values)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def backing_store() -> FlakyBackingStore:
    return FlakyBackingStore({"user:1": {"name": "Ada"}, "user:2": {"name": "Grace"}})


@pytest.fixture
def settings() -> CacheSettings:
    return make_settings()


@pytest_asyncio.fixture
async def cache(backing_store, settings, clock):
    """Cache manager that is shut down after the test."""
    manager = CacheManager(backing_store, settings, clock=clock)
    yield manager
    await manager.shutdown()


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "concurrency: tests that race tasks or threads")
    config.addinivalue_line("markers", "slow: tests that sleep on real time")


def pytest_collection_modifyitems(config, items):
    """Add markers based on test names."""
    for item in items:
        if "concurrent" in item.nodeid or "thread" in item.nodeid:
            item.add_marker(pytest.mark.concurrency)
