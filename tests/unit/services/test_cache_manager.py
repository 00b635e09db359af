"""
Unit tests for CacheManager: read/write strategies, refresh-ahead,
lifecycle and the administrative surface.
"""

import asyncio

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from cache_engine.constants import MAX_TTL_SECONDS
from cache_engine.domain.cache.exceptions import (
    BackingStoreError,
    BackingStoreTimeout,
    CacheClosedException,
    CapacityMisconfigured,
    InvalidTTL,
)
from cache_engine.domain.cache.value_objects import WriteMode
from cache_engine.services.cache.cache_manager import CacheManager
from tests.conftest import FlakyBackingStore, make_settings, wait_until


class SlowBatchBackingStore(FlakyBackingStore):
    """Batch writes take ``batch_delay`` seconds to complete."""

    def __init__(self, data=None, batch_delay: float = 0.05):
        super().__init__(data)
        self.batch_delay = batch_delay
        self.batch_started = False

    async def save_batch(self, entries):
        self.batch_started = True
        await asyncio.sleep(self.batch_delay)
        return await super().save_batch(entries)


@pytest_asyncio.fixture
async def make_cache(backing_store, clock):
    """Factory for managers with custom settings; all are shut down afterwards."""
    managers = []

    def factory(store=None, **overrides):
        manager = CacheManager(
            store if store is not None else backing_store,
            make_settings(**overrides),
            clock=clock,
        )
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        await manager.shutdown()


class TestReadThrough:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache, backing_store):
        assert await cache.get("user:1") == {"name": "Ada"}
        assert await cache.get("user:1") == {"name": "Ada"}

        assert backing_store.loads == ["user:1"]
        stats = cache.stats()
        assert stats.misses == 1
        assert stats.hits == 1
        assert stats.loads == 1

    @pytest.mark.asyncio
    async def test_not_found_returns_default_and_is_not_cached(self, cache, backing_store):
        assert await cache.get("user:404") is None
        assert await cache.get("user:404", default="missing") == "missing"

        assert "user:404" not in cache
        assert backing_store.loads == ["user:404", "user:404"]
        assert cache.stats().errors == 0

    @pytest.mark.asyncio
    async def test_concurrent_misses_load_once(self, make_cache):
        store = FlakyBackingStore({"user:1": {"name": "Ada"}}, latency=0.05)
        cache = make_cache(store)

        results = await asyncio.gather(*(cache.get("user:1") for _ in range(20)))

        assert results == [{"name": "Ada"}] * 20
        assert store.loads == ["user:1"]
        assert cache.stats().misses == 20
        assert cache.stats().loads == 1

    @pytest.mark.asyncio
    async def test_load_error_reaches_all_callers_and_counts_once(
        self, cache, backing_store
    ):
        backing_store.fail_loads["user:1"] = -1

        results = await asyncio.gather(
            *(cache.get("user:1") for _ in range(3)), return_exceptions=True
        )

        assert all(isinstance(result, BackingStoreError) for result in results)
        assert isinstance(results[0].__cause__, ConnectionError)
        assert "user:1" not in cache
        assert cache.stats().errors == 1

    @pytest.mark.asyncio
    async def test_timeout_releases_waiters_and_caches_nothing(self, make_cache):
        store = FlakyBackingStore({"slow": 1}, latency=0.5)
        cache = make_cache(store, backing_store_timeout=0.05)

        results = await asyncio.gather(
            *(cache.get("slow") for _ in range(5)), return_exceptions=True
        )

        assert all(isinstance(result, BackingStoreTimeout) for result in results)
        assert "slow" not in cache
        assert cache.guard.pending_keys() == []
        assert cache.stats().errors == 1

    @pytest.mark.asyncio
    async def test_next_get_after_failure_loads_again(self, cache, backing_store):
        backing_store.fail_loads["user:1"] = 1

        with pytest.raises(BackingStoreError):
            await cache.get("user:1")

        assert await cache.get("user:1") == {"name": "Ada"}
        assert backing_store.load_calls == 2

    @pytest.mark.asyncio
    async def test_loader_retries_transient_failures(self, make_cache, backing_store):
        cache = make_cache(load_retry_attempts=3)
        backing_store.fail_loads["user:1"] = 2

        assert await cache.get("user:1") == {"name": "Ada"}
        assert backing_store.load_calls == 3
        assert cache.stats().errors == 0

    @pytest.mark.asyncio
    async def test_configured_loader_replaces_backing_store_load(self, backing_store, clock):
        calls = []

        async def loader(key):
            calls.append(key)
            return key.upper()

        manager = CacheManager(backing_store, make_settings(), loader=loader, clock=clock)
        try:
            assert await manager.get("user:1") == "USER:1"
        finally:
            await manager.shutdown()

        assert calls == ["user:1"]
        assert backing_store.loads == []

    @pytest.mark.asyncio
    async def test_get_with_ttl_expires(self, cache, clock, backing_store):
        await cache.get("user:1", ttl=10)
        clock.advance(10)

        assert "user:1" not in cache
        await cache.get("user:1")
        assert backing_store.loads == ["user:1", "user:1"]

    @pytest.mark.asyncio
    async def test_invalid_ttl_rejected_before_loading(self, cache, backing_store):
        with pytest.raises(InvalidTTL):
            await cache.get("user:1", ttl=-5)

        assert backing_store.loads == []


class TestCacheAside:
    @pytest.mark.asyncio
    async def test_loader_result_cached_with_ttl_and_tags(self, cache, clock):
        calls = 0

        async def build_report():
            nonlocal calls
            calls += 1
            return {"total": 42}

        value = await cache.get_or_load(
            "report:1", build_report, ttl=5, tags=["reports"]
        )
        again = await cache.get_or_load("report:1", build_report, ttl=5)

        assert value == again == {"total": 42}
        assert calls == 1
        assert cache.store.index.resolve("reports") == {"report:1"}

        clock.advance(5)
        await cache.get_or_load("report:1", build_report, ttl=5)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_default_ttl_applies(self, make_cache):
        cache = make_cache(default_ttl=30)

        async def loader():
            return "v"

        await cache.get_or_load("k", loader)

        assert cache.store.get_entry("k", touch=False).expires_at == 30.0

    @pytest.mark.asyncio
    async def test_loader_exception_is_wrapped(self, cache):
        async def loader():
            raise RuntimeError("boom")

        with pytest.raises(BackingStoreError) as exc_info:
            await cache.get_or_load("k", loader)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "k" not in cache

    @pytest.mark.asyncio
    async def test_lookup_never_loads(self, cache, backing_store):
        assert cache.lookup("user:1") == (None, False)
        await cache.get("user:1")
        assert cache.lookup("user:1") == ({"name": "Ada"}, True)

        assert backing_store.loads == ["user:1"]
        assert cache.stats().hits == 1
        assert cache.stats().misses == 2


class TestWriteThrough:
    @pytest.mark.asyncio
    async def test_persists_then_caches(self, cache, backing_store):
        await cache.set("user:3", {"name": "Linus"}, tags=["users"])

        assert backing_store.get("user:3") == {"name": "Linus"}
        assert cache.lookup("user:3") == ({"name": "Linus"}, True)
        assert cache.store.index.resolve("users") == {"user:3"}

    @pytest.mark.asyncio
    async def test_failure_leaves_cache_unchanged(self, cache, backing_store):
        await cache.set("k", "old")
        backing_store.fail_saves["k"] = 1

        with pytest.raises(BackingStoreError):
            await cache.set("k", "new")

        assert cache.lookup("k") == ("old", True)
        assert backing_store.get("k") == "old"
        assert cache.stats().errors == 1

    @pytest.mark.asyncio
    async def test_invalid_default_ttl_fails_before_persisting(self, cache, backing_store):
        cache.settings = cache.settings.model_copy(
            update={"default_ttl": MAX_TTL_SECONDS + 1}
        )

        with pytest.raises(InvalidTTL):
            await cache.set("k", "v")

        assert "k" not in backing_store
        assert "k" not in cache

    @pytest.mark.asyncio
    async def test_discards_older_write_behind_value(self, cache, backing_store):
        cache.write_behind("k", "queued")
        await cache.write_through("k", "persisted")

        report = await cache.flush()

        assert report.flushed == []
        assert backing_store.saves == [("k", "persisted")]
        assert cache.lookup("k") == ("persisted", True)


class TestWriteBehind:
    @pytest.mark.asyncio
    async def test_visible_before_persisted(self, cache, backing_store):
        await cache.set("k", "v", mode=WriteMode.WRITE_BEHIND)

        assert cache.lookup("k") == ("v", True)
        assert "k" not in backing_store

        report = await cache.flush()

        assert report.flushed == ["k"]
        assert backing_store.get("k") == "v"
        assert cache.stats().flushed_writes == 1

    @pytest.mark.asyncio
    async def test_configured_default_mode(self, make_cache, backing_store):
        cache = make_cache(write_mode=WriteMode.WRITE_BEHIND)

        await cache.set("k", "v")

        assert "k" in cache.write_behind_queue
        assert "k" not in backing_store

    @pytest.mark.asyncio
    async def test_writes_coalesce_per_key(self, cache, backing_store):
        cache.write_behind("k", "v1")
        cache.write_behind("k", "v2")

        await cache.flush()

        assert backing_store.saves == [("k", "v2")]

    @pytest.mark.asyncio
    async def test_queued_value_served_after_eviction(self, make_cache, backing_store):
        cache = make_cache(capacity=1)
        cache.write_behind("a", 1)
        cache.write_behind("b", 2)

        assert "a" not in cache
        assert await cache.get("a") == 1
        assert backing_store.loads == []

    @pytest.mark.asyncio
    async def test_read_during_flush_sees_value_being_saved(self, make_cache):
        store = SlowBatchBackingStore({"k": "v1"}, batch_delay=0.05)
        cache = make_cache(store, capacity=1)
        cache.write_behind("k", "v2")
        cache.write_behind("other", "x")
        assert "k" not in cache

        flush = asyncio.create_task(cache.flush())
        await wait_until(lambda: store.batch_started)
        during = await cache.get("k")
        await flush

        assert during == "v2"
        assert store.get("k") == "v2"
        assert cache.lookup("k") == ("v2", True)
        assert store.loads == []

    @pytest.mark.asyncio
    async def test_shutdown_drains_queue(self, cache, backing_store):
        cache.write_behind("a", 1)
        cache.write_behind("b", 2)

        report = await cache.shutdown()

        assert sorted(report.flushed) == ["a", "b"]
        assert backing_store.get("a") == 1
        assert backing_store.get("b") == 2
        assert len(cache.write_behind_queue) == 0

    @pytest.mark.asyncio
    async def test_exhausted_writes_are_reported(self, cache, backing_store):
        backing_store.fail_saves["k"] = -1
        cache.write_behind("k", "v")

        report = await cache.shutdown()

        assert report.exhausted == ["k"]
        dead = cache.dead_letters()
        assert len(dead) == 1
        assert dead[0].key == "k"
        assert dead[0].attempts == 3
        assert cache.stats().flush_exhausted == 1
        assert cache.metrics.failures()[-1]["kind"] == "flush_exhausted"


class TestRefreshAhead:
    @pytest.mark.asyncio
    async def test_hit_near_expiry_refreshes_in_background(
        self, cache, clock, backing_store
    ):
        await cache.get("user:1", ttl=10)
        await backing_store.save("user:1", {"name": "Ada L."})

        clock.set(9.5)
        assert await cache.get("user:1") == {"name": "Ada"}
        await cache.join_background()

        assert backing_store.loads == ["user:1", "user:1"]
        assert cache.lookup("user:1") == ({"name": "Ada L."}, True)
        entry = cache.store.get_entry("user:1", touch=False)
        assert entry.expires_at == 19.5
        assert cache.stats().refreshes == 1

    @pytest.mark.asyncio
    async def test_hit_far_from_expiry_does_not_refresh(self, cache, clock, backing_store):
        await cache.get("user:1", ttl=10)
        clock.set(5)

        await cache.get("user:1")
        await cache.join_background()

        assert backing_store.loads == ["user:1"]
        assert cache.stats().refreshes == 0

    @pytest.mark.asyncio
    async def test_disabled_refresh(self, make_cache, clock, backing_store):
        cache = make_cache(refresh_ahead_enabled=False)
        await cache.get("user:1", ttl=10)
        clock.set(9.9)

        await cache.get("user:1")
        await cache.join_background()

        assert backing_store.loads == ["user:1"]

    @pytest.mark.asyncio
    async def test_refresh_failure_is_recorded_not_raised(
        self, cache, clock, backing_store
    ):
        await cache.get("user:1", ttl=10)
        backing_store.fail_loads["user:1"] = -1
        clock.set(9.5)

        assert await cache.get("user:1") == {"name": "Ada"}
        await cache.join_background()

        assert cache.lookup("user:1") == ({"name": "Ada"}, True)
        failures = cache.metrics.failures()
        assert len(failures) == 1
        assert failures[0]["kind"] == "refresh_ahead"
        assert failures[0]["key"] == "user:1"
        assert cache.stats().errors == 1

    @pytest.mark.asyncio
    async def test_refresh_not_found_drops_entry(self, cache, clock, backing_store):
        await cache.get("user:1", ttl=10)
        backing_store._data.pop("user:1")
        clock.set(9.5)

        await cache.get("user:1")
        await cache.join_background()

        assert "user:1" not in cache
        assert cache.stats().errors == 0


class TestAdministration:
    @pytest.mark.asyncio
    async def test_invalidate_tag(self, cache, clock):
        await cache.set("x", 1, ttl=10, tags=["team1"])
        await cache.set("y", 2, ttl=10, tags=["team1"])
        clock.set(5)

        assert cache.invalidate_tag("team1") == 2
        assert cache.lookup("x") == (None, False)
        assert cache.lookup("y") == (None, False)

    @pytest.mark.asyncio
    async def test_invalidate_tags(self, cache):
        await cache.set("x", 1, tags=["a"])
        await cache.set("y", 2, tags=["b"])

        assert cache.invalidate_tags(["a", "b"]) == 2
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_remove(self, cache):
        await cache.set("x", 1)

        assert cache.remove("x") is True
        assert cache.remove("x") is False

    @pytest.mark.asyncio
    async def test_configure_shrinks_capacity(self, cache):
        for i in range(5):
            await cache.set(f"k{i}", i)

        settings = cache.configure(capacity=2)

        assert settings.capacity == 2
        assert cache.store.keys() == ["k3", "k4"]
        assert cache.stats().evictions == 3

    @pytest.mark.asyncio
    async def test_configure_default_ttl_and_flush_interval(self, cache, clock):
        cache.configure(default_ttl=3, flush_interval=0.5)
        await cache.set("k", 1)

        assert cache.write_behind_queue.flush_interval == 0.5
        clock.advance(3)
        assert "k" not in cache

        cache.configure(default_ttl=None)
        assert cache.settings.default_ttl is None

    def test_configure_rejects_invalid_values(self, backing_store, clock):
        manager = CacheManager(backing_store, make_settings(), clock=clock)

        with pytest.raises(CapacityMisconfigured):
            manager.configure(capacity=0)
        with pytest.raises(InvalidTTL):
            manager.configure(default_ttl=0)

        assert manager.settings.capacity == 100
        assert manager.settings.default_ttl is None

    def test_configure_rejects_default_ttl_above_limit(self, backing_store, clock):
        manager = CacheManager(backing_store, make_settings(), clock=clock)

        with pytest.raises(InvalidTTL, match="too large"):
            manager.configure(default_ttl=MAX_TTL_SECONDS + 1)

        assert manager.settings.default_ttl is None
        assert manager.configure(default_ttl=MAX_TTL_SECONDS).default_ttl == MAX_TTL_SECONDS

    @pytest.mark.asyncio
    async def test_reset_stats(self, cache):
        await cache.get("user:1")
        cache.reset_stats()

        assert cache.stats().misses == 0
        assert cache.stats().loads == 0

    @pytest.mark.asyncio
    async def test_health(self, cache):
        await cache.set("x", 1, tags=["t"])
        cache.write_behind("y", 2)

        health = cache.health()

        assert health["status"] == "active"
        assert health["entries"] == 2
        assert health["capacity"] == 100
        assert health["tags"] == 1
        assert health["pending_writes"] == 1
        assert health["workers"]["write_behind_flush"] is True
        assert health["timestamp"].startswith("2024-01-01")

    @pytest.mark.asyncio
    async def test_prometheus_registry(self, backing_store, clock):
        registry = CollectorRegistry()
        manager = CacheManager(
            backing_store, make_settings(), clock=clock, registry=registry
        )
        try:
            await manager.get("user:1")
            await manager.get("user:1")
        finally:
            await manager.shutdown()

        assert registry.get_sample_value("cache_engine_hits_total") == 1.0
        assert registry.get_sample_value("cache_engine_misses_total") == 1.0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_async_context_manager(self, backing_store, clock):
        async with CacheManager(backing_store, make_settings(), clock=clock) as manager:
            assert manager.write_behind_queue.running
            manager.write_behind("k", "v")

        assert manager.closed
        assert not manager.write_behind_queue.running
        assert backing_store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_writes_rejected_after_shutdown(self, cache):
        await cache.shutdown()

        with pytest.raises(CacheClosedException):
            await cache.set("k", "v")
        with pytest.raises(CacheClosedException):
            cache.write_behind("k", "v")
        assert cache.health()["status"] == "closed"

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, cache):
        cache.write_behind("k", "v")

        first = await cache.shutdown()
        second = await cache.shutdown()

        assert first is second

    @pytest.mark.asyncio
    async def test_expiry_sweep(self, make_cache, clock):
        cache = make_cache(sweep_interval=0.01)
        await cache.set("k", 1, ttl=1)
        clock.advance(2)

        cache.start()
        await wait_until(lambda: len(cache) == 0)

        assert cache.health()["workers"]["expiry_sweep"] is True
