"""
Unit tests for the on-demand PullCache.
"""

import asyncio
import threading
import time
from unittest.mock import MagicMock

import pytest

from item_cache.cloning import DelegatingCloner, NoCloneCloner
from item_cache.pull import PullCache
from shared.config import CacheSettings
from shared.errors import CacheUsageError, CloneFailure, ConfigurationError, LoadFailure
from shared.metrics import CacheMetrics
from tests.fakes import (
    CacheableClass,
    CacheableRecord,
    CloneableThing,
    CountingLoader,
    HoldsLock,
    RecordingLogSink,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class TestPullCacheConstruction:
    """Test cases for PullCache configuration checks."""

    def test_requires_a_loader(self):
        """Test a cache without any loader is rejected."""
        with pytest.raises(ConfigurationError):
            PullCache(caching_period=60)

    @pytest.mark.parametrize("period", [0, 0.001, -5])
    def test_caching_period_below_minimum(self, period):
        """Test tiny caching periods fail at construction, not first use."""
        loader = MagicMock(return_value=1)

        with pytest.raises(ConfigurationError) as exc_info:
            PullCache(loader, caching_period=period)

        assert exc_info.value.details["option"] == "caching_period"
        loader.assert_not_called()

    def test_negative_retrieval_timeout(self):
        """Test negative gate timeouts are rejected."""
        with pytest.raises(ConfigurationError):
            PullCache(lambda: 1, caching_period=60, repeat_retrieval_timeout=-1)

    def test_from_settings(self):
        """Test building from settings with keyword overrides."""
        settings = CacheSettings(caching_period=30, clone_strategy="none", enable_metrics=True)

        cache = PullCache.from_settings(settings, lambda: [1], name="settings")

        stats = cache.stats()
        assert stats["caching_period"] == 30
        assert stats["cloner"] == "NoCloneCloner()"
        assert cache.get() == [1]

    def test_from_settings_delegated_validates_type(self):
        """Test a delegated strategy with an uncloneable type fails at startup."""
        settings = CacheSettings(clone_strategy="delegated")

        with pytest.raises(CloneFailure):
            PullCache.from_settings(settings, lambda: CacheableClass(1), value_type=CacheableClass)


class TestPullCacheGet:
    """Test cases for synchronous reads."""

    @pytest.fixture
    def sink(self):
        return RecordingLogSink()

    def test_first_get_loads(self, sink):
        """Test the seed slot is expired so the first read loads."""
        loader = CountingLoader()
        cache = PullCache(loader, caching_period=120, initial_value=0, log_sink=sink)

        assert cache.get() == 125
        assert loader.calls == 1
        assert sink.count == 0

    def test_repeated_reads_load_once_and_return_distinct_clones(self):
        """Test four quick reads share one load but never share objects."""
        loader = MagicMock(side_effect=lambda: CacheableClass(125))
        cache = PullCache(loader, caching_period=0.1)

        results = [cache.get() for _ in range(4)]

        assert loader.call_count == 1
        for index, result in enumerate(results):
            assert result == results[0]
            for other in results[index + 1:]:
                assert result is not other
                assert result.child is not other.child

    def test_mutating_result_does_not_corrupt_cache(self):
        """Test callers can mutate what they receive."""
        cache = PullCache(lambda: {"items": [1, 2]}, caching_period=60)

        first = cache.get()
        first["items"].append(3)

        assert cache.get() == {"items": [1, 2]}

    def test_expiry_triggers_reload(self):
        """Test a read after the caching period gets a newly loaded value."""
        cache = PullCache(lambda: CacheableClass(125), caching_period=0.1)

        first = cache.get()
        time.sleep(0.15)
        second = cache.get()

        assert second.created_at != first.created_at

    def test_expiry_with_fake_clock(self):
        """Test freshness follows the injected clock exactly."""
        clock = FakeClock()
        loader = CountingLoader()
        cache = PullCache(loader, caching_period=10, clock=clock)

        assert cache.get() == 125
        clock.advance(9.99)
        assert cache.get() == 125
        clock.advance(0.01)
        assert cache.get() == 150
        assert loader.calls == 2

    def test_invalidate_forces_reload(self):
        """Test invalidation makes the next read load again."""
        loader = CountingLoader(start=100, step=25)
        cache = PullCache(loader, caching_period=120, initial_retrieval_timeout=0.1,
                          repeat_retrieval_timeout=0.1)

        assert cache.get() == 125
        cache.invalidate()
        time.sleep(0.01)

        assert cache.get() == 150
        assert loader.calls == 2

    def test_repeated_invalidate_keeps_value_until_load(self):
        """Test invalidation alone never changes the served value."""
        loader = CountingLoader()
        failing = {"on": False}

        def load():
            if failing["on"]:
                raise ConnectionError("source down")
            return loader()

        sink = RecordingLogSink()
        cache = PullCache(load, caching_period=120, log_sink=sink)
        assert cache.get() == 125

        failing["on"] = True
        cache.invalidate()
        cache.invalidate()
        cache.invalidate()

        assert cache.get() == 125
        assert not cache.is_fresh
        assert sink.count == 1

        failing["on"] = False
        assert cache.get() == 150

    def test_loader_failure_serves_default_and_logs(self):
        """Test a failing loader is contained and retried on the next read."""
        sink = RecordingLogSink()
        loader = MagicMock(side_effect=ValueError("bad payload"))
        cache = PullCache(loader, caching_period=60, initial_value="default", log_sink=sink)

        assert cache.get() == "default"
        assert cache.get() == "default"

        assert loader.call_count == 2
        assert sink.count == 2
        error, message = sink.entries[0]
        assert isinstance(error, LoadFailure)
        assert isinstance(error.__cause__, ValueError)
        assert error.details["cache"] == "pull"
        assert message == "Failure to load cache from source!"
        assert cache.stats()["load_failures"] == 2

    def test_initial_value_is_copied(self):
        """Test mutating the object passed as initial_value leaves the fallback intact."""
        seed = ["seed"]
        loader = MagicMock(side_effect=ValueError("source down"))
        cache = PullCache(loader, caching_period=60, initial_value=seed, log_sink=RecordingLogSink())

        seed.append("changed")

        assert cache.get() == ["seed"]

    def test_immutable_record_without_cloning(self):
        """Test an immutable value can be served by reference."""
        cache = PullCache(lambda: CacheableRecord(125), caching_period=60, cloner=NoCloneCloner())

        first = cache.get()

        assert first == CacheableRecord(125)
        assert cache.get() is first

    def test_clone_failure_propagates(self):
        """Test values that cannot be cloned surface to the caller."""
        sink = RecordingLogSink()
        cache = PullCache(HoldsLock, caching_period=60, log_sink=sink)

        with pytest.raises(CloneFailure):
            cache.get()

        assert sink.count == 0

    def test_no_clone_shares_reference(self):
        """Test the no-op strategy hands out the cached object."""
        cache = PullCache(lambda: CacheableClass(1), caching_period=60, cloner=NoCloneCloner())

        assert cache.get() is cache.get()

    def test_delegated_cloner(self):
        """Test the delegated strategy calls the value's own clone."""
        cache = PullCache(lambda: CloneableThing([1]), caching_period=60,
                          cloner=DelegatingCloner(CloneableThing))

        first = cache.get()
        first.items.append(2)

        assert cache.get().items == [1]

    def test_get_requires_sync_loader(self):
        """Test get() without a synchronous loader is a usage error."""
        async def load():
            return 1

        cache = PullCache(async_loader=load, caching_period=60)

        with pytest.raises(CacheUsageError):
            cache.get()

    def test_gate_timeout_returns_default_to_second_caller(self):
        """Test a caller that cannot get the gate is served the current value."""
        started = threading.Event()

        def slow_load():
            started.set()
            time.sleep(0.2)
            return 125

        cache = PullCache(slow_load, caching_period=120, initial_value=0,
                          initial_retrieval_timeout=0.05, repeat_retrieval_timeout=0.05)
        results = {}

        first = threading.Thread(target=lambda: results.setdefault("first", cache.get()))
        first.start()
        assert started.wait(1.0)

        began = time.monotonic()
        results["second"] = cache.get()
        waited = time.monotonic() - began
        first.join()

        assert results["second"] == 0
        assert results["first"] == 125
        assert waited < 0.19

    def test_stale_value_served_on_warm_miss_timeout(self):
        """Test a warm miss falls back to the previous value, not the default."""
        clock = FakeClock()
        gate_held = threading.Event()
        release = threading.Event()
        values = iter([125, 150])

        def load():
            value = next(values)
            if value == 150:
                gate_held.set()
                release.wait(1.0)
            return value

        cache = PullCache(load, caching_period=10, initial_value=0,
                          repeat_retrieval_timeout=0.02, clock=clock)
        assert cache.get() == 125
        clock.advance(11)

        reloader = threading.Thread(target=cache.get)
        reloader.start()
        assert gate_held.wait(1.0)

        assert cache.get() == 125
        release.set()
        reloader.join()
        assert cache.get() == 150


class TestPullCacheGetAsync:
    """Test cases for suspending reads."""

    @pytest.mark.asyncio
    async def test_get_async_loads_and_caches(self):
        """Test the async loader is awaited once for repeated reads."""
        calls = []

        async def load():
            calls.append(1)
            return CacheableClass(125)

        cache = PullCache(async_loader=load, caching_period=60)

        first = await cache.get_async()
        second = await cache.get_async()

        assert len(calls) == 1
        assert first.get_value() == 125
        assert first is not second

    @pytest.mark.asyncio
    async def test_get_async_requires_async_loader(self):
        """Test get_async() without an asynchronous loader is a usage error."""
        cache = PullCache(lambda: 1, caching_period=60)

        with pytest.raises(CacheUsageError):
            await cache.get_async()

    @pytest.mark.asyncio
    async def test_gate_timeout_returns_default(self):
        """Test a second coroutine times out on the gate and gets the default."""
        async def slow_load():
            await asyncio.sleep(0.2)
            return 125

        cache = PullCache(async_loader=slow_load, caching_period=120, initial_value=0,
                          initial_retrieval_timeout=0.05, repeat_retrieval_timeout=0.05)

        async def delayed_get():
            await asyncio.sleep(0.05)
            return await cache.get_async()

        first, second = await asyncio.gather(cache.get_async(), delayed_get())

        assert first == 125
        assert second == 0

    @pytest.mark.asyncio
    async def test_concurrent_misses_coalesce(self):
        """Test simultaneous async misses produce a single load."""
        calls = []

        async def load():
            calls.append(1)
            await asyncio.sleep(0.05)
            return {"value": 42}

        cache = PullCache(async_loader=load, caching_period=60)

        results = await asyncio.gather(*(cache.get_async() for _ in range(10)))

        assert len(calls) == 1
        assert all(result == {"value": 42} for result in results)
        assert len({id(result) for result in results}) == 10

    @pytest.mark.asyncio
    async def test_async_loader_failure_is_contained(self):
        """Test async load failures are logged, not raised."""
        sink = RecordingLogSink()

        async def load():
            raise TimeoutError("upstream slow")

        cache = PullCache(async_loader=load, caching_period=60, initial_value=[], log_sink=sink)

        assert await cache.get_async() == []
        assert sink.count == 1


class TestPullCacheMetrics:
    """Test cases for metrics recording."""

    def test_reads_and_loads_are_counted(self):
        """Test metrics follow the read path taken."""
        metrics = CacheMetrics()
        cache = PullCache(lambda: 1, caching_period=60, metrics=metrics, name="lookup")

        cache.get()
        cache.get()
        cache.invalidate()

        assert metrics.sample("loads_total", cache="lookup", result="success") == 1
        assert metrics.sample("reads_total", cache="lookup", outcome="loaded") == 1
        assert metrics.sample("reads_total", cache="lookup", outcome="fresh") == 1
        assert metrics.sample("invalidations_total", cache="lookup") == 1
        assert metrics.sample("load_duration_seconds_count", cache="lookup") == 1

    def test_stats_snapshot(self):
        """Test stats reflect the current slot."""
        cache = PullCache(lambda: 1, caching_period=60, name="lookup")
        before = cache.stats()
        cache.get()
        after = cache.stats()

        assert before["placeholder"] is True
        assert before["age"] is None
        assert after["fresh"] is True
        assert after["load_successes"] == 1
        assert after["reload_in_progress"] is False
