"""
On-demand TTL cache with single-flight reloads.

The value is loaded on first access and reloaded on the first access after
it expires. Concurrent misses are coalesced: one caller runs the loader
while the others wait on the gate for at most the expiring slot's retry
budget, after which they are served whatever slot is current (possibly
stale). Load failures are logged and never reach readers.
"""

import time
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from shared.config import CacheSettings
from shared.errors import CacheUsageError, ConfigurationError, LoadFailure
from shared.logging import LogSink, get_logger, make_log_sink
from shared.metrics import CacheMetrics
from item_cache.cloning import Cloner, DeepCopyCloner, get_cloner
from item_cache.gate import SingleFlightGate
from item_cache.slot import ALREADY_EXPIRED, CacheSlot, SlotCell
from item_cache.timeouts import MINIMUM_PERIOD, Duration, to_seconds

T = TypeVar("T")

DEFAULT_REPEAT_RETRIEVAL_TIMEOUT = 0.1


class PullCache(Generic[T]):
    """In-memory cache for one parameterless value, reloaded when stale.

    Intended for lookup tables and similar values that are expensive to
    fetch. Every read returns a clone, so results are safe to mutate.

    Example:
        >>> cache = PullCache(loader=load_currencies, caching_period=300)
        >>> currencies = cache.get()
    """

    def __init__(self,
                 loader: Optional[Callable[[], T]] = None,
                 async_loader: Optional[Callable[[], Awaitable[T]]] = None,
                 *,
                 caching_period: Duration,
                 initial_value: Optional[T] = None,
                 cloner: Optional[Cloner] = None,
                 initial_retrieval_timeout: Optional[Duration] = None,
                 repeat_retrieval_timeout: Optional[Duration] = DEFAULT_REPEAT_RETRIEVAL_TIMEOUT,
                 log_sink: Optional[LogSink] = None,
                 metrics: Optional[CacheMetrics] = None,
                 clock: Callable[[], float] = time.monotonic,
                 name: str = "pull"):
        """Create a cache around a synchronous and/or asynchronous loader.

        Args:
            loader: Callable used by ``get()``
            async_loader: Coroutine function used by ``get_async()``
            caching_period: How long a loaded value stays fresh (min 10ms)
            initial_value: Served to callers that time out before the first load;
                stored as a clone, so later changes by the caller are not seen
            cloner: Clone strategy applied on every read (default: deep copy)
            initial_retrieval_timeout: Gate wait for the very first (cold) load;
                None waits indefinitely
            repeat_retrieval_timeout: Gate wait once a value has been loaded,
                after which stale data is returned
            log_sink: Receives ``(error, message)`` for every load failure
            metrics: Optional Prometheus collector
            clock: Monotonic clock used for expiry
            name: Label used in logs and metrics

        Raises:
            ConfigurationError: No loader was given or a duration is invalid
            CloneFailure: initial_value cannot be cloned
        """
        if loader is None and async_loader is None:
            raise ConfigurationError(
                "Either a synchronous or asynchronous loader must be provided",
                details={"cache": name}
            )

        self.name = name
        self._loader = loader
        self._async_loader = async_loader
        self._caching_period = to_seconds(caching_period, "caching_period", minimum=MINIMUM_PERIOD)
        initial_budget = to_seconds(initial_retrieval_timeout, "initial_retrieval_timeout", allow_unbounded=True)
        self._repeat_retrieval_timeout = to_seconds(
            repeat_retrieval_timeout, "repeat_retrieval_timeout", allow_unbounded=True
        )
        self._cloner = cloner if cloner is not None else DeepCopyCloner()
        self._log_sink = log_sink if log_sink is not None else make_log_sink(f"item_cache.{name}")
        self._metrics = metrics
        self._clock = clock
        self._gate = SingleFlightGate()
        self.logger = get_logger(f"item_cache.{name}")

        # Seed with an already expired slot so the first read always loads
        self._cell: SlotCell[T] = SlotCell(
            CacheSlot(self._cloner.clone(initial_value), fresh_until=ALREADY_EXPIRED, retry_budget=initial_budget)
        )
        self._load_successes = 0
        self._load_failures = 0

    @classmethod
    def from_settings(cls, settings: CacheSettings, loader: Optional[Callable[[], T]] = None,
                      async_loader: Optional[Callable[[], Awaitable[T]]] = None,
                      *, value_type: Optional[type] = None, **kwargs) -> "PullCache[T]":
        """Build a cache from environment-backed settings; kwargs override them."""
        options: Dict[str, Any] = {
            "caching_period": settings.caching_period,
            "initial_retrieval_timeout": settings.initial_retrieval_timeout,
            "repeat_retrieval_timeout": settings.repeat_retrieval_timeout,
            "cloner": get_cloner(settings.clone_strategy, value_type),
        }
        if settings.enable_metrics and "metrics" not in kwargs:
            options["metrics"] = CacheMetrics()
        options.update(kwargs)
        return cls(loader, async_loader, **options)

    # Reads

    def get(self) -> T:
        """Return a clone of the cached value, loading it first if stale."""
        if self._loader is None:
            raise CacheUsageError(
                "Cannot use get() unless a synchronous loader is provided",
                details={"cache": self.name}
            )

        slot = self._cell.current
        if slot.is_fresh(self._clock()):
            self._record_read("fresh")
            return self._cloner.clone(slot.value)

        with self._gate.hold(slot.retry_budget) as acquired:
            if acquired:
                # Another caller may have reloaded while we waited for the gate
                slot = self._cell.current
                if slot.is_fresh(self._clock()):
                    self._record_read("fresh")
                else:
                    slot = self._reload(slot)
            else:
                slot = self._fall_back()

        return self._cloner.clone(slot.value)

    async def get_async(self) -> T:
        """Suspending variant of ``get()``, using the asynchronous loader."""
        if self._async_loader is None:
            raise CacheUsageError(
                "Cannot use get_async() unless an asynchronous loader is provided",
                details={"cache": self.name}
            )

        slot = self._cell.current
        if slot.is_fresh(self._clock()):
            self._record_read("fresh")
            return self._cloner.clone(slot.value)

        async with self._gate.hold_async(slot.retry_budget) as acquired:
            if acquired:
                slot = self._cell.current
                if slot.is_fresh(self._clock()):
                    self._record_read("fresh")
                else:
                    slot = await self._reload_async(slot)
            else:
                slot = self._fall_back()

        return self._cloner.clone(slot.value)

    def invalidate(self) -> None:
        """Mark the current value stale so the next read reloads it.

        The value itself is kept as the fallback for callers that time out
        on the gate while the reload runs.
        """
        self._cell.update(lambda slot: slot.expired())
        if self._metrics:
            self._metrics.record_invalidation(self.name)
        self.logger.debug("Cache invalidated", cache=self.name)

    # Loading

    def _reload(self, stale: CacheSlot[T]) -> CacheSlot[T]:
        started = time.monotonic()
        try:
            value = self._loader()
        except Exception as exc:
            return self._load_failed(stale, exc, started)
        return self._publish(value, started)

    async def _reload_async(self, stale: CacheSlot[T]) -> CacheSlot[T]:
        started = time.monotonic()
        try:
            value = await self._async_loader()
        except Exception as exc:
            return self._load_failed(stale, exc, started)
        return self._publish(value, started)

    def _publish(self, value: T, started: float) -> CacheSlot[T]:
        now = self._clock()
        slot = CacheSlot(
            value,
            fresh_until=now + self._caching_period,
            retry_budget=self._repeat_retrieval_timeout,
            loaded_at=now,
        )
        self._cell.publish(slot)
        self._load_successes += 1
        if self._metrics:
            self._metrics.record_load(self.name, "success", time.monotonic() - started)
        self._record_read("loaded")
        return slot

    def _load_failed(self, stale: CacheSlot[T], exc: Exception, started: float) -> CacheSlot[T]:
        self._load_failures += 1
        failure = LoadFailure(self.name, details={"placeholder": stale.is_placeholder})
        failure.__cause__ = exc
        self._log_sink(failure, "Failure to load cache from source!")
        if self._metrics:
            self._metrics.record_load(self.name, "failure", time.monotonic() - started)
        self._record_read("placeholder" if stale.is_placeholder else "stale")
        return stale

    def _fall_back(self) -> CacheSlot[T]:
        slot = self._cell.current
        self.logger.debug("Reload gate timed out, serving current value", cache=self.name)
        if self._metrics:
            self._metrics.record_gate_timeout(self.name)
        if slot.is_fresh(self._clock()):
            self._record_read("fresh")
        else:
            self._record_read("placeholder" if slot.is_placeholder else "stale")
        return slot

    def _record_read(self, outcome: str) -> None:
        if self._metrics:
            self._metrics.record_read(self.name, outcome)

    # Introspection

    @property
    def is_fresh(self) -> bool:
        return self._cell.current.is_fresh(self._clock())

    def stats(self) -> Dict[str, Any]:
        """Get a snapshot of the cache state."""
        slot = self._cell.current
        now = self._clock()
        return {
            "name": self.name,
            "fresh": slot.is_fresh(now),
            "placeholder": slot.is_placeholder,
            "age": None if slot.loaded_at is None else now - slot.loaded_at,
            "load_successes": self._load_successes,
            "load_failures": self._load_failures,
            "reload_in_progress": self._gate.busy,
            "caching_period": self._caching_period,
            "cloner": repr(self._cloner),
        }
