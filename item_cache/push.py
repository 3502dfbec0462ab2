"""
Auto-refreshing cache that loads eagerly and refreshes on a schedule.

The refresh loop runs on an asyncio event loop owned by one dedicated
daemon thread, so the cache serves both threaded and asyncio callers.
Readers never wait for a load: ``get()`` always returns a clone of the
last value loaded successfully (or the placeholder before the first load).

Lifecycle: UNINITIALIZED -> INITIALIZING -> STEADY, with DISPOSED reachable
from every state. While initializing, failed loads are retried after a
short fixed delay until one succeeds. Once steady, a failed refresh is
logged and the previous value stays current until the next scheduled
attempt.

Two signals interrupt the loop's waits:
- invalidate: cuts the current wait short and is rearmed after every
  wait, so an invalidation raised during a load triggers the next reload
- stop: raised once by ``dispose()`` and ends the loop for good

A loader may take one positional argument, a ``threading.Event`` that is
set when its attempt times out or the cache is disposed. Coroutine loaders
are also cancelled; plain callables run on a worker thread and can only
stop early by checking the event.
"""

import asyncio
import inspect
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar, Union

from shared.config import CacheSettings
from shared.errors import CacheUsageError, LoadFailure
from shared.logging import LogSink, get_logger, make_log_sink, set_cache_context
from shared.metrics import CacheMetrics
from shared.retry import RetryPolicy
from item_cache.cloning import Cloner, DeepCopyCloner, get_cloner
from item_cache.slot import CacheSlot, SlotCell
from item_cache.timeouts import MINIMUM_PERIOD, Duration, poll_until, to_seconds

T = TypeVar("T")

Loader = Callable[..., Union[T, Awaitable[T]]]

DEFAULT_INIT_RETRY_DELAY = 2.0

# How often a blocked initialize_blocking() checks for disposal
_DISPOSAL_CHECK_INTERVAL = 0.05


def _accepts_cancel_signal(loader: Callable) -> bool:
    """Whether the loader declares a required positional parameter for the cancellation event."""
    try:
        parameters = inspect.signature(loader).parameters.values()
    except (TypeError, ValueError):
        return False
    return any(
        parameter.kind in (parameter.POSITIONAL_ONLY, parameter.POSITIONAL_OR_KEYWORD)
        and parameter.default is parameter.empty
        for parameter in parameters
    )


class RefreshState(str, Enum):
    """Push cache lifecycle states."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    STEADY = "steady"
    DISPOSED = "disposed"


class PushCache(Generic[T]):
    """In-memory cache that refreshes its value in the background.

    Example:
        >>> cache = PushCache(load_rates, initial_value={}, refresh_period=60)
        >>> cache.initialize_blocking()
        >>> rates = cache.get()
        >>> cache.dispose()
    """

    def __init__(self,
                 loader: Loader,
                 *,
                 refresh_period: Duration,
                 initial_value: Optional[T] = None,
                 cloner: Optional[Cloner] = None,
                 load_timeout: Optional[Duration] = None,
                 init_retry_policy: Optional[RetryPolicy] = None,
                 log_sink: Optional[LogSink] = None,
                 metrics: Optional[CacheMetrics] = None,
                 name: str = "push"):
        """Create a cache; no loading happens until initialization is requested.

        Args:
            loader: Callable or coroutine function producing the value, taking
                either no arguments or the attempt's cancellation event
            refresh_period: Period between refreshes, i.e. the maximum staleness (min 10ms)
            initial_value: Placeholder served until the first load succeeds,
                stored as a clone
            cloner: Clone strategy applied on every read (default: deep copy)
            load_timeout: Per-attempt load timeout; None leaves loads unbounded
            init_retry_policy: Delay between failed initial loads (default: fixed 2s)
            log_sink: Receives ``(error, message)`` for every load failure
            metrics: Optional Prometheus collector
            name: Label used in logs, metrics and the refresh thread name

        Raises:
            ConfigurationError: A duration is invalid
            CloneFailure: initial_value cannot be cloned
        """
        self.name = name
        self._loader = loader
        self._pass_cancel_signal = _accepts_cancel_signal(loader)
        self._refresh_period = to_seconds(refresh_period, "refresh_period", minimum=MINIMUM_PERIOD)
        self._load_timeout = to_seconds(load_timeout, "load_timeout", allow_unbounded=True)
        self._init_retry_policy = init_retry_policy or RetryPolicy.fixed(DEFAULT_INIT_RETRY_DELAY)
        self._cloner = cloner if cloner is not None else DeepCopyCloner()
        self._log_sink = log_sink if log_sink is not None else make_log_sink(f"item_cache.{name}")
        self._metrics = metrics
        self.logger = get_logger(f"item_cache.{name}")

        self._cell: SlotCell[T] = SlotCell(CacheSlot(self._cloner.clone(initial_value)))
        self._state = RefreshState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._initialized = threading.Event()
        self._thread: Optional[threading.Thread] = None

        # Owned by the refresh thread; published under _state_lock
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wake: Optional[asyncio.Event] = None
        self._stop: Optional[asyncio.Event] = None
        self._wake_pending = False
        self._load_cancelled: Optional[threading.Event] = None

        self._load_successes = 0
        self._load_failures = 0

    @classmethod
    def from_settings(cls, settings: CacheSettings, loader: Loader, *,
                      value_type: Optional[type] = None, **kwargs) -> "PushCache[T]":
        """Build a cache from environment-backed settings; kwargs override them."""
        options: Dict[str, Any] = {
            "refresh_period": settings.refresh_period,
            "load_timeout": settings.load_timeout,
            "init_retry_policy": RetryPolicy.fixed(settings.init_retry_delay),
            "cloner": get_cloner(settings.clone_strategy, value_type),
        }
        if settings.enable_metrics and "metrics" not in kwargs:
            options["metrics"] = CacheMetrics()
        options.update(kwargs)
        return cls(loader, **options)

    # Lifecycle

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._initialized.is_set()

    def start_initialization(self) -> None:
        """Start loading in the background; later calls are no-ops."""
        with self._state_lock:
            if self._state is not RefreshState.UNINITIALIZED:
                return
            self._state = RefreshState.INITIALIZING
            self._thread = threading.Thread(
                target=self._run, name=f"item-cache-{self.name}", daemon=True
            )
            self._thread.start()

        self.logger.info("Cache initialization started", cache=self.name)

    def initialize_blocking(self) -> None:
        """Start initialization and block until the first load succeeds.

        There is no timeout: a cache whose loader never succeeds blocks
        forever. Use ``start_initialization()`` with
        ``await_initialization()`` for a bounded wait.

        Raises:
            CacheUsageError: The cache was disposed before a value was loaded
        """
        self.start_initialization()
        while not self._initialized.wait(_DISPOSAL_CHECK_INTERVAL):
            if self._state is RefreshState.DISPOSED:
                raise CacheUsageError(
                    "Cache was disposed before initialization completed",
                    details={"cache": self.name}
                )

    def await_initialization(self, timeout: Optional[Duration]) -> bool:
        """Wait up to ``timeout`` for the first successful load.

        Returns:
            Whether initialization completed within the timeout

        Raises:
            CacheUsageError: Initialization was never started
        """
        seconds = self._check_awaitable(timeout)
        if self._initialized.is_set():
            return True
        return self._initialized.wait(seconds)

    async def initialize_async(self) -> None:
        """Suspending variant of ``initialize_blocking()``."""
        self.start_initialization()
        await poll_until(
            lambda: self._initialized.is_set() or self._state is RefreshState.DISPOSED, None
        )
        if not self._initialized.is_set():
            raise CacheUsageError(
                "Cache was disposed before initialization completed",
                details={"cache": self.name}
            )

    async def await_initialization_async(self, timeout: Optional[Duration]) -> bool:
        """Suspending variant of ``await_initialization()``."""
        seconds = self._check_awaitable(timeout)
        return await poll_until(self._initialized.is_set, seconds)

    def dispose(self) -> None:
        """Stop background refreshing; safe to call more than once.

        A load already in flight has its cancellation event set; if it
        still completes, its result is discarded.
        """
        with self._state_lock:
            if self._state is RefreshState.DISPOSED:
                return
            self._state = RefreshState.DISPOSED
            loop, stop = self._loop, self._stop
            cancelled = self._load_cancelled

        if cancelled is not None:
            cancelled.set()
        if loop is not None:
            self._signal(loop, stop)
        self.logger.info("Cache disposed", cache=self.name)

    def __enter__(self) -> "PushCache[T]":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    # Reads

    def get(self) -> T:
        """Return a clone of the current value without waiting for any load."""
        slot = self._cell.current
        if self._metrics:
            self._metrics.record_read(self.name, "placeholder" if slot.is_placeholder else "fresh")
        return self._cloner.clone(slot.value)

    def invalidate(self) -> None:
        """Ask the refresh loop to reload now instead of at the next period.

        Does not block, and the served value only changes once the reload
        succeeds.
        """
        with self._state_lock:
            loop, wake = self._loop, self._wake
            if loop is None and self._state is RefreshState.INITIALIZING:
                # Refresh loop not published yet; it raises the signal on start
                self._wake_pending = True

        if self._metrics:
            self._metrics.record_invalidation(self.name)
        if loop is not None:
            self._signal(loop, wake)
        self.logger.debug("Cache invalidated", cache=self.name)

    # Refresh loop (runs on the refresh thread)

    def _run(self) -> None:
        set_cache_context(self.name)
        asyncio.run(self._refresh_forever())

    async def _refresh_forever(self) -> None:
        self._wake = asyncio.Event()
        self._stop = asyncio.Event()
        with self._state_lock:
            self._loop = asyncio.get_running_loop()
            if self._state is RefreshState.DISPOSED:
                self._stop.set()
            if self._wake_pending:
                self._wake.set()
                self._wake_pending = False

        try:
            if not await self._initialize():
                return

            while True:
                await self._wait(self._refresh_period)
                if self._stop.is_set():
                    break
                await self._load()
        finally:
            with self._state_lock:
                self._loop = None
            self.logger.debug("Refresh loop stopped", cache=self.name)

    async def _initialize(self) -> bool:
        """Load until one attempt succeeds; False if disposed first."""
        attempt = 0
        while not self._stop.is_set():
            attempt += 1
            if await self._load():
                with self._state_lock:
                    if self._state is RefreshState.INITIALIZING:
                        self._state = RefreshState.STEADY
                self._initialized.set()
                self.logger.info("Cache initialization completed", cache=self.name, attempts=attempt)
                return True
            if self._stop.is_set():
                break
            await self._wait(self._init_retry_policy.delay_for(attempt))
        return False

    async def _wait(self, delay: float) -> None:
        """Sleep for ``delay`` unless invalidated or stopped first."""
        waiters = {
            asyncio.ensure_future(self._wake.wait()),
            asyncio.ensure_future(self._stop.wait()),
        }
        try:
            await asyncio.wait(waiters, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        # Rearm, so an invalidation arriving from here on cuts the next wait short
        self._wake.clear()

    async def _load(self) -> bool:
        started = time.monotonic()
        cancelled = threading.Event()
        with self._state_lock:
            self._load_cancelled = cancelled
            if self._state is RefreshState.DISPOSED:
                cancelled.set()
        try:
            value = await asyncio.wait_for(self._call_loader(cancelled), timeout=self._load_timeout)
        except Exception as exc:
            # A plain loader may still be running on its worker thread
            cancelled.set()
            self._load_failures += 1
            failure = LoadFailure(self.name, details={"state": self._state.value})
            failure.__cause__ = exc
            self._log_sink(failure, "Failure to load cache from source!")
            if self._metrics:
                self._metrics.record_load(self.name, "failure", time.monotonic() - started)
            return False
        finally:
            with self._state_lock:
                self._load_cancelled = None

        if self._stop.is_set():
            self.logger.debug("Discarding value loaded after disposal", cache=self.name)
            if self._metrics:
                self._metrics.record_load(self.name, "discarded", time.monotonic() - started)
            return False

        self._cell.publish(CacheSlot(value, loaded_at=time.monotonic()))
        self._load_successes += 1
        if self._metrics:
            self._metrics.record_load(self.name, "success", time.monotonic() - started)
        return True

    async def _call_loader(self, cancelled: threading.Event) -> T:
        args = (cancelled,) if self._pass_cancel_signal else ()
        if inspect.iscoroutinefunction(self._loader):
            return await self._loader(*args)
        # Plain callables run off the loop; on timeout they are abandoned once signalled
        result = await asyncio.to_thread(self._loader, *args)
        if inspect.isawaitable(result):
            return await result
        return result

    # Helpers

    def _check_awaitable(self, timeout: Optional[Duration]) -> Optional[float]:
        seconds = to_seconds(timeout, "timeout", allow_unbounded=True)
        if self._state is RefreshState.UNINITIALIZED:
            raise CacheUsageError(
                "Initialization must be started before it can be awaited",
                details={"cache": self.name}
            )
        return seconds

    @staticmethod
    def _signal(loop: asyncio.AbstractEventLoop, event: asyncio.Event) -> None:
        try:
            loop.call_soon_threadsafe(event.set)
        except RuntimeError:
            # Loop already closed; the refresh thread has exited
            pass

    def stats(self) -> Dict[str, Any]:
        """Get a snapshot of the cache state."""
        slot = self._cell.current
        return {
            "name": self.name,
            "state": self._state.value,
            "initialized": self._initialized.is_set(),
            "placeholder": slot.is_placeholder,
            "age": None if slot.loaded_at is None else time.monotonic() - slot.loaded_at,
            "load_successes": self._load_successes,
            "load_failures": self._load_failures,
            "refresh_period": self._refresh_period,
            "load_timeout": self._load_timeout,
            "cloner": repr(self._cloner),
        }
