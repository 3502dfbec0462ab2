"""
Timeout-bounded mutual exclusion around cache reloads.
"""

import threading
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator, Iterator, Optional

from item_cache.timeouts import lock_timeout, poll_until


class SingleFlightGate:
    """Lets at most one caller reload at a time.

    The gate is a single thread lock shared by blocking and suspending
    callers, so a thread calling ``get()`` and a task calling
    ``get_async()`` on the same cache still coalesce into one load.
    Suspending callers poll the lock rather than parking a worker thread
    on it, which keeps cancellation from ever leaking an acquired gate.
    """

    def __init__(self):
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def acquire(self, timeout: Optional[float]) -> bool:
        """Block up to ``timeout`` seconds (None = indefinitely) for the gate."""
        return self._lock.acquire(timeout=lock_timeout(timeout))

    async def acquire_async(self, timeout: Optional[float]) -> bool:
        """Suspend up to ``timeout`` seconds (None = indefinitely) for the gate."""
        return await poll_until(lambda: self._lock.acquire(blocking=False), timeout)

    def release(self) -> None:
        self._lock.release()

    @contextmanager
    def hold(self, timeout: Optional[float]) -> Iterator[bool]:
        """Yield whether the gate was acquired; release it on every exit path."""
        acquired = self.acquire(timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    @asynccontextmanager
    async def hold_async(self, timeout: Optional[float]) -> AsyncIterator[bool]:
        acquired = await self.acquire_async(timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
