"""
Immutable cache snapshots and the cell that publishes them.
"""

import dataclasses
import math
import threading
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")

ALWAYS_FRESH = math.inf
ALREADY_EXPIRED = -math.inf


@dataclass(frozen=True)
class CacheSlot(Generic[T]):
    """A cached value plus its freshness metadata.

    ``fresh_until`` is a reading of the owning cache's clock; ALWAYS_FRESH
    means the slot stays current until the next write. ``retry_budget`` is
    how long a reader may wait on the single-flight gate once this slot
    has expired (None waits indefinitely). ``loaded_at`` is None for
    placeholder slots that were never produced by a loader.
    """

    value: T
    fresh_until: float = ALWAYS_FRESH
    retry_budget: Optional[float] = None
    loaded_at: Optional[float] = None

    @property
    def is_placeholder(self) -> bool:
        return self.loaded_at is None

    def is_fresh(self, now: float) -> bool:
        return now < self.fresh_until

    def expired(self) -> "CacheSlot[T]":
        """A copy of this slot that is already stale but keeps its value."""
        return dataclasses.replace(self, fresh_until=ALREADY_EXPIRED)


class SlotCell(Generic[T]):
    """Holds the current slot.

    Readers take ``current`` without locking: a slot is never mutated after
    publication, so a reader always sees a complete snapshot. Writers
    serialise on a small lock so a read-modify-write such as invalidation
    cannot overwrite a slot published concurrently with an older one.
    """

    def __init__(self, initial: CacheSlot[T]):
        self._slot = initial
        self._version = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> CacheSlot[T]:
        return self._slot

    @property
    def version(self) -> int:
        """Number of slots published since construction."""
        return self._version

    def publish(self, slot: CacheSlot[T]) -> None:
        with self._lock:
            self._slot = slot
            self._version += 1

    def update(self, transform: Callable[[CacheSlot[T]], CacheSlot[T]]) -> CacheSlot[T]:
        """Atomically replace the current slot with ``transform(current)``."""
        with self._lock:
            slot = transform(self._slot)
            self._slot = slot
            self._version += 1
            return slot
