"""
In-process caching of a single expensive value.

Two flavours share one consistency engine:

- PullCache: loads lazily on access and reloads after a caching period,
  coalescing concurrent reloads behind a timeout-bounded gate
- PushCache: loads at startup and refreshes on a schedule in the
  background, always serving the last value loaded successfully

Both return a clone of the cached value on every read (see cloning).
"""

from item_cache.cloning import (
    Cloneable,
    Cloner,
    CloneStrategy,
    DeepCopyCloner,
    DelegatingCloner,
    NoCloneCloner,
    PickleCloner,
    get_cloner,
)
from item_cache.gate import SingleFlightGate
from item_cache.pull import PullCache
from item_cache.push import PushCache, RefreshState
from item_cache.slot import CacheSlot, SlotCell

__all__ = [
    "CacheSlot",
    "CloneStrategy",
    "Cloneable",
    "Cloner",
    "DeepCopyCloner",
    "DelegatingCloner",
    "NoCloneCloner",
    "PickleCloner",
    "PullCache",
    "PushCache",
    "RefreshState",
    "SingleFlightGate",
    "SlotCell",
    "get_cloner",
]
