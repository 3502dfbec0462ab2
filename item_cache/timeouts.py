"""
Duration normalisation and bounded waiting shared by both cache flavours.
"""

import asyncio
import math
import time
from datetime import timedelta
from typing import Callable, Optional, Union

from shared.errors import ConfigurationError

Duration = Union[float, int, timedelta]

# Lower bound for refresh/caching periods, preventing runaway reload storms
MINIMUM_PERIOD = 0.010

# How often suspended waiters re-check a thread-owned condition
POLL_INTERVAL = 0.005


def to_seconds(value: Optional[Duration], name: str, *, minimum: float = 0.0,
               allow_unbounded: bool = False) -> Optional[float]:
    """Normalise a duration option to float seconds.

    Returns None for an unbounded duration (``None`` or infinity) when
    ``allow_unbounded`` is set. Raises ConfigurationError otherwise.
    """
    if value is None:
        if allow_unbounded:
            return None
        raise ConfigurationError(f"{name} is required", details={"option": name})

    if isinstance(value, timedelta):
        seconds = value.total_seconds()
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        raise ConfigurationError(
            f"{name} must be a number of seconds or a timedelta",
            details={"option": name, "type": type(value).__name__}
        )

    if math.isnan(seconds):
        raise ConfigurationError(f"{name} must be a number", details={"option": name})
    if math.isinf(seconds) and seconds > 0:
        if allow_unbounded:
            return None
        raise ConfigurationError(f"{name} must be finite", details={"option": name})
    if seconds < minimum:
        raise ConfigurationError(
            f"{name} must be at least {minimum}s",
            details={"option": name, "value": seconds, "minimum": minimum}
        )
    return seconds


def lock_timeout(timeout: Optional[float]) -> float:
    """Translate an optional timeout to the threading convention (-1 blocks forever)."""
    return -1 if timeout is None else timeout


async def poll_until(predicate: Callable[[], bool], timeout: Optional[float],
                     interval: float = POLL_INTERVAL) -> bool:
    """Suspend until ``predicate()`` holds or ``timeout`` seconds elapse.

    Used where the condition is owned by another thread, so an asyncio
    primitive cannot be awaited directly. The predicate is checked at
    least once, even with a zero timeout.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if predicate():
            return True
        if deadline is None:
            await asyncio.sleep(interval)
            continue
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))
