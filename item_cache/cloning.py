"""
Deep-clone strategies applied to every value handed out by a cache.

A cache keeps one internal copy of its value and returns clones of it, so
callers may mutate what they receive without corrupting the cached copy or
the copies held by other callers (possibly on other threads).

Strategies:
    NoCloneCloner     - returns the same object; only for immutable values
                        or single-threaded use
    DeepCopyCloner    - structural copy via copy.deepcopy
    PickleCloner      - structural copy via a pickle round-trip
    DelegatingCloner  - the value type supplies its own ``clone()``
"""

import copy
import pickle
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Generic, Optional, Protocol, Type, TypeVar, Union, runtime_checkable

from shared.errors import CloneFailure, ConfigurationError

T = TypeVar("T")


@runtime_checkable
class Cloneable(Protocol):
    """A type that knows how to produce a deep copy of itself."""

    def clone(self) -> Any:
        ...


class Cloner(ABC, Generic[T]):
    """Produces an independent copy of a cached value."""

    def clone(self, value: T) -> T:
        # Absent values are returned as-is; copy mechanisms need not support None
        if value is None:
            return value
        return self._clone(value)

    @abstractmethod
    def _clone(self, value: T) -> T:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class NoCloneCloner(Cloner[T]):
    """Hands out the cached object itself.

    Very fast, but offers no isolation: every caller receives the same
    instance. Only suitable for values that are already immutable or for
    caches used from a single thread.
    """

    def _clone(self, value: T) -> T:
        return value


class DeepCopyCloner(Cloner[T]):
    """Structural deep copy of the whole object graph."""

    def _clone(self, value: T) -> T:
        try:
            return copy.deepcopy(value)
        except (TypeError, copy.Error, pickle.PicklingError) as exc:
            raise CloneFailure(
                f"Value of type {type(value).__name__} cannot be deep-copied",
                details={"strategy": "deepcopy", "type": type(value).__name__}
            ) from exc


class PickleCloner(Cloner[T]):
    """Serialization-based deep copy, for graphs that round-trip through pickle."""

    def __init__(self, protocol: int = pickle.HIGHEST_PROTOCOL):
        self.protocol = protocol

    def _clone(self, value: T) -> T:
        try:
            return pickle.loads(pickle.dumps(value, protocol=self.protocol))
        except (TypeError, AttributeError, pickle.PicklingError) as exc:
            raise CloneFailure(
                f"Value of type {type(value).__name__} cannot be pickled",
                details={"strategy": "pickle", "type": type(value).__name__}
            ) from exc


class DelegatingCloner(Cloner[T]):
    """Delegates to the value's own ``clone()`` method.

    The type is checked when the cloner is built so a type without the
    capability fails at startup rather than on the first cache read. The
    type's ``clone()`` must produce a deep copy; a shallow one leaves the
    cache open to cross-thread sharing.
    """

    def __init__(self, value_type: Type[T]):
        if not isinstance(value_type, type) or not callable(getattr(value_type, "clone", None)):
            type_name = getattr(value_type, "__name__", repr(value_type))
            raise CloneFailure(
                f"Type {type_name} does not provide a clone() method",
                details={"strategy": "delegated", "type": type_name}
            )
        self.value_type = value_type

    def _clone(self, value: T) -> T:
        if not isinstance(value, Cloneable):
            raise CloneFailure(
                f"Value of type {type(value).__name__} does not provide a clone() method",
                details={"strategy": "delegated", "type": type(value).__name__}
            )
        return value.clone()

    def __repr__(self) -> str:
        return f"DelegatingCloner({self.value_type.__name__})"


class CloneStrategy(str, Enum):
    """Named clone strategies, as used in configuration."""

    NONE = "none"
    DEEP_COPY = "deepcopy"
    PICKLE = "pickle"
    DELEGATED = "delegated"


def get_cloner(strategy: Union[CloneStrategy, str] = CloneStrategy.DEEP_COPY,
               value_type: Optional[type] = None) -> Cloner:
    """Build the cloner for a strategy name; ``delegated`` needs the value type."""
    try:
        strategy = CloneStrategy(strategy)
    except ValueError:
        raise ConfigurationError(
            f"Unknown clone strategy '{strategy}'",
            details={"supported": [s.value for s in CloneStrategy]}
        ) from None

    if strategy is CloneStrategy.NONE:
        return NoCloneCloner()
    if strategy is CloneStrategy.PICKLE:
        return PickleCloner()
    if strategy is CloneStrategy.DELEGATED:
        if value_type is None:
            raise ConfigurationError("The delegated clone strategy requires a value type")
        return DelegatingCloner(value_type)
    return DeepCopyCloner()
