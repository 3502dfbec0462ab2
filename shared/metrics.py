"""
Prometheus metrics for the item cache.
"""

import threading
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram


class CacheMetrics:
    """Centralized metrics collector shared by cache instances.

    Each collector owns a private registry unless one is passed in, so
    several collectors can coexist in one process (and in tests).
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "item_cache"):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.namespace = namespace
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache metrics."""
        self._metrics["reads_total"] = Counter(
            f"{self.namespace}_reads_total",
            "Total cache reads by outcome",
            ["cache", "outcome"],
            registry=self.registry
        )

        self._metrics["loads_total"] = Counter(
            f"{self.namespace}_loads_total",
            "Total loader invocations by result",
            ["cache", "result"],
            registry=self.registry
        )

        self._metrics["load_duration_seconds"] = Histogram(
            f"{self.namespace}_load_duration_seconds",
            "Loader duration in seconds",
            ["cache"],
            registry=self.registry
        )

        self._metrics["gate_timeouts_total"] = Counter(
            f"{self.namespace}_gate_timeouts_total",
            "Reads that fell back to stale data after the single-flight gate timed out",
            ["cache"],
            registry=self.registry
        )

        self._metrics["invalidations_total"] = Counter(
            f"{self.namespace}_invalidations_total",
            "Total explicit invalidations",
            ["cache"],
            registry=self.registry
        )

    def record_read(self, cache: str, outcome: str):
        """Record a read; outcome is fresh, loaded, stale or placeholder."""
        self._metrics["reads_total"].labels(cache=cache, outcome=outcome).inc()

    def record_load(self, cache: str, result: str, duration: float):
        """Record a loader invocation; result is success, failure or discarded."""
        with self._lock:
            self._metrics["loads_total"].labels(cache=cache, result=result).inc()
            self._metrics["load_duration_seconds"].labels(cache=cache).observe(duration)

    def record_gate_timeout(self, cache: str):
        self._metrics["gate_timeouts_total"].labels(cache=cache).inc()

    def record_invalidation(self, cache: str):
        self._metrics["invalidations_total"].labels(cache=cache).inc()

    def sample(self, name: str, **labels) -> float:
        """Read the current value of a sample from this collector's registry."""
        value = self.registry.get_sample_value(f"{self.namespace}_{name}", labels)
        return value or 0.0
