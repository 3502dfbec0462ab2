"""
Shared utilities for the item cache.

This package aggregates the ambient building blocks the cache core relies on:

- config: Cache configuration via pydantic-settings
- logging: Structured logging and the default load-failure sink
- metrics: Prometheus metrics helpers
- errors: Canonical error types
- retry: Retry delay policies

Cache logic lives in item_cache/. Do not import from item_cache into shared/.
"""
