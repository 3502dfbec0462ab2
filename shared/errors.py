"""
Shared error handling for the item cache.
"""

from typing import Dict, Any, Optional


class CacheError(Exception):
    """Base exception for item cache failures."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a structured log/report payload."""
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }
        if self.__cause__ is not None:
            payload["cause"] = f"{type(self.__cause__).__name__}: {self.__cause__}"
        return payload


class ConfigurationError(CacheError):
    """Invalid option supplied when constructing a cache."""

    def __init__(self, message: str = "Invalid cache configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class CloneFailure(CacheError):
    """A cached value could not be cloned, or its type cannot be cloned at all."""

    def __init__(self, message: str = "Value could not be cloned", details: Optional[Dict[str, Any]] = None):
        super().__init__("CLONE_FAILURE", message, details)


class LoadFailure(CacheError):
    """The loader raised or exceeded its load timeout."""

    def __init__(self, cache: str, message: str = "Failure to load cache from source", details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("cache", cache)
        super().__init__("LOAD_FAILURE", message, details)


class CacheUsageError(CacheError):
    """The cache API was used out of order."""

    def __init__(self, message: str = "Invalid cache usage", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_USAGE_ERROR", message, details)
