"""
Retry delay policy for resilient loading.
"""

import random
from typing import Any, Dict

from shared.errors import ConfigurationError

BACKOFF_STRATEGIES = ("exponential", "linear", "fixed")


class RetryPolicy:
    """Configuration for the delay between retry attempts."""

    def __init__(self,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        if base_delay < 0 or max_delay < 0:
            raise ConfigurationError(
                "Retry delays must not be negative",
                details={"base_delay": base_delay, "max_delay": max_delay}
            )
        if backoff_strategy not in BACKOFF_STRATEGIES:
            raise ConfigurationError(
                f"Unknown backoff strategy '{backoff_strategy}'",
                details={"supported": list(BACKOFF_STRATEGIES)}
            )
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy

    @classmethod
    def fixed(cls, delay: float) -> "RetryPolicy":
        """Constant, jitter-free delay between attempts."""
        return cls(base_delay=delay, max_delay=delay, jitter=False, backoff_strategy="fixed")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return _calculate_delay(attempt, self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "exponential_base": self.exponential_base,
            "jitter": self.jitter,
            "backoff_strategy": self.backoff_strategy,
        }


def _calculate_delay(attempt: int, policy: RetryPolicy) -> float:
    """Calculate delay between retry attempts."""
    if policy.backoff_strategy == "exponential":
        delay = policy.base_delay * (policy.exponential_base ** (attempt - 1))
    elif policy.backoff_strategy == "linear":
        delay = policy.base_delay * attempt
    else:
        delay = policy.base_delay

    # Apply max delay cap
    delay = min(delay, policy.max_delay)

    # Add jitter if enabled
    if policy.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        jitter = random.uniform(-jitter_amount, jitter_amount)
        delay += jitter

    return max(0.0, delay)
