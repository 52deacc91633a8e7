"""
Retry policy for calls made through the circuit breaker registry.
Implements exponential backoff with jitter.
"""

import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


DEFAULT_RETRYABLE_ERRORS = ["ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED", "ENETUNREACH"]

# Transient markers that are always retryable regardless of the configured list
_TRANSIENT_MARKERS = ("timeout", "network", "connect")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_factor: float = 2.0
    jitter_factor: float = 0.1
    retryable_errors: List[str] = field(default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS))

    def calculate_delay(self, retry_count: int) -> float:
        """Calculate delay with exponential backoff and jitter."""
        delay = min(
            self.base_delay * (self.exponential_factor ** retry_count),
            self.max_delay
        )
        jitter = delay * self.jitter_factor * random.uniform(-1, 1)
        return max(0, delay + jitter)

    def is_retryable(self, error: BaseException) -> bool:
        """
        An error is retryable when its code or message carries one of the
        configured markers, or a generic transient marker. An empty marker
        list makes every error retryable.
        """
        if not self.retryable_errors:
            return True

        code = str(getattr(error, "code", "") or "")
        message = str(error).lower()
        if isinstance(error, (TimeoutError, ConnectionError)):
            return True
        if any(marker in message for marker in _TRANSIENT_MARKERS):
            return True
        return any(
            code == marker or marker.lower() in message
            for marker in self.retryable_errors
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        data = data or {}
        policy = cls()
        for key in ("max_retries", "base_delay", "max_delay", "exponential_factor", "jitter_factor"):
            if key in data:
                setattr(policy, key, type(getattr(policy, key))(data[key]))
        if "retryable_errors" in data:
            policy.retryable_errors = list(data["retryable_errors"] or [])
        return policy
