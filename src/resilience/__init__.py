"""Resilience Patterns.

Retry with bounded backoff for calls against flaky control-plane APIs.
"""

from .config import (
    RetryStrategy,
    RetryConfig,
)
from .retry import (
    MaxRetriesExceeded,
    call_with_retry,
)

__all__ = [
    # Config / Enums
    "RetryStrategy",
    "RetryConfig",
    # Retry
    "MaxRetriesExceeded",
    "call_with_retry",
]
