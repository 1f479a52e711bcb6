"""Configuration for resilience patterns."""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Type


class RetryStrategy(str, Enum):
    """Retry backoff strategies."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CONSTANT = "constant"


# ── Default Constants ────────────────────────────────────────────────

DEFAULT_MAX_RETRIES = 2  # three attempts in total
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 8.0  # seconds
DEFAULT_JITTER_MAX = 0.5  # seconds


@dataclass
class RetryConfig:
    """Configuration for retry logic."""

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    jitter_max: float = DEFAULT_JITTER_MAX
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    retryable_exceptions: Tuple[Type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        OSError,
    )

    @classmethod
    def for_attempts(cls, attempts: int, **kwargs) -> "RetryConfig":
        """Build a config from a total attempt budget instead of a retry count."""
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        return cls(max_retries=attempts - 1, **kwargs)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1
