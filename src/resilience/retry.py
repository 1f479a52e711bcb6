"""Retry with exponential backoff.

Provides a helper for retrying failed calls with configurable backoff
strategies and jitter.
"""

import logging
import random
import time
from typing import Any, Callable, Optional

from .config import RetryConfig, RetryStrategy

logger = logging.getLogger(__name__)


class MaxRetriesExceeded(Exception):
    """Raised when all retry attempts have been exhausted."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(
            f"Max attempts ({attempts}) exceeded. "
            f"Last error: {last_exception}"
        )


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Compute the delay for the given attempt number.

    Args:
        attempt: Zero-based attempt index (0 = first retry).
        config: Retry configuration.

    Returns:
        Delay in seconds, capped at max_delay.
    """
    if config.strategy == RetryStrategy.EXPONENTIAL:
        delay = config.base_delay * (2 ** attempt)
    elif config.strategy == RetryStrategy.LINEAR:
        delay = config.base_delay * (attempt + 1)
    else:  # CONSTANT
        delay = config.base_delay

    # Add jitter
    if config.jitter_max > 0:
        delay = delay + random.uniform(0, config.jitter_max)

    # Cap at max_delay
    return min(delay, config.max_delay)


def call_with_retry(
    func: Callable,
    *args: Any,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Any] = time.sleep,
    **kwargs: Any,
) -> Any:
    """Call ``func`` and retry it on retryable exceptions.

    Args:
        func: The callable to invoke.
        config: Retry configuration. Defaults to ``RetryConfig()``.
        sleep: Function used to wait between attempts.

    Raises:
        MaxRetriesExceeded: When every attempt raised a retryable exception.
        Exception: Any non-retryable exception is propagated unchanged.
    """
    cfg = config or RetryConfig()
    name = getattr(func, "__name__", repr(func))
    last_exc: Optional[Exception] = None
    for attempt in range(cfg.max_retries + 1):
        try:
            return func(*args, **kwargs)
        except cfg.retryable_exceptions as exc:
            last_exc = exc
            if attempt < cfg.max_retries:
                delay = _compute_delay(attempt, cfg)
                logger.warning(
                    "Retry %d/%d for %s after %.2fs: %s",
                    attempt + 1,
                    cfg.max_retries,
                    name,
                    delay,
                    exc,
                )
                sleep(delay)
            else:
                logger.error(
                    "All %d attempts exhausted for %s: %s",
                    cfg.max_attempts,
                    name,
                    exc,
                )
    raise MaxRetriesExceeded(cfg.max_attempts, last_exc)  # type: ignore[arg-type]

