"""Blue/Green Deployment Orchestration — Clocks, Cancellation and Deadlines.

Every suspension point of a deployment goes through a ``Clock`` so that
waits are cancellable and tests can run a full rollout without sleeping.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from .exceptions import DeploymentAborted, DeploymentTimeoutError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative abort flag shared between an operator and a control loop."""

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @property
    def event(self) -> threading.Event:
        return self._event

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "aborted by operator") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DeploymentAborted(f"Deployment aborted: {self._reason}")


class Clock:
    """Time source used by the control loop."""

    def monotonic(self) -> float:
        raise NotImplementedError

    def now(self) -> datetime:
        raise NotImplementedError

    def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> bool:
        """Wait ``seconds``; return True if the wait ended because of a cancel."""
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock implementation backed by ``time`` and ``threading.Event``."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> bool:
        if seconds <= 0:
            return bool(token and token.cancelled)
        if token is None:
            time.sleep(seconds)
            return False
        return token.event.wait(seconds)


class Deadline:
    """End-to-end time budget of one deployment."""

    def __init__(self, clock: Clock, seconds: float):
        self._clock = clock
        self._seconds = seconds
        self._expires_at = clock.monotonic() + seconds

    @property
    def seconds(self) -> float:
        return self._seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock.monotonic())

    @property
    def expired(self) -> bool:
        return self._clock.monotonic() >= self._expires_at

    def check(self) -> None:
        if self.expired:
            raise DeploymentTimeoutError(
                f"Deployment exceeded its {self._seconds:.0f}s time budget"
            )


def wait(
    clock: Clock,
    seconds: float,
    token: CancellationToken,
    deadline: Optional[Deadline] = None,
) -> None:
    """Sleep ``seconds`` without overrunning the deadline.

    Raises ``DeploymentAborted`` if the token fires during the wait and
    ``DeploymentTimeoutError`` once the deadline has passed.
    """
    if deadline is not None:
        seconds = min(seconds, deadline.remaining())
    clock.sleep(seconds, token)
    token.raise_if_cancelled()
    if deadline is not None:
        deadline.check()
