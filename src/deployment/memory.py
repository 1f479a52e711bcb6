"""Blue/Green Deployment Orchestration — In-Memory Collaborators.

Process-local implementations of the control-plane interfaces and a
manually advanced clock. They back dry runs of the CLI and let a full
rollout execute in tests without sleeping or touching the network.
"""

import heapq
import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .config import HealthStatus
from .exceptions import ControlPlaneError, TransientControlPlaneError
from .health import AlarmService
from .models import RenderedDescriptor, TargetPair
from .registry import ArtifactRegistry
from .router import TrafficRouter
from .timing import CancellationToken, Clock

logger = logging.getLogger(__name__)

WeightListener = Callable[[TargetPair, int], None]


class InMemoryTrafficRouter(TrafficRouter):
    """Weighted router kept in a dict.

    Health answers can be fixed per target (``set_health``) or scripted as
    a sequence whose last entry repeats (``script_health``).
    """

    def __init__(self, default_health: HealthStatus = HealthStatus.HEALTHY):
        self.default_health = default_health
        self.weights: Dict[str, int] = {}
        self.updates: List[Tuple[str, int, str, int]] = []
        self.health_calls: Dict[str, int] = {}
        self.unavailable_weights: Set[int] = set()
        self.rejected_weights: Set[int] = set()
        self._health: Dict[str, HealthStatus] = {}
        self._scripts: Dict[str, List[HealthStatus]] = {}
        self._listeners: List[WeightListener] = []
        self._lock = threading.Lock()

    def set_weights(self, targets: TargetPair, green_weight: int) -> None:
        if green_weight in self.unavailable_weights:
            raise TransientControlPlaneError(
                f"Router unavailable for weight {green_weight}"
            )
        if green_weight in self.rejected_weights:
            raise ControlPlaneError(f"Router rejected weight {green_weight}")
        with self._lock:
            self.weights[targets.blue_target] = 100 - green_weight
            self.weights[targets.green_target] = green_weight
            self.updates.append(
                (targets.blue_target, 100 - green_weight, targets.green_target, green_weight)
            )
            listeners = list(self._listeners)
        for listener in listeners:
            listener(targets, green_weight)

    def get_health(self, routing_target: str) -> HealthStatus:
        with self._lock:
            self.health_calls[routing_target] = self.health_calls.get(routing_target, 0) + 1
            script = self._scripts.get(routing_target)
            if script:
                return script.pop(0) if len(script) > 1 else script[0]
            return self._health.get(routing_target, self.default_health)

    def set_health(self, routing_target: str, status: HealthStatus) -> None:
        with self._lock:
            self._scripts.pop(routing_target, None)
            self._health[routing_target] = status

    def script_health(self, routing_target: str, statuses: Sequence[HealthStatus]) -> None:
        with self._lock:
            self._scripts[routing_target] = list(statuses)

    def on_weights(self, listener: WeightListener) -> None:
        """Call ``listener(targets, green_weight)`` after every update."""
        self._listeners.append(listener)

    @property
    def green_weights(self) -> List[int]:
        return [update[3] for update in self.updates]


class InMemoryAlarmService(AlarmService):
    """Alarm service whose breaches are raised by hand."""

    def __init__(self):
        self.subscriptions: Dict[str, Tuple[str, int, float, int]] = {}
        self.clear_calls = 0
        self._breached: Set[str] = set()
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        metric: str,
        threshold: int,
        window_seconds: float,
        evaluation_periods: int = 2,
    ) -> str:
        subscription = (metric, threshold, window_seconds, evaluation_periods)
        with self._lock:
            for handle, existing in self.subscriptions.items():
                if existing == subscription:
                    return handle
            handle = f"alarm-{next(self._counter)}"
            self.subscriptions[handle] = subscription
            return handle

    def is_breached(self, handle: str) -> bool:
        return handle in self._breached

    def clear(self, handle: str) -> None:
        with self._lock:
            self.clear_calls += 1
            self._breached.discard(handle)

    def breach(self, handle: Optional[str] = None) -> None:
        """Put one alarm, or every subscribed alarm, into breach."""
        with self._lock:
            if handle is None:
                self._breached.update(self.subscriptions)
            else:
                self._breached.add(handle)
        logger.info("Alarm breach injected (%s)", handle or "all")


class InMemoryArtifactRegistry(ArtifactRegistry):
    """Registry that keys revisions by descriptor digest."""

    def __init__(self, prefix: str = "rev"):
        self.revisions: Dict[str, RenderedDescriptor] = {}
        self._prefix = prefix
        self._lock = threading.Lock()

    def register(self, descriptor: RenderedDescriptor) -> str:
        with self._lock:
            revision_id = f"{self._prefix}-{descriptor.digest[:12]}"
            self.revisions.setdefault(revision_id, descriptor)
            return revision_id


class ManualClock(Clock):
    """Clock that only moves when something sleeps on it.

    ``call_at`` schedules a callback at an absolute offset; a sleep that
    crosses it runs the callback and wakes early if the callback cancels
    the sleeper's token.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._pending: List[Tuple[float, int, Callable[[], None]]] = []
        self._seq = itertools.count()
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self._elapsed

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def call_at(self, offset_seconds: float, callback: Callable[[], None]) -> None:
        heapq.heappush(self._pending, (offset_seconds, next(self._seq), callback))

    def advance(self, seconds: float) -> None:
        self.sleep(seconds)

    def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> bool:
        if token is not None and token.cancelled:
            return True
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        target = self._elapsed + seconds
        while self._pending and self._pending[0][0] <= target:
            at, _, callback = heapq.heappop(self._pending)
            self._elapsed = max(self._elapsed, at)
            callback()
            if token is not None and token.cancelled:
                return True
        self._elapsed = target
        return False
