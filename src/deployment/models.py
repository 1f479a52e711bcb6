"""Blue/Green Deployment Orchestration — Data Model."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .config import DeploymentStatus, EnvironmentLabel, HealthStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RenderedDescriptor:
    """Fully resolved deployment descriptor produced by rendering."""

    content: str
    digest: str
    artifacts: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "artifacts", MappingProxyType(dict(self.artifacts)))


@dataclass(frozen=True)
class Revision:
    """Immutable deployable revision registered with the artifact registry."""

    revision_id: str
    artifacts: Mapping[str, str]
    configuration: str
    digest: str = ""
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        object.__setattr__(self, "artifacts", MappingProxyType(dict(self.artifacts)))


@dataclass(frozen=True)
class TargetPair:
    """Routing targets of one service's blue and green environments."""

    blue_target: str
    green_target: str

    def __post_init__(self):
        if not self.blue_target or not self.green_target:
            raise ValueError("Both blue and green routing targets are required")
        if self.blue_target == self.green_target:
            raise ValueError("Blue and green routing targets must differ")

    def swapped(self) -> "TargetPair":
        """Targets for the next deployment once green has become live."""
        return TargetPair(blue_target=self.green_target, green_target=self.blue_target)


@dataclass
class Environment:
    """One side of a blue/green pair."""

    label: EnvironmentLabel
    routing_target: str
    current_weight: int = 0
    health_status: HealthStatus = HealthStatus.UNKNOWN
    marked_for_termination: bool = False


@dataclass(frozen=True)
class ScheduleStep:
    """Green weight to apply once ``offset_seconds`` of shifting have elapsed."""

    offset_seconds: float
    green_weight: int

    @property
    def blue_weight(self) -> int:
        return 100 - self.green_weight


@dataclass(frozen=True)
class TrafficSchedule:
    """Ordered, validated sequence of traffic steps ending at 100% green."""

    steps: Tuple[ScheduleStep, ...]

    def __post_init__(self):
        steps = tuple(self.steps)
        object.__setattr__(self, "steps", steps)
        if not steps:
            raise ValueError("A traffic schedule needs at least one step")
        previous: Optional[ScheduleStep] = None
        for step in steps:
            if not 0 <= step.green_weight <= 100:
                raise ValueError(f"Weight {step.green_weight} outside 0-100")
            if step.offset_seconds < 0:
                raise ValueError(f"Negative step offset {step.offset_seconds}")
            if previous is not None:
                if step.green_weight < previous.green_weight:
                    raise ValueError("Schedule weights must be non-decreasing")
                if step.offset_seconds < previous.offset_seconds:
                    raise ValueError("Schedule offsets must be non-decreasing")
            previous = step
        if steps[-1].green_weight != 100:
            raise ValueError("A traffic schedule must end at 100% green")

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[float, int]]) -> "TrafficSchedule":
        """Build a schedule from ``(offset_seconds, green_weight)`` pairs."""
        return cls(tuple(ScheduleStep(float(o), int(w)) for o, w in pairs))

    @property
    def duration_seconds(self) -> float:
        return self.steps[-1].offset_seconds

    def weight_at(self, elapsed_seconds: float) -> int:
        """Green weight in effect ``elapsed_seconds`` after shifting began."""
        weight = 0
        for step in self.steps:
            if step.offset_seconds > elapsed_seconds:
                break
            weight = step.green_weight
        return weight


@dataclass
class AlarmState:
    """Alarm tracking for the lifetime of one deployment."""

    armed: bool = False
    breached: bool = False

    def reset(self) -> None:
        self.armed = False
        self.breached = False


@dataclass
class Deployment:
    """A single blue/green rollout of one revision of one service."""

    service: str
    blue: Environment
    green: Environment
    schedule: TrafficSchedule
    deployment_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    revision_id: Optional[str] = None
    revision: Optional[Revision] = None
    descriptor: Optional[RenderedDescriptor] = None
    status: DeploymentStatus = DeploymentStatus.CREATED
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    alarm: AlarmState = field(default_factory=AlarmState)
    weight_history: List[Tuple[int, int]] = field(default_factory=list)
    transitions: List[Tuple[DeploymentStatus, datetime]] = field(default_factory=list)
    metadata: Dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def weights(self) -> Tuple[int, int]:
        """Current ``(blue, green)`` weights."""
        return self.blue.current_weight, self.green.current_weight

    @property
    def traffic_shifted(self) -> bool:
        """True once green has received any share of live traffic."""
        return any(green > 0 for _, green in self.weight_history)

    @property
    def targets(self) -> TargetPair:
        return TargetPair(self.blue.routing_target, self.green.routing_target)

    def to_dict(self) -> dict:
        return {
            "deployment_id": self.deployment_id,
            "service": self.service,
            "revision_id": self.revision_id,
            "status": self.status.value,
            "blue_target": self.blue.routing_target,
            "green_target": self.green.routing_target,
            "blue_weight": self.blue.current_weight,
            "green_weight": self.green.current_weight,
            "failure_reason": self.failure_reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "weight_history": [list(pair) for pair in self.weight_history],
            "transitions": [
                {"status": status.value, "at": at.isoformat()}
                for status, at in self.transitions
            ],
        }
