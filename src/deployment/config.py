"""Blue/Green Deployment Orchestration — Configuration."""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from src.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class DeploymentStatus(enum.Enum):
    """Lifecycle status of a deployment."""

    CREATED = "created"
    PROVISIONING = "provisioning"
    SHIFTING = "shifting"
    VALIDATING = "validating"
    COMPLETE = "complete"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DeploymentStatus.COMPLETE, DeploymentStatus.ROLLED_BACK, DeploymentStatus.FAILED}
)

ALLOWED_TRANSITIONS = {
    DeploymentStatus.CREATED: frozenset(
        {DeploymentStatus.PROVISIONING, DeploymentStatus.FAILED}
    ),
    DeploymentStatus.PROVISIONING: frozenset(
        {DeploymentStatus.SHIFTING, DeploymentStatus.FAILED}
    ),
    DeploymentStatus.SHIFTING: frozenset(
        {
            DeploymentStatus.VALIDATING,
            DeploymentStatus.ROLLED_BACK,
            DeploymentStatus.FAILED,
        }
    ),
    DeploymentStatus.VALIDATING: frozenset(
        {
            DeploymentStatus.COMPLETE,
            DeploymentStatus.ROLLED_BACK,
            DeploymentStatus.FAILED,
        }
    ),
    DeploymentStatus.COMPLETE: frozenset(),
    DeploymentStatus.ROLLED_BACK: frozenset(),
    DeploymentStatus.FAILED: frozenset(),
}


class EnvironmentLabel(enum.Enum):
    """The two environments of a blue/green pair."""

    BLUE = "blue"
    GREEN = "green"


class HealthStatus(enum.Enum):
    """Health of an environment as reported by the traffic router."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class GateMode(enum.Enum):
    """Whether health breaches block the rollout or are only reported."""

    ENFORCE = "enforce"
    ADVISORY = "advisory"


class ScheduleProfile(enum.Enum):
    """Built-in traffic schedule shapes."""

    LINEAR = "linear"
    CANARY = "canary"


class ErrorCode(enum.Enum):
    """Machine-readable codes carried by deployment errors."""

    PROVISIONING_FAILED = "PROVISIONING_FAILED"
    TRAFFIC_SHIFT_FAILED = "TRAFFIC_SHIFT_FAILED"
    ALARM_TRIGGERED = "ALARM_TRIGGERED"
    SMOKE_TEST_FAILED = "SMOKE_TEST_FAILED"
    DEPLOYMENT_TIMEOUT = "DEPLOYMENT_TIMEOUT"
    DEPLOYMENT_CONFLICT = "DEPLOYMENT_CONFLICT"
    RENDER_FAILED = "RENDER_FAILED"
    ABORTED = "ABORTED"
    CONTROL_PLANE_ERROR = "CONTROL_PLANE_ERROR"
    CONTROL_PLANE_UNAVAILABLE = "CONTROL_PLANE_UNAVAILABLE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Responses that count as a passing smoke test
SMOKE_SUCCESS_CODES = frozenset({200, 301, 302})

# A database slot claim outlives the deployment budget by this much before
# another process may take it over
RESERVATION_GRACE_SECONDS = 300.0


@dataclass
class DeploymentConfig:
    """Rollout policy passed into the coordinator at construction."""

    # Provisioning
    provisioning_grace_seconds: float = 120.0
    provisioning_poll_seconds: float = 10.0
    # Traffic schedule
    schedule_profile: ScheduleProfile = ScheduleProfile.LINEAR
    step_percent: int = 10
    step_duration_seconds: float = 60.0
    canary_percent: int = 10
    canary_hold_seconds: float = 300.0
    # Health
    health_check_interval_seconds: float = 30.0
    unhealthy_threshold: int = 3
    alarm_metric: str = "http_requests_failed_total"
    alarm_threshold: int = 10
    alarm_window_seconds: float = 120.0
    alarm_evaluation_periods: int = 2
    gate_mode: GateMode = GateMode.ENFORCE
    # Validation
    smoke_test_url: str = ""
    smoke_test_attempts: int = 5
    smoke_test_delay_seconds: float = 10.0
    smoke_test_timeout_seconds: float = 5.0
    soak_seconds: float = 300.0
    # Global bound on a single deployment
    deployment_timeout_seconds: float = 1200.0
    # Control plane retries
    control_plane_max_attempts: int = 3
    control_plane_base_delay: float = 1.0
    control_plane_max_delay: float = 8.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DeploymentConfig":
        """Build the policy from environment-backed settings."""
        settings = settings or get_settings()
        return cls(
            provisioning_grace_seconds=settings.provisioning_grace_seconds,
            provisioning_poll_seconds=settings.provisioning_poll_seconds,
            schedule_profile=ScheduleProfile(settings.schedule_profile.lower()),
            step_percent=settings.step_percent,
            step_duration_seconds=settings.step_duration_seconds,
            canary_percent=settings.canary_percent,
            canary_hold_seconds=settings.canary_hold_seconds,
            health_check_interval_seconds=settings.health_check_interval_seconds,
            unhealthy_threshold=settings.unhealthy_threshold,
            alarm_metric=settings.alarm_metric,
            alarm_threshold=settings.alarm_threshold,
            alarm_window_seconds=settings.alarm_window_seconds,
            alarm_evaluation_periods=settings.alarm_evaluation_periods,
            gate_mode=GateMode(settings.gate_mode.lower()),
            smoke_test_url=settings.smoke_test_url,
            smoke_test_attempts=settings.smoke_test_attempts,
            smoke_test_delay_seconds=settings.smoke_test_delay_seconds,
            smoke_test_timeout_seconds=settings.smoke_test_timeout_seconds,
            soak_seconds=settings.soak_seconds,
            deployment_timeout_seconds=settings.deployment_timeout_seconds,
            control_plane_max_attempts=settings.control_plane_max_attempts,
            control_plane_base_delay=settings.control_plane_base_delay,
            control_plane_max_delay=settings.control_plane_max_delay,
        )
