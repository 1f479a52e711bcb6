"""Blue/Green Deployment Orchestration."""

from .config import (
    DeploymentStatus,
    EnvironmentLabel,
    HealthStatus,
    GateMode,
    ScheduleProfile,
    ErrorCode,
    DeploymentConfig,
)
from .exceptions import (
    DeploymentError,
    ProvisioningError,
    ControlPlaneError,
    TransientControlPlaneError,
    TrafficShiftError,
    AlarmTriggeredRollback,
    SmokeTestFailure,
    DeploymentTimeoutError,
    DeploymentAborted,
    ConflictError,
    RenderError,
    InvalidTransition,
)
from .models import (
    RenderedDescriptor,
    Revision,
    TargetPair,
    Environment,
    ScheduleStep,
    TrafficSchedule,
    AlarmState,
    Deployment,
)
from .timing import (
    CancellationToken,
    Clock,
    SystemClock,
    Deadline,
)
from .router import (
    TrafficRouter,
    HttpTrafficRouter,
    TrafficRouterClient,
)
from .registry import (
    ArtifactRegistry,
    HttpArtifactRegistry,
    ArtifactRegistryClient,
)
from .health import (
    AlarmService,
    HttpAlarmService,
    ErrorRateAlarm,
    LocalAlarmService,
    HealthReport,
    HealthMonitor,
)
from .traffic import (
    linear_schedule,
    canary_schedule,
    build_schedule,
    ShiftResult,
    TrafficShifter,
)
from .rollback import (
    RollbackAction,
    RollbackController,
)
from .smoke import (
    SmokeResult,
    SmokeTestRunner,
)
from .rendering import (
    render,
    render_file,
    task_definition_values,
)
from .archive import DeploymentArchive
from .memory import (
    InMemoryTrafficRouter,
    InMemoryAlarmService,
    InMemoryArtifactRegistry,
    ManualClock,
)
from .orchestrator import DeploymentCoordinator

__all__ = [
    # Config
    "DeploymentStatus",
    "EnvironmentLabel",
    "HealthStatus",
    "GateMode",
    "ScheduleProfile",
    "ErrorCode",
    "DeploymentConfig",
    # Errors
    "DeploymentError",
    "ProvisioningError",
    "ControlPlaneError",
    "TransientControlPlaneError",
    "TrafficShiftError",
    "AlarmTriggeredRollback",
    "SmokeTestFailure",
    "DeploymentTimeoutError",
    "DeploymentAborted",
    "ConflictError",
    "RenderError",
    "InvalidTransition",
    # Models
    "RenderedDescriptor",
    "Revision",
    "TargetPair",
    "Environment",
    "ScheduleStep",
    "TrafficSchedule",
    "AlarmState",
    "Deployment",
    # Timing
    "CancellationToken",
    "Clock",
    "SystemClock",
    "Deadline",
    # Router
    "TrafficRouter",
    "HttpTrafficRouter",
    "TrafficRouterClient",
    # Registry
    "ArtifactRegistry",
    "HttpArtifactRegistry",
    "ArtifactRegistryClient",
    # Health
    "AlarmService",
    "HttpAlarmService",
    "ErrorRateAlarm",
    "LocalAlarmService",
    "HealthReport",
    "HealthMonitor",
    # Traffic
    "linear_schedule",
    "canary_schedule",
    "build_schedule",
    "ShiftResult",
    "TrafficShifter",
    # Rollback
    "RollbackAction",
    "RollbackController",
    # Smoke
    "SmokeResult",
    "SmokeTestRunner",
    # Rendering
    "render",
    "render_file",
    "task_definition_values",
    # Archive
    "DeploymentArchive",
    # In-memory collaborators
    "InMemoryTrafficRouter",
    "InMemoryAlarmService",
    "InMemoryArtifactRegistry",
    "ManualClock",
    # Coordinator
    "DeploymentCoordinator",
]
