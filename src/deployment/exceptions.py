"""Blue/Green Deployment Orchestration — Exception Hierarchy.

Typed exceptions for every way a deployment can stop. Each carries an
``ErrorCode`` and a human-readable message that ends up as the
deployment's ``failure_reason``.
"""

from typing import List, Optional, Sequence

from .config import ErrorCode


class DeploymentError(Exception):
    """Base exception for all deployment errors."""

    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code


class ProvisioningError(DeploymentError):
    """Raised when the green environment never becomes healthy."""

    default_code = ErrorCode.PROVISIONING_FAILED


class ControlPlaneError(DeploymentError):
    """Raised when a control-plane API permanently rejects a request."""

    default_code = ErrorCode.CONTROL_PLANE_ERROR


class TransientControlPlaneError(ControlPlaneError):
    """Timeouts and 5xx responses from a control-plane API; safe to retry."""

    default_code = ErrorCode.CONTROL_PLANE_UNAVAILABLE


class TrafficShiftError(ControlPlaneError):
    """Raised when the router will not accept a weight update."""

    default_code = ErrorCode.TRAFFIC_SHIFT_FAILED

    def __init__(self, message: str, green_weight: Optional[int] = None):
        super().__init__(message)
        self.green_weight = green_weight


class AlarmTriggeredRollback(DeploymentError):
    """Raised when a health signal breaches while traffic is on green."""

    default_code = ErrorCode.ALARM_TRIGGERED


class SmokeTestFailure(DeploymentError):
    """Raised when the post-cutover smoke test never succeeds."""

    default_code = ErrorCode.SMOKE_TEST_FAILED

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        last_status: Optional[int] = None,
        last_error: Optional[str] = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.last_status = last_status
        self.last_error = last_error


class DeploymentTimeoutError(DeploymentError, TimeoutError):
    """Raised when a deployment exceeds its end-to-end time budget."""

    default_code = ErrorCode.DEPLOYMENT_TIMEOUT


class DeploymentAborted(DeploymentError):
    """Raised at a suspension point after an operator abort."""

    default_code = ErrorCode.ABORTED


class ConflictError(DeploymentError):
    """Raised when a service already has a deployment in progress."""

    default_code = ErrorCode.DEPLOYMENT_CONFLICT

    def __init__(self, service: str, active_deployment_id: str):
        super().__init__(
            f"Service {service} already has an active deployment "
            f"({active_deployment_id})"
        )
        self.service = service
        self.active_deployment_id = active_deployment_id


class RenderError(DeploymentError):
    """Raised when a template cannot be fully resolved."""

    default_code = ErrorCode.RENDER_FAILED

    def __init__(self, message: str, missing: Sequence[str] = ()):
        super().__init__(message)
        self.missing: List[str] = list(missing)


class InvalidTransition(DeploymentError):
    """Raised on an attempt to move a deployment along a forbidden edge."""

    default_code = ErrorCode.INVALID_TRANSITION
