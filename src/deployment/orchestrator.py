"""Blue/Green Deployment Orchestration — Deployment Coordinator.

Owns the deployment state machine::

    CREATED -> PROVISIONING -> SHIFTING -> VALIDATING -> COMPLETE
                    |              |            |
                    v              v            v
                  FAILED      ROLLED_BACK / FAILED

A single control loop (``run``) drives each deployment from start to a
terminal state. Once any traffic has reached green, no exit path leaves
the routing split partially shifted.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from src.logging_config import DeploymentContext
from src.resilience import RetryConfig

from .archive import DeploymentArchive
from .config import (
    ALLOWED_TRANSITIONS,
    RESERVATION_GRACE_SECONDS,
    DeploymentConfig,
    DeploymentStatus,
    EnvironmentLabel,
)
from .exceptions import (
    AlarmTriggeredRollback,
    ConflictError,
    DeploymentAborted,
    DeploymentError,
    DeploymentTimeoutError,
    InvalidTransition,
    SmokeTestFailure,
    TrafficShiftError,
)
from .health import AlarmService, HealthMonitor
from .models import Deployment, Environment, RenderedDescriptor, TargetPair, TrafficSchedule
from .registry import ArtifactRegistry, ArtifactRegistryClient
from .rollback import RollbackController
from .router import TrafficRouter, TrafficRouterClient
from .smoke import SmokeTestRunner
from .timing import CancellationToken, Clock, Deadline, SystemClock, wait
from .traffic import TrafficShifter, build_schedule

logger = logging.getLogger(__name__)

# Stop conditions that revert traffic once shifting has begun
_ROLLBACK_TRIGGERS = (
    AlarmTriggeredRollback,
    SmokeTestFailure,
    DeploymentAborted,
    DeploymentTimeoutError,
)


class DeploymentCoordinator:
    """Manages deployment lifecycle from creation to completion or rollback."""

    def __init__(
        self,
        router: TrafficRouter,
        alarms: AlarmService,
        registry: ArtifactRegistry,
        config: Optional[DeploymentConfig] = None,
        clock: Optional[Clock] = None,
        smoke_runner: Optional[SmokeTestRunner] = None,
        archive: Optional[DeploymentArchive] = None,
        terminator: Optional[Callable[[Environment], None]] = None,
    ):
        self._config = config or DeploymentConfig()
        self._clock = clock or SystemClock()
        self._retry = RetryConfig.for_attempts(
            self._config.control_plane_max_attempts,
            base_delay=self._config.control_plane_base_delay,
            max_delay=self._config.control_plane_max_delay,
        )
        self._alarms = alarms
        self._router_api = router
        self._registry_api = registry
        # Rollback retries are not cancellable
        self._router = TrafficRouterClient(router, self._retry, sleep=self._clock.sleep)
        self._rollback = RollbackController(self._router, terminator=terminator)
        self._owns_smoke = smoke_runner is None
        self._smoke = smoke_runner or SmokeTestRunner(self._config, clock=self._clock)
        self._archive = archive

        self._services: Dict[str, TargetPair] = {}
        self._deployments: Dict[str, Deployment] = {}
        self._active: Dict[str, str] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._running: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def config(self) -> DeploymentConfig:
        return self._config

    @property
    def rollbacks(self) -> RollbackController:
        return self._rollback

    # ── Services ─────────────────────────────────────────────────────

    def register_service(self, service: str, targets: TargetPair) -> None:
        """Declare the routing targets of a service's blue/green pair."""
        with self._lock:
            self._services[service] = targets
        logger.info(
            "Registered %s: blue=%s green=%s",
            service,
            targets.blue_target,
            targets.green_target,
        )

    def get_targets(self, service: str) -> Optional[TargetPair]:
        return self._services.get(service)

    # ── Lifecycle ────────────────────────────────────────────────────

    def create_deployment(
        self,
        service: str,
        descriptor: Optional[RenderedDescriptor] = None,
        revision_id: Optional[str] = None,
        schedule: Optional[TrafficSchedule] = None,
    ) -> Deployment:
        """Create a deployment and reserve the service's active slot.

        Exactly one of ``descriptor`` (registered during provisioning) or
        ``revision_id`` (already registered) must be given.

        With an archive configured the slot is also claimed in the database,
        so coordinators in other processes see it.

        Raises:
            ConflictError: The service already has a non-terminal deployment.
        """
        if (descriptor is None) == (revision_id is None):
            raise ValueError("Provide exactly one of descriptor or revision_id")

        with self._lock:
            targets = self._services.get(service)
            if targets is None:
                raise ValueError(f"Service {service} has no registered routing targets")
            active_id = self._active.get(service)
            if active_id is not None and not self._deployments[active_id].is_terminal:
                raise ConflictError(service, active_id)

            deployment = Deployment(
                service=service,
                blue=Environment(EnvironmentLabel.BLUE, targets.blue_target, current_weight=100),
                green=Environment(EnvironmentLabel.GREEN, targets.green_target),
                schedule=schedule or build_schedule(self._config),
                revision_id=revision_id,
                descriptor=descriptor,
                created_at=self._clock.now(),
            )
            deployment.transitions.append((DeploymentStatus.CREATED, deployment.created_at))
            self._deployments[deployment.deployment_id] = deployment
            self._active[service] = deployment.deployment_id
            self._tokens[deployment.deployment_id] = CancellationToken()

        if self._archive is not None:
            self._reserve(deployment)

        logger.info(
            "Created deployment %s for %s (%s, %d steps)",
            deployment.deployment_id,
            service,
            revision_id or "descriptor pending registration",
            len(deployment.schedule.steps),
        )
        return deployment

    def run(self, deployment_id: str) -> Deployment:
        """Drive a created deployment to a terminal state and return it."""
        with self._lock:
            deployment = self._get_or_raise(deployment_id)
            if deployment.status != DeploymentStatus.CREATED or deployment_id in self._running:
                raise InvalidTransition(
                    f"Deployment {deployment_id} cannot run from {deployment.status.value}"
                )
            self._running.add(deployment_id)
            token = self._tokens[deployment_id]

        deadline = Deadline(self._clock, self._config.deployment_timeout_seconds)

        def backoff(seconds: float) -> None:
            wait(self._clock, seconds, token, deadline)

        router = TrafficRouterClient(self._router_api, self._retry, sleep=backoff)
        registry = ArtifactRegistryClient(
            self._registry_api, self._retry, sleep=backoff, now=self._clock.now
        )
        monitor = HealthMonitor(
            router,
            self._alarms,
            self._config,
            retry_config=self._retry,
            sleep=backoff,
        )
        with DeploymentContext(deployment_id=deployment_id, service=deployment.service):
            try:
                self._execute(deployment, router, registry, monitor, token, deadline)
            except DeploymentError as exc:
                self._stop(deployment, exc)
            except Exception as exc:
                logger.exception("Unexpected error in deployment %s", deployment_id)
                self._stop(deployment, exc)
                raise
            finally:
                monitor.disarm(deployment)
                self._release(deployment)
        return deployment

    def deploy(
        self,
        service: str,
        descriptor: Optional[RenderedDescriptor] = None,
        revision_id: Optional[str] = None,
        schedule: Optional[TrafficSchedule] = None,
    ) -> Deployment:
        """Create a deployment and run it to completion."""
        deployment = self.create_deployment(service, descriptor, revision_id, schedule)
        return self.run(deployment.deployment_id)

    def abort(self, deployment_id: str, reason: str = "aborted by operator") -> bool:
        """Request an abort. Returns False if the deployment already finished.

        A running deployment stops at its next suspension point; one that
        never started is failed immediately.
        """
        with self._lock:
            deployment = self._get_or_raise(deployment_id)
            if deployment.is_terminal:
                return False
            self.request_abort(deployment_id, reason)
            started = deployment_id in self._running
            if not started:
                self._running.add(deployment_id)

        logger.warning("Abort requested for %s: %s", deployment_id, reason)
        if not started:
            with DeploymentContext(deployment_id=deployment_id, service=deployment.service):
                self._stop(deployment, DeploymentAborted(f"Deployment aborted: {reason}"))
                self._release(deployment)
        return True

    def request_abort(self, deployment_id: str, reason: str = "aborted by operator") -> None:
        """Cancel a deployment's token without taking the coordinator lock.

        The control loop stops at its next suspension point. A deployment
        that never started is only failed once ``abort`` or ``run`` sees it.
        """
        token = self._tokens.get(deployment_id)
        if token is None:
            raise KeyError(f"Deployment {deployment_id} not found")
        token.cancel(reason)

    def close(self) -> None:
        """Release the HTTP client of a smoke runner this coordinator created."""
        if self._owns_smoke:
            self._smoke.close()

    # ── Queries ──────────────────────────────────────────────────────

    def get_deployment(self, deployment_id: str) -> Optional[Deployment]:
        """Retrieve a deployment by ID."""
        return self._deployments.get(deployment_id)

    def list_deployments(
        self,
        service: Optional[str] = None,
        status: Optional[DeploymentStatus] = None,
        limit: int = 20,
    ) -> List[Deployment]:
        """List deployments newest first, optionally filtered."""
        deployments = list(self._deployments.values())
        if service is not None:
            deployments = [d for d in deployments if d.service == service]
        if status is not None:
            deployments = [d for d in deployments if d.status == status]
        deployments.sort(key=lambda d: d.created_at or datetime.min, reverse=True)
        return deployments[:limit]

    def get_active_deployment(self, service: str) -> Optional[Deployment]:
        """Return the service's non-terminal deployment, if any."""
        deployment_id = self._active.get(service)
        if deployment_id is None:
            return None
        deployment = self._deployments.get(deployment_id)
        if deployment is None or deployment.is_terminal:
            return None
        return deployment

    def get_summary(self) -> dict:
        """Return aggregate deployment statistics."""
        all_deps = list(self._deployments.values())
        counts = {status: 0 for status in DeploymentStatus}
        for d in all_deps:
            counts[d.status] += 1
        complete = counts[DeploymentStatus.COMPLETE]
        rolled_back = counts[DeploymentStatus.ROLLED_BACK]
        failed = counts[DeploymentStatus.FAILED]
        finished = complete + rolled_back + failed
        success_rate = complete / finished if finished > 0 else 0.0
        return {
            "total": len(all_deps),
            "in_progress": len(all_deps) - finished,
            "complete": complete,
            "rolled_back": rolled_back,
            "failed": failed,
            "success_rate": round(success_rate, 4),
        }

    # ── Phases ───────────────────────────────────────────────────────

    def _execute(
        self,
        deployment: Deployment,
        router: TrafficRouterClient,
        registry: ArtifactRegistryClient,
        monitor: HealthMonitor,
        token: CancellationToken,
        deadline: Deadline,
    ) -> None:
        deployment.started_at = self._clock.now()

        self._transition(deployment, DeploymentStatus.PROVISIONING)
        self._provision(deployment, router, registry, monitor, token, deadline)

        self._transition(deployment, DeploymentStatus.SHIFTING)
        shifter = TrafficShifter(router, monitor, self._clock, self._config)
        result = shifter.run(deployment, token, deadline)
        deployment.metadata["advisory_breaches"] = result.advisory_breaches

        self._transition(deployment, DeploymentStatus.VALIDATING)
        self._validate(deployment, monitor, token, deadline)

        self._complete(deployment)

    def _provision(
        self,
        deployment: Deployment,
        router: TrafficRouterClient,
        registry: ArtifactRegistryClient,
        monitor: HealthMonitor,
        token: CancellationToken,
        deadline: Deadline,
    ) -> None:
        token.raise_if_cancelled()
        deadline.check()
        if deployment.revision_id is None and deployment.descriptor is not None:
            revision = registry.register(deployment.descriptor)
            deployment.revision = revision
            deployment.revision_id = revision.revision_id
        router.attach(deployment)
        monitor.arm(deployment)
        monitor.await_ready(deployment, self._clock, token, deadline)

    def _validate(
        self,
        deployment: Deployment,
        monitor: HealthMonitor,
        token: CancellationToken,
        deadline: Deadline,
    ) -> None:
        url = self._config.smoke_test_url
        if url:
            self._smoke.run(url, token, deadline)
        else:
            logger.info("No smoke test URL configured for %s; skipping", deployment.service)

        soak = self._config.soak_seconds
        interval = self._config.health_check_interval_seconds
        soak_end = self._clock.monotonic() + soak
        if soak > 0:
            logger.info("Soaking %s for %.0fs", deployment.service, soak)
        while True:
            report = monitor.check(deployment)
            if report.breached:
                raise AlarmTriggeredRollback(
                    f"Health breach during validation: {report.reason}"
                )
            remaining = soak_end - self._clock.monotonic()
            if remaining <= 0:
                break
            wait(self._clock, min(interval, remaining), token, deadline)

    def _complete(self, deployment: Deployment) -> None:
        self._rollback.decommission(deployment.blue)
        self._transition(deployment, DeploymentStatus.COMPLETE)
        deployment.failure_reason = None
        with self._lock:
            self._services[deployment.service] = deployment.targets.swapped()
        logger.info(
            "Deployment %s COMPLETE: %s live on %s",
            deployment.deployment_id,
            deployment.revision_id,
            deployment.green.routing_target,
            extra={"status": DeploymentStatus.COMPLETE.value},
        )

    # ── Terminal handling ────────────────────────────────────────────

    def _stop(self, deployment: Deployment, exc: Exception) -> None:
        """Move a deployment that could not complete to its terminal state."""
        if deployment.is_terminal:
            return
        reason = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        if isinstance(exc, DeploymentError):
            deployment.metadata["error_code"] = exc.error_code.value

        shifting = deployment.status in (DeploymentStatus.SHIFTING, DeploymentStatus.VALIDATING)
        if shifting and isinstance(exc, _ROLLBACK_TRIGGERS):
            triggered_by = "operator" if isinstance(exc, DeploymentAborted) else "auto"
            try:
                self._rollback.rollback(deployment, reason, triggered_by=triggered_by)
            except TrafficShiftError as rollback_exc:
                self._finish(
                    deployment,
                    DeploymentStatus.FAILED,
                    f"{reason}; rollback failed: {rollback_exc}",
                )
                return
            self._finish(deployment, DeploymentStatus.ROLLED_BACK, reason)
            return

        if deployment.green.current_weight > 0:
            try:
                self._rollback.rollback(deployment, reason, triggered_by="auto")
            except TrafficShiftError as rollback_exc:
                reason = f"{reason}; rollback failed: {rollback_exc}"
        self._rollback.decommission(deployment.green)
        self._finish(deployment, DeploymentStatus.FAILED, reason)

    def _finish(self, deployment: Deployment, status: DeploymentStatus, reason: str) -> None:
        self._transition(deployment, status)
        deployment.failure_reason = reason
        logger.warning(
            "Deployment %s %s: %s",
            deployment.deployment_id,
            status.value.upper(),
            reason,
            extra={"status": status.value},
        )

    def _transition(self, deployment: Deployment, status: DeploymentStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[deployment.status]:
            raise InvalidTransition(
                f"Deployment {deployment.deployment_id} cannot move from "
                f"{deployment.status.value} to {status.value}"
            )
        now = self._clock.now()
        previous = deployment.status
        deployment.status = status
        deployment.transitions.append((status, now))
        if status.is_terminal:
            deployment.finished_at = now
        logger.info(
            "Deployment %s: %s -> %s",
            deployment.deployment_id,
            previous.value,
            status.value,
            extra={"status": status.value},
        )

    def _release(self, deployment: Deployment) -> None:
        with self._lock:
            self._running.discard(deployment.deployment_id)
            if self._active.get(deployment.service) == deployment.deployment_id and deployment.is_terminal:
                del self._active[deployment.service]
        if self._archive is not None and deployment.is_terminal:
            try:
                self._archive.archive(deployment)
            except SQLAlchemyError as exc:
                logger.error(
                    "Failed to archive deployment %s: %s", deployment.deployment_id, exc
                )
            try:
                self._archive.release(deployment.service, deployment.deployment_id)
            except SQLAlchemyError as exc:
                logger.error(
                    "Failed to release the %s slot held by %s; it expires on its own: %s",
                    deployment.service,
                    deployment.deployment_id,
                    exc,
                )

    def _reserve(self, deployment: Deployment) -> None:
        """Claim the service slot in the archive, undoing the local claim on failure."""
        ttl = self._config.deployment_timeout_seconds + RESERVATION_GRACE_SECONDS
        try:
            self._archive.reserve(deployment.service, deployment.deployment_id, ttl)
        except (ConflictError, SQLAlchemyError) as exc:
            with self._lock:
                self._deployments.pop(deployment.deployment_id, None)
                self._tokens.pop(deployment.deployment_id, None)
                if self._active.get(deployment.service) == deployment.deployment_id:
                    del self._active[deployment.service]
            if isinstance(exc, ConflictError):
                raise
            raise DeploymentError(
                f"Could not reserve {deployment.service} for deployment: {exc}"
            ) from exc

    def _get_or_raise(self, deployment_id: str) -> Deployment:
        deployment = self._deployments.get(deployment_id)
        if deployment is None:
            raise KeyError(f"Deployment {deployment_id} not found")
        return deployment
