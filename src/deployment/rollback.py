"""Blue/Green Deployment Orchestration — Rollback Controller.

A rollback is a single routing update back to ``(100, 0)`` followed by
marking green for termination. Each deployment is rolled back at most
once; repeated calls return the recorded action.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .exceptions import TrafficShiftError
from .models import Deployment, Environment
from .router import TrafficRouterClient

logger = logging.getLogger(__name__)


@dataclass
class RollbackAction:
    """Record of a rollback operation."""

    rollback_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    deployment_id: str = ""
    service: str = ""
    from_target: str = ""
    to_target: str = ""
    reason: str = ""
    triggered_by: str = "auto"
    green_weight_at_trigger: int = 0
    triggered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None


class RollbackController:
    """Reverts traffic to blue and retires green."""

    def __init__(
        self,
        router_client: TrafficRouterClient,
        terminator: Optional[Callable[[Environment], None]] = None,
    ):
        self._router = router_client
        self._terminator = terminator
        self._actions: Dict[str, RollbackAction] = {}
        self._deployment_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def rollback(
        self,
        deployment: Deployment,
        reason: str,
        triggered_by: str = "auto",
    ) -> RollbackAction:
        """Send all traffic back to blue.

        Rollbacks of different deployments never wait on each other; only
        concurrent calls for the same deployment are serialized.

        Raises:
            TrafficShiftError: The router did not accept the revert. The
                failed action is recorded and a later call retries it.
        """
        with self._lock_for(deployment.deployment_id):
            existing = self._actions.get(deployment.deployment_id)
            if existing is not None and existing.success:
                logger.info(
                    "Rollback of %s already done (%s)",
                    deployment.deployment_id,
                    existing.rollback_id,
                )
                return existing

            action = RollbackAction(
                deployment_id=deployment.deployment_id,
                service=deployment.service,
                from_target=deployment.green.routing_target,
                to_target=deployment.blue.routing_target,
                reason=reason,
                triggered_by=triggered_by,
                green_weight_at_trigger=deployment.green.current_weight,
            )
            with self._lock:
                self._actions[deployment.deployment_id] = action
            logger.warning(
                "Rolling back %s at green %d%%: %s",
                deployment.service,
                action.green_weight_at_trigger,
                reason,
            )

            try:
                self._router.apply_weights(deployment, 0)
            except TrafficShiftError as exc:
                action.error = str(exc)
                action.completed_at = datetime.now(timezone.utc)
                logger.error(
                    "Rollback of %s failed: %s", deployment.deployment_id, exc
                )
                raise

            self.decommission(deployment.green)
            action.success = True
            action.completed_at = datetime.now(timezone.utc)
            logger.info(
                "Rollback %s complete: all traffic on %s",
                action.rollback_id,
                action.to_target,
            )
            return action

    def _lock_for(self, deployment_id: str) -> threading.Lock:
        with self._lock:
            return self._deployment_locks.setdefault(deployment_id, threading.Lock())

    def decommission(self, environment: Environment) -> None:
        """Mark an environment for termination."""
        if environment.marked_for_termination:
            return
        environment.marked_for_termination = True
        logger.info(
            "Marked %s environment %s for termination",
            environment.label.value,
            environment.routing_target,
        )
        if self._terminator is not None:
            self._terminator(environment)

    def get_rollback(self, deployment_id: str) -> Optional[RollbackAction]:
        return self._actions.get(deployment_id)

    def list_rollbacks(self, service: Optional[str] = None) -> List[RollbackAction]:
        """List rollback actions, newest first, optionally for one service."""
        with self._lock:
            actions = list(self._actions.values())
        if service is not None:
            actions = [a for a in actions if a.service == service]
        actions.sort(key=lambda a: a.triggered_at, reverse=True)
        return actions

    def get_rollback_stats(self) -> dict:
        """Return rollback statistics."""
        with self._lock:
            actions = list(self._actions.values())
        total = len(actions)
        successful = sum(1 for a in actions if a.success)
        completed = [a for a in actions if a.completed_at is not None]
        if completed:
            durations = [
                (a.completed_at - a.triggered_at).total_seconds() for a in completed
            ]
            avg_duration = sum(durations) / len(durations)
        else:
            avg_duration = 0.0

        return {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "avg_duration_seconds": round(avg_duration, 2),
        }
