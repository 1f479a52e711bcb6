"""Blue/Green Deployment Orchestration — Traffic Shifting.

Schedule builders and the ``TrafficShifter`` that walks a deployment
through its schedule. The router always receives a complete
``(blue, green)`` pair, so the two weights sum to 100 after every update.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from .config import DeploymentConfig, ScheduleProfile
from .exceptions import AlarmTriggeredRollback
from .health import HealthMonitor, HealthReport
from .models import Deployment, TrafficSchedule
from .router import TrafficRouterClient
from .timing import CancellationToken, Clock, Deadline, wait

logger = logging.getLogger(__name__)


def linear_schedule(
    step_percent: int = 10,
    step_duration_seconds: float = 60.0,
) -> TrafficSchedule:
    """Shift ``step_percent`` every ``step_duration_seconds`` until 100%.

    weight(t) = min(100, floor(t / step_duration) * step_percent)
    """
    if not 1 <= step_percent <= 100:
        raise ValueError(f"step_percent must be within 1-100, got {step_percent}")
    if step_duration_seconds < 0:
        raise ValueError("step_duration_seconds must be non-negative")
    steps = math.ceil(100 / step_percent)
    return TrafficSchedule.from_pairs(
        (k * step_duration_seconds, min(100, k * step_percent))
        for k in range(1, steps + 1)
    )


def canary_schedule(
    canary_percent: int = 10,
    hold_seconds: float = 300.0,
    step_duration_seconds: float = 60.0,
) -> TrafficSchedule:
    """Send ``canary_percent`` to green, hold, then cut over completely."""
    if not 1 <= canary_percent < 100:
        raise ValueError(f"canary_percent must be within 1-99, got {canary_percent}")
    if hold_seconds < 0 or step_duration_seconds < 0:
        raise ValueError("Schedule durations must be non-negative")
    return TrafficSchedule.from_pairs(
        [
            (step_duration_seconds, canary_percent),
            (step_duration_seconds + hold_seconds, 100),
        ]
    )


def build_schedule(config: Optional[DeploymentConfig] = None) -> TrafficSchedule:
    """Schedule for the configured profile."""
    config = config or DeploymentConfig()
    if config.schedule_profile == ScheduleProfile.CANARY:
        return canary_schedule(
            config.canary_percent,
            config.canary_hold_seconds,
            config.step_duration_seconds,
        )
    return linear_schedule(config.step_percent, config.step_duration_seconds)


@dataclass
class ShiftResult:
    """Summary of a completed shift."""

    steps_applied: int = 0
    health_checks: int = 0
    advisory_breaches: int = 0
    final_green_weight: int = 0


class TrafficShifter:
    """Applies a schedule step by step while the health monitor watches."""

    def __init__(
        self,
        router_client: TrafficRouterClient,
        monitor: HealthMonitor,
        clock: Clock,
        config: Optional[DeploymentConfig] = None,
    ):
        self._router = router_client
        self._monitor = monitor
        self._clock = clock
        self._config = config or DeploymentConfig()

    def run(
        self,
        deployment: Deployment,
        token: CancellationToken,
        deadline: Optional[Deadline] = None,
    ) -> ShiftResult:
        """Drive green from 0 to 100 following ``deployment.schedule``.

        Raises:
            AlarmTriggeredRollback: A health signal breached (enforce mode).
            DeploymentAborted: The token fired.
            DeploymentTimeoutError: The deadline passed.
            TrafficShiftError: The router refused a weight update.
        """
        result = ShiftResult()
        started = self._clock.monotonic()
        schedule = deployment.schedule
        logger.info(
            "Shifting %s over %d steps (%.0fs)",
            deployment.service,
            len(schedule.steps),
            schedule.duration_seconds,
        )

        for index, step in enumerate(schedule.steps, start=1):
            self._advance_to(deployment, started + step.offset_seconds, token, deadline, result)
            self._router.apply_weights(deployment, step.green_weight)
            result.steps_applied += 1
            result.final_green_weight = step.green_weight
            logger.info(
                "Step %d/%d applied for %s",
                index,
                len(schedule.steps),
                deployment.service,
                extra={"green_weight": step.green_weight, "blue_weight": step.blue_weight},
            )

        # One more look at green now that it carries all traffic
        self._check(deployment, result)
        return result

    def _advance_to(
        self,
        deployment: Deployment,
        target: float,
        token: CancellationToken,
        deadline: Optional[Deadline],
        result: ShiftResult,
    ) -> None:
        interval = self._config.health_check_interval_seconds
        waited = False
        while True:
            remaining = target - self._clock.monotonic()
            if remaining <= 0:
                break
            wait(self._clock, min(interval, remaining), token, deadline)
            self._check(deployment, result)
            waited = True
        token.raise_if_cancelled()
        if deadline is not None:
            deadline.check()
        if not waited:
            self._check(deployment, result)

    def _check(self, deployment: Deployment, result: ShiftResult) -> HealthReport:
        report = self._monitor.check(deployment)
        result.health_checks += 1
        if report.breached:
            raise AlarmTriggeredRollback(
                f"Health breach at green {deployment.green.current_weight}%: "
                f"{report.reason}"
            )
        if report.advisory:
            result.advisory_breaches += 1
        return report
