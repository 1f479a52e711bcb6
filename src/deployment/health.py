"""Blue/Green Deployment Orchestration — Health Monitoring.

Two independent signals guard a rollout:

1. Target health of the green environment, polled through the traffic
   router. N consecutive ``unhealthy`` answers count as a breach.
2. An error-rate alarm subscribed through the alarm service. It catches
   an environment that became ready but degrades under real traffic,
   which only shows up once traffic is shifted to it.

``LocalAlarmService`` is an in-process alarm service fed with request
outcomes, for setups where no external alarm service is available.
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from src.resilience import MaxRetriesExceeded, RetryConfig, call_with_retry

from .config import DeploymentConfig, GateMode, HealthStatus
from .exceptions import ControlPlaneError, ProvisioningError
from .models import Deployment
from .router import TrafficRouterClient
from .timing import CancellationToken, Clock, Deadline, wait
from .transport import ControlPlaneHTTPClient, control_plane_retry

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# Alarm service interface
# ═══════════════════════════════════════════════════════════════════════


class AlarmService(ABC):
    """Threshold alarms computed over a rolling window of request outcomes."""

    @abstractmethod
    def subscribe(
        self,
        metric: str,
        threshold: int,
        window_seconds: float,
        evaluation_periods: int = 2,
    ) -> str:
        """Create (or reuse) an alarm and return its handle.

        The alarm fires once ``evaluation_periods`` consecutive windows of
        ``window_seconds`` each saw more than ``threshold`` failures.
        """

    @abstractmethod
    def is_breached(self, handle: str) -> bool:
        """Whether the alarm is currently in breach."""

    @abstractmethod
    def clear(self, handle: str) -> None:
        """Reset a latched breach."""


class HttpAlarmService(AlarmService):
    """Alarm service reached over its HTTP API."""

    def __init__(self, base_url: str, timeout: float = 10.0, http: Optional[ControlPlaneHTTPClient] = None):
        self._http = http or ControlPlaneHTTPClient(base_url, timeout=timeout)

    def subscribe(
        self,
        metric: str,
        threshold: int,
        window_seconds: float,
        evaluation_periods: int = 2,
    ) -> str:
        body = self._http.request(
            "POST",
            "/v1/alarms",
            json={
                "metric": metric,
                "threshold": threshold,
                "window_seconds": window_seconds,
                "evaluation_periods": evaluation_periods,
            },
        )
        handle = body.get("handle")
        if not handle:
            raise ControlPlaneError("Alarm service response did not include a handle")
        return str(handle)

    def is_breached(self, handle: str) -> bool:
        body = self._http.request("GET", f"/v1/alarms/{handle}")
        return bool(body.get("breached", False))

    def clear(self, handle: str) -> None:
        self._http.request("POST", f"/v1/alarms/{handle}/clear")


# ═══════════════════════════════════════════════════════════════════════
# In-process error-rate alarm
# ═══════════════════════════════════════════════════════════════════════


class ErrorRateAlarm:
    """Windowed failure counter with consecutive-period evaluation.

    Time is cut into back-to-back evaluation periods of ``window_seconds``
    starting at creation (or the last ``clear``). A period is in breach when
    it saw more than ``threshold`` failed requests; the alarm fires after
    ``evaluation_periods`` consecutive breaching periods and stays fired
    until cleared.
    """

    def __init__(
        self,
        threshold: int,
        window_seconds: float,
        evaluation_periods: int = 2,
        clock: Optional[Callable[[], float]] = None,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if evaluation_periods < 1:
            raise ValueError("evaluation_periods must be >= 1")
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.evaluation_periods = evaluation_periods
        self._clock = clock or time.monotonic
        self._failures: Deque[float] = deque()
        self._period_start = self._clock()
        self._consecutive = 0
        self._breached = False
        self._lock = threading.Lock()

    def record(self, failed: bool) -> None:
        if not failed:
            return
        with self._lock:
            self._failures.append(self._clock())

    def evaluate(self) -> bool:
        """Close every elapsed period and return the latched breach flag."""
        with self._lock:
            now = self._clock()
            while self._period_start + self.window_seconds <= now:
                end = self._period_start + self.window_seconds
                count = 0
                while self._failures and self._failures[0] < end:
                    if self._failures.popleft() >= self._period_start:
                        count += 1
                if count > self.threshold:
                    self._consecutive += 1
                else:
                    self._consecutive = 0
                if self._consecutive >= self.evaluation_periods and not self._breached:
                    self._breached = True
                    logger.warning(
                        "Error-rate alarm breached: %d failures in %.0fs "
                        "(threshold %d, %d consecutive periods)",
                        count,
                        self.window_seconds,
                        self.threshold,
                        self._consecutive,
                    )
                self._period_start = end
            return self._breached

    def clear(self) -> None:
        with self._lock:
            self._failures.clear()
            self._consecutive = 0
            self._breached = False
            self._period_start = self._clock()


class LocalAlarmService(AlarmService):
    """Alarm service evaluated in-process from recorded request outcomes."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self._alarms: Dict[str, ErrorRateAlarm] = {}
        self._metrics: Dict[str, str] = {}
        self._lock = threading.Lock()

    def subscribe(
        self,
        metric: str,
        threshold: int,
        window_seconds: float,
        evaluation_periods: int = 2,
    ) -> str:
        with self._lock:
            handle = f"alarm-{uuid.uuid4().hex[:12]}"
            self._alarms[handle] = ErrorRateAlarm(
                threshold=threshold,
                window_seconds=window_seconds,
                evaluation_periods=evaluation_periods,
                clock=self._clock,
            )
            self._metrics[handle] = metric
            logger.info(
                "Subscribed %s to %s (threshold=%d window=%.0fs periods=%d)",
                handle,
                metric,
                threshold,
                window_seconds,
                evaluation_periods,
            )
            return handle

    def is_breached(self, handle: str) -> bool:
        return self._get(handle).evaluate()

    def clear(self, handle: str) -> None:
        self._get(handle).clear()

    def record_request(
        self,
        metric: str,
        status_code: Optional[int] = None,
        error: bool = False,
    ) -> None:
        """Record one request outcome against every alarm on ``metric``.

        A request fails when it raised (``error``), never produced a status,
        or answered with a 5xx.
        """
        failed = error or status_code is None or status_code >= 500
        with self._lock:
            alarms = [
                self._alarms[h] for h, m in self._metrics.items() if m == metric
            ]
        for alarm in alarms:
            alarm.record(failed)

    def _get(self, handle: str) -> ErrorRateAlarm:
        alarm = self._alarms.get(handle)
        if alarm is None:
            raise ControlPlaneError(f"Unknown alarm handle {handle}")
        return alarm


# ═══════════════════════════════════════════════════════════════════════
# Health monitor
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class HealthReport:
    """Outcome of one health evaluation of the green environment."""

    target_status: HealthStatus
    consecutive_unhealthy: int
    target_breached: bool
    alarm_breached: bool
    gate_mode: GateMode = GateMode.ENFORCE

    @property
    def any_breach(self) -> bool:
        return self.target_breached or self.alarm_breached

    @property
    def breached(self) -> bool:
        """A breach that must stop the rollout."""
        return self.any_breach and self.gate_mode == GateMode.ENFORCE

    @property
    def advisory(self) -> bool:
        """A breach that is only reported."""
        return self.any_breach and self.gate_mode == GateMode.ADVISORY

    @property
    def reason(self) -> str:
        reasons = []
        if self.alarm_breached:
            reasons.append("error-rate alarm breached")
        if self.target_breached:
            reasons.append(
                f"green unhealthy for {self.consecutive_unhealthy} consecutive checks"
            )
        return "; ".join(reasons)


class HealthMonitor:
    """Watches one deployment's green environment. Not shared across deployments."""

    def __init__(
        self,
        router_client: TrafficRouterClient,
        alarms: AlarmService,
        config: Optional[DeploymentConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self._router = router_client
        self._alarms = alarms
        self._config = config or DeploymentConfig()
        self._retry = control_plane_retry(retry_config)
        self._sleep = sleep or time.sleep
        self._handle: Optional[str] = None
        self._consecutive_unhealthy = 0

    @property
    def handle(self) -> Optional[str]:
        return self._handle

    def arm(self, deployment: Deployment) -> None:
        """Subscribe to the error-rate alarm and clear any latched breach."""
        cfg = self._config
        if self._handle is None:
            self._handle = self._call(
                self._alarms.subscribe,
                cfg.alarm_metric,
                cfg.alarm_threshold,
                cfg.alarm_window_seconds,
                cfg.alarm_evaluation_periods,
            )
        self._call(self._alarms.clear, self._handle)
        self._consecutive_unhealthy = 0
        deployment.alarm.armed = True
        deployment.alarm.breached = False
        logger.info("Alarm %s armed for %s", self._handle, deployment.service)

    def disarm(self, deployment: Deployment) -> None:
        deployment.alarm.reset()
        self._consecutive_unhealthy = 0

    def check(self, deployment: Deployment) -> HealthReport:
        """Evaluate both signals once."""
        status = self._router.health(deployment.green)
        deployment.green.health_status = status
        if status == HealthStatus.UNHEALTHY:
            self._consecutive_unhealthy += 1
        elif status == HealthStatus.HEALTHY:
            self._consecutive_unhealthy = 0

        alarm_breached = False
        if deployment.alarm.armed and self._handle is not None:
            alarm_breached = bool(self._call(self._alarms.is_breached, self._handle))
            deployment.alarm.breached = deployment.alarm.breached or alarm_breached

        report = HealthReport(
            target_status=status,
            consecutive_unhealthy=self._consecutive_unhealthy,
            target_breached=self._consecutive_unhealthy >= self._config.unhealthy_threshold,
            alarm_breached=alarm_breached,
            gate_mode=self._config.gate_mode,
        )
        if report.breached:
            logger.warning("Health breach on %s: %s", deployment.service, report.reason)
        elif report.advisory:
            logger.warning(
                "Advisory health breach on %s (not blocking): %s",
                deployment.service,
                report.reason,
            )
        return report

    def await_ready(
        self,
        deployment: Deployment,
        clock: Clock,
        token: CancellationToken,
        deadline: Optional[Deadline] = None,
    ) -> None:
        """Block until green reports healthy, or raise ``ProvisioningError``."""
        grace = self._config.provisioning_grace_seconds
        poll = self._config.provisioning_poll_seconds
        started = clock.monotonic()
        while True:
            token.raise_if_cancelled()
            status = self._router.health(deployment.green)
            deployment.green.health_status = status
            if status == HealthStatus.HEALTHY:
                logger.info(
                    "Green %s healthy after %.0fs",
                    deployment.green.routing_target,
                    clock.monotonic() - started,
                )
                return
            elapsed = clock.monotonic() - started
            if elapsed >= grace:
                raise ProvisioningError(
                    f"Green environment {deployment.green.routing_target} did not "
                    f"become healthy within {grace:.0f}s "
                    f"(last status: {status.value})"
                )
            wait(clock, min(poll, grace - elapsed), token, deadline)

    def _call(self, func, *args):
        try:
            return call_with_retry(func, *args, config=self._retry, sleep=self._sleep)
        except MaxRetriesExceeded as exc:
            raise ControlPlaneError(
                f"Alarm service unavailable: {exc.last_exception}"
            ) from exc
