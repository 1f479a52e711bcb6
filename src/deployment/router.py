"""Blue/Green Deployment Orchestration — Traffic Router Client.

``TrafficRouter`` is the narrow interface to the load-balancing control
plane. ``TrafficRouterClient`` wraps it for the coordinator: weights are
validated, transient failures are retried with bounded backoff, and every
applied pair is recorded on the deployment.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple

from src.resilience import MaxRetriesExceeded, RetryConfig, call_with_retry

from .config import HealthStatus
from .exceptions import ControlPlaneError, TrafficShiftError
from .models import Deployment, Environment, TargetPair
from .transport import ControlPlaneHTTPClient, control_plane_retry

logger = logging.getLogger(__name__)


class TrafficRouter(ABC):
    """Load balancer control plane: weighted routing and target health."""

    @abstractmethod
    def set_weights(self, targets: TargetPair, green_weight: int) -> None:
        """Route ``green_weight`` percent to green and the rest to blue."""

    @abstractmethod
    def get_health(self, routing_target: str) -> HealthStatus:
        """Aggregate health of the instances behind ``routing_target``."""


class HttpTrafficRouter(TrafficRouter):
    """Traffic router reached over its HTTP API."""

    def __init__(self, base_url: str, timeout: float = 10.0, http: Optional[ControlPlaneHTTPClient] = None):
        self._http = http or ControlPlaneHTTPClient(base_url, timeout=timeout)

    def set_weights(self, targets: TargetPair, green_weight: int) -> None:
        self._http.request(
            "PUT",
            "/v1/weights",
            json={
                "blue_target": targets.blue_target,
                "green_target": targets.green_target,
                "blue_weight": 100 - green_weight,
                "green_weight": green_weight,
            },
        )

    def get_health(self, routing_target: str) -> HealthStatus:
        body = self._http.request("GET", f"/v1/targets/{routing_target}/health")
        try:
            return HealthStatus(str(body.get("status", "unknown")).lower())
        except ValueError:
            logger.warning(
                "Router returned unrecognised health %r for %s",
                body.get("status"),
                routing_target,
            )
            return HealthStatus.UNKNOWN


class TrafficRouterClient:
    """Coordinator-facing adapter around a ``TrafficRouter``."""

    def __init__(
        self,
        router: TrafficRouter,
        retry_config: Optional[RetryConfig] = None,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self._router = router
        self._retry = control_plane_retry(retry_config)
        self._sleep = sleep or time.sleep

    def attach(self, deployment: Deployment) -> Tuple[int, int]:
        """Put green behind the router with no traffic."""
        logger.info(
            "Attaching %s as green for %s",
            deployment.green.routing_target,
            deployment.service,
        )
        return self.apply_weights(deployment, 0)

    def apply_weights(self, deployment: Deployment, green_weight: int) -> Tuple[int, int]:
        """Set the (blue, green) split in a single routing update.

        Raises:
            TrafficShiftError: The router rejected the update or stayed
                unavailable for the whole retry budget.
        """
        if not 0 <= green_weight <= 100:
            raise ValueError(f"Green weight {green_weight} outside 0-100")
        blue_weight = 100 - green_weight
        try:
            self._call(self._router.set_weights, deployment.targets, green_weight)
        except MaxRetriesExceeded as exc:
            raise TrafficShiftError(
                f"Router unavailable setting green weight to {green_weight}% "
                f"after {exc.attempts} attempts: {exc.last_exception}",
                green_weight=green_weight,
            ) from exc
        except ControlPlaneError as exc:
            raise TrafficShiftError(
                f"Router rejected green weight {green_weight}%: {exc}",
                green_weight=green_weight,
            ) from exc

        deployment.blue.current_weight = blue_weight
        deployment.green.current_weight = green_weight
        deployment.weight_history.append((blue_weight, green_weight))
        logger.info(
            "Traffic for %s: blue=%d%% green=%d%%",
            deployment.service,
            blue_weight,
            green_weight,
            extra={"blue_weight": blue_weight, "green_weight": green_weight},
        )
        return blue_weight, green_weight

    def health(self, environment: Environment) -> HealthStatus:
        """Query an environment's health, retrying transient failures."""
        try:
            return self._call(self._router.get_health, environment.routing_target)
        except MaxRetriesExceeded as exc:
            raise ControlPlaneError(
                f"Router unavailable reading health of {environment.routing_target}: "
                f"{exc.last_exception}"
            ) from exc

    def _call(self, func, *args):
        return call_with_retry(func, *args, config=self._retry, sleep=self._sleep)
