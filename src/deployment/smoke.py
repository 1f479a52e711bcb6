"""Blue/Green Deployment Orchestration — Smoke Test Runner."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .config import SMOKE_SUCCESS_CODES, DeploymentConfig
from .exceptions import SmokeTestFailure
from .timing import CancellationToken, Clock, Deadline, SystemClock, wait

logger = logging.getLogger(__name__)


@dataclass
class SmokeResult:
    """Outcome of a passing smoke test."""

    url: str
    status_code: int
    attempts: int


class SmokeTestRunner:
    """Probes the public endpoint until it answers with a success code.

    Redirects are not followed: a 301/302 from the entrypoint counts as up.
    """

    def __init__(
        self,
        config: Optional[DeploymentConfig] = None,
        clock: Optional[Clock] = None,
        client: Optional[httpx.Client] = None,
    ):
        self._config = config or DeploymentConfig()
        self._clock = clock or SystemClock()
        self._client = client or httpx.Client(
            timeout=self._config.smoke_test_timeout_seconds,
            follow_redirects=False,
        )

    def run(
        self,
        url: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        deadline: Optional[Deadline] = None,
    ) -> SmokeResult:
        url = url or self._config.smoke_test_url
        if not url:
            raise ValueError("No smoke test URL configured")
        token = token or CancellationToken()
        attempts = self._config.smoke_test_attempts
        last_status: Optional[int] = None
        last_error: Optional[str] = None

        for attempt in range(1, attempts + 1):
            token.raise_if_cancelled()
            try:
                resp = self._client.get(url, follow_redirects=False)
                last_status, last_error = resp.status_code, None
            except httpx.HTTPError as exc:
                last_status, last_error = None, f"{type(exc).__name__}: {exc}"

            if last_status in SMOKE_SUCCESS_CODES:
                logger.info(
                    "Smoke test passed: %s -> %d",
                    url,
                    last_status,
                    extra={"attempt": attempt, "status": last_status},
                )
                return SmokeResult(url=url, status_code=last_status, attempts=attempt)

            logger.warning(
                "Smoke test attempt %d/%d against %s failed: %s",
                attempt,
                attempts,
                url,
                last_error or f"HTTP {last_status}",
                extra={"attempt": attempt},
            )
            if attempt < attempts:
                wait(self._clock, self._config.smoke_test_delay_seconds, token, deadline)

        raise SmokeTestFailure(
            f"Smoke test against {url} failed after {attempts} attempts "
            f"(last result: {last_error or f'HTTP {last_status}'})",
            attempts=attempts,
            last_status=last_status,
            last_error=last_error,
        )

    def close(self) -> None:
        self._client.close()
