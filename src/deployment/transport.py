"""Blue/Green Deployment Orchestration — Control-Plane HTTP Transport.

Thin httpx wrapper shared by the router, alarm and registry adapters.
Translates transport failures into the deployment error hierarchy:
timeouts, connection errors and 5xx become ``TransientControlPlaneError``
(retried by the callers), any other non-2xx becomes ``ControlPlaneError``.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Optional

import httpx

from src.resilience import RetryConfig

from .exceptions import ControlPlaneError, TransientControlPlaneError

logger = logging.getLogger(__name__)


class ControlPlaneHTTPClient:
    """JSON-over-HTTP client for one control-plane API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.Client] = None,
    ):
        self._client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers=headers or {},
        )

    def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            resp = self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise TransientControlPlaneError(
                f"{method} {path} timed out: {exc}"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientControlPlaneError(
                f"{method} {path} failed: {exc}"
            ) from exc

        if resp.status_code >= 500:
            raise TransientControlPlaneError(
                f"{method} {path} returned {resp.status_code}"
            )
        if resp.status_code >= 400:
            raise ControlPlaneError(
                f"{method} {path} rejected with {resp.status_code}: {resp.text[:200]}"
            )
        if not resp.content:
            return {}
        return resp.json()

    def close(self) -> None:
        self._client.close()


def control_plane_retry(config: Optional[RetryConfig] = None) -> RetryConfig:
    """Retry policy that only retries transient control-plane failures."""
    return replace(
        config or RetryConfig(),
        retryable_exceptions=(TransientControlPlaneError,),
    )
