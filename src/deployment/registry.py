"""Blue/Green Deployment Orchestration — Artifact Registry Client."""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional

from src.resilience import MaxRetriesExceeded, RetryConfig, call_with_retry

from .exceptions import ControlPlaneError
from .models import RenderedDescriptor, Revision
from .transport import ControlPlaneHTTPClient, control_plane_retry

logger = logging.getLogger(__name__)


class ArtifactRegistry(ABC):
    """Store of immutable, fully rendered deployment descriptors."""

    @abstractmethod
    def register(self, descriptor: RenderedDescriptor) -> str:
        """Register ``descriptor`` and return its revision ID."""


class HttpArtifactRegistry(ArtifactRegistry):
    """Artifact registry reached over its HTTP API."""

    def __init__(self, base_url: str, timeout: float = 10.0, http: Optional[ControlPlaneHTTPClient] = None):
        self._http = http or ControlPlaneHTTPClient(base_url, timeout=timeout)

    def register(self, descriptor: RenderedDescriptor) -> str:
        body = self._http.request(
            "POST",
            "/v1/revisions",
            json={
                "digest": descriptor.digest,
                "artifacts": dict(descriptor.artifacts),
                "content": descriptor.content,
            },
        )
        revision_id = body.get("revision_id")
        if not revision_id:
            raise ControlPlaneError("Registry response did not include a revision_id")
        return str(revision_id)


class ArtifactRegistryClient:
    """Registers descriptors and hands back immutable ``Revision`` records."""

    def __init__(
        self,
        registry: ArtifactRegistry,
        retry_config: Optional[RetryConfig] = None,
        sleep: Optional[Callable[[float], object]] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self._registry = registry
        self._retry = control_plane_retry(retry_config)
        self._sleep = sleep or time.sleep
        self._now = now or (lambda: datetime.now(timezone.utc))

    def register(self, descriptor: RenderedDescriptor) -> Revision:
        try:
            revision_id = call_with_retry(
                self._registry.register,
                descriptor,
                config=self._retry,
                sleep=self._sleep,
            )
        except MaxRetriesExceeded as exc:
            raise ControlPlaneError(
                f"Artifact registry unavailable: {exc.last_exception}"
            ) from exc

        revision = Revision(
            revision_id=revision_id,
            artifacts=descriptor.artifacts,
            configuration=descriptor.content,
            digest=descriptor.digest,
            created_at=self._now(),
        )
        logger.info(
            "Registered revision %s (digest %s, %d artifacts)",
            revision_id,
            descriptor.digest[:12],
            len(descriptor.artifacts),
        )
        return revision
