"""Deployment Context Management.

Context variables binding the deployment ID and service name to every
log entry emitted while a deployment's control loop is running.
"""

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any


_deployment_id_var: ContextVar[str] = ContextVar("deployment_id", default="")
_service_var: ContextVar[str] = ContextVar("service", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def get_deployment_id() -> str:
    """Get the current deployment ID from context."""
    return _deployment_id_var.get()


def get_service() -> str:
    """Get the current service name from context."""
    return _service_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all context variables as a dictionary for log binding."""
    ctx = {}
    deployment_id = _deployment_id_var.get()
    if deployment_id:
        ctx["deployment_id"] = deployment_id
    service = _service_var.get()
    if service:
        ctx["service"] = service
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class DeploymentContext:
    """Context manager for deployment-scoped logging context.

    Example:
        with DeploymentContext(deployment_id="d-123", service="notes"):
            logger.info("shifting traffic")  # includes deployment_id, service
    """

    deployment_id: str = ""
    service: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    _tokens: list = field(default_factory=list, repr=False)

    def __enter__(self) -> "DeploymentContext":
        self._tokens = [
            (_deployment_id_var, _deployment_id_var.set(self.deployment_id)),
            (_service_var, _service_var.set(self.service)),
            (_extra_context_var, _extra_context_var.set(self.extra.copy())),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

