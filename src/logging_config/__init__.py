"""Structured Logging & Deployment Tracing.

Provides structured JSON logging and deployment ID propagation
for the release tooling.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import DeploymentContext, get_context_dict
from src.logging_config.setup import configure_logging, get_logger

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "DeploymentContext",
    "get_context_dict",
    "configure_logging",
    "get_logger",
]
