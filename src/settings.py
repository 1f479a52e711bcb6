"""Centralized settings for the release tooling.

Uses pydantic-settings to load from environment variables (prefixed RELEASE_)
with defaults matching the blue/green rollout policy.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Release settings loaded from environment variables."""

    # --- Control plane endpoints ---
    router_url: str = "http://localhost:8081"
    alarm_url: str = "http://localhost:8082"
    registry_url: str = "http://localhost:8083"
    request_timeout: float = 10.0
    control_plane_max_attempts: int = 3
    control_plane_base_delay: float = 1.0
    control_plane_max_delay: float = 8.0

    # --- Provisioning ---
    provisioning_grace_seconds: float = 120.0
    provisioning_poll_seconds: float = 10.0

    # --- Traffic schedule ---
    schedule_profile: str = "linear"  # "linear" or "canary"
    step_percent: int = 10
    step_duration_seconds: float = 60.0
    canary_percent: int = 10
    canary_hold_seconds: float = 300.0

    # --- Health ---
    health_check_interval_seconds: float = 30.0
    unhealthy_threshold: int = 3
    alarm_metric: str = "http_requests_failed_total"
    alarm_threshold: int = 10
    alarm_window_seconds: float = 120.0
    alarm_evaluation_periods: int = 2
    alarm_backend: str = "http"  # "http" or "local"
    gate_mode: str = "enforce"  # "enforce" or "advisory"

    # --- Validation ---
    smoke_test_url: str = ""
    smoke_test_attempts: int = 5
    smoke_test_delay_seconds: float = 10.0
    smoke_test_timeout_seconds: float = 5.0
    soak_seconds: float = 300.0

    # --- Global bound ---
    deployment_timeout_seconds: float = 1200.0

    # --- Audit archive ---
    use_database: bool = False
    database_url: str = "sqlite:///deployments.db"

    model_config = {
        "env_prefix": "RELEASE_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
