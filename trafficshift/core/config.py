"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Settings:
    database_url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./trafficshift.db")
    )
    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO")
    )
    # Lambda hook convention: a hook has five minutes to report back
    hook_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("HOOK_TIMEOUT_SECONDS", "300"))
    )
    health_poll_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("HEALTH_POLL_INTERVAL_SECONDS", "30"))
    )
    # "fail_open" or "fail_closed"
    health_no_data_policy: str = field(
        default_factory=lambda: os.getenv("HEALTH_NO_DATA_POLICY", "fail_open")
    )
    prometheus_url: str | None = field(
        default_factory=lambda: os.getenv("PROMETHEUS_URL") or None
    )
    weight_epsilon: float = field(
        default_factory=lambda: float(os.getenv("WEIGHT_EPSILON", "1e-9"))
    )
    # Max staleness of a routing table against alias_weights on the hot path
    alias_refresh_seconds: float = field(
        default_factory=lambda: float(os.getenv("ALIAS_REFRESH_SECONDS", "1.0"))
    )
    app_version: str = "0.1.0"


def get_settings() -> Settings:
    """Return a Settings instance populated from env vars."""
    return Settings()
