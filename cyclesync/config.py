from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .constants import (
    DEFAULT_CONDITION_POLL_INTERVAL,
    DEFAULT_JANITOR_CEILING,
    DEFAULT_JANITOR_INTERVAL,
    DEFAULT_MAX_LOG_ENTRIES,
    DEFAULT_PROGRESS_THROTTLE,
    DEFAULT_STALE_AFTER,
    DEFAULT_STATUS_LOG_INTERVAL,
    DEFAULT_STATUS_THROTTLE,
    DEFAULT_STEP_TIMEOUT,
)


class OrchestratorSettings(BaseModel):
    """Timing and sizing knobs for the cycle engine (all durations in seconds)."""

    step_timeout: float = Field(default=DEFAULT_STEP_TIMEOUT, gt=0)
    stale_after: float = Field(default=DEFAULT_STALE_AFTER, gt=0)
    janitor_interval: float = Field(default=DEFAULT_JANITOR_INTERVAL, gt=0)
    janitor_ceiling: float = Field(default=DEFAULT_JANITOR_CEILING, gt=0)
    condition_poll_interval: float = Field(default=DEFAULT_CONDITION_POLL_INTERVAL, gt=0)
    progress_throttle: float = Field(default=DEFAULT_PROGRESS_THROTTLE, ge=0)
    status_throttle: float = Field(default=DEFAULT_STATUS_THROTTLE, ge=0)
    status_log_interval: float = Field(default=DEFAULT_STATUS_LOG_INTERVAL, gt=0)
    max_log_entries: int = Field(default=DEFAULT_MAX_LOG_ENTRIES, gt=0)

    @model_validator(mode="after")
    def _check_janitor_ceiling(self) -> "OrchestratorSettings":
        # the janitor must not reclaim a step that may still be inside its timeout
        if self.janitor_ceiling < self.step_timeout:
            raise ValueError(
                f"janitor_ceiling ({self.janitor_ceiling:g}s) must not be below "
                f"step_timeout ({self.step_timeout:g}s)"
            )
        return self


class CycleSyncConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    orchestrator: OrchestratorSettings = OrchestratorSettings()


_ENV_SETTINGS = {
    "CYCLESYNC_STEP_TIMEOUT": "step_timeout",
    "CYCLESYNC_STALE_AFTER": "stale_after",
    "CYCLESYNC_JANITOR_INTERVAL": "janitor_interval",
    "CYCLESYNC_JANITOR_CEILING": "janitor_ceiling",
}


def load_config(path: Optional[str] = None) -> CycleSyncConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CYCLESYNC_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CYCLESYNC_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CycleSyncConfig(**data)
    else:
        config = CycleSyncConfig()

    env_db_url = os.getenv("CYCLESYNC_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    overrides = {
        field: os.environ[env_name]
        for env_name, field in _ENV_SETTINGS.items()
        if os.getenv(env_name)
    }
    if overrides:
        config.orchestrator = OrchestratorSettings(
            **{**config.orchestrator.model_dump(), **overrides}
        )
    return config
