"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from cyclesync.config import OrchestratorSettings, load_config
from cyclesync.persistence import (
    InMemoryExecutionRepository,
    SQLiteExecutionRepository,
    get_repository,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    for name in (
        "CYCLESYNC_DATABASE_URL",
        "DATABASE_URL",
        "CYCLESYNC_STEP_TIMEOUT",
        "CYCLESYNC_STALE_AFTER",
        "CYCLESYNC_JANITOR_INTERVAL",
        "CYCLESYNC_JANITOR_CEILING",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CYCLESYNC_CONFIG", str(tmp_path / "missing.yaml"))


def test_defaults_when_config_file_missing():
    config = load_config()
    assert config.database_url is None
    assert config.orchestrator.step_timeout == 6 * 60 * 60
    assert config.orchestrator.stale_after == 300
    assert config.orchestrator.janitor_interval == 6 * 60 * 60
    assert config.orchestrator.janitor_ceiling == 12 * 60 * 60
    assert config.orchestrator.progress_throttle == 2.0
    assert config.orchestrator.max_log_entries == 1000


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite:///tmp/cycles.db
orchestrator:
  stale_after: 120
  condition_poll_interval: 1.5
"""
    )
    monkeypatch.setenv("CYCLESYNC_CONFIG", str(config_path))

    config = load_config()
    assert config.database_url == "sqlite:///tmp/cycles.db"
    assert config.orchestrator.stale_after == 120
    assert config.orchestrator.condition_poll_interval == 1.5
    assert config.orchestrator.step_timeout == 6 * 60 * 60


def test_environment_overrides_file_values(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("orchestrator:\n  stale_after: 120\n")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/other.db")
    monkeypatch.setenv("CYCLESYNC_STALE_AFTER", "600")
    monkeypatch.setenv("CYCLESYNC_STEP_TIMEOUT", "1800")
    monkeypatch.setenv("CYCLESYNC_JANITOR_CEILING", "3600")

    config = load_config(str(config_path))
    assert config.database_url == "sqlite:///tmp/other.db"
    assert config.orchestrator.stale_after == 600
    assert config.orchestrator.janitor_ceiling == 3600
    assert config.orchestrator.step_timeout == 1800


def test_invalid_settings_are_rejected(monkeypatch):
    monkeypatch.setenv("CYCLESYNC_STEP_TIMEOUT", "-5")
    with pytest.raises(ValidationError):
        load_config()


def test_janitor_ceiling_below_step_timeout_is_rejected(monkeypatch):
    monkeypatch.setenv("CYCLESYNC_JANITOR_CEILING", "3600")
    with pytest.raises(ValidationError, match="janitor_ceiling"):
        load_config()

    with pytest.raises(ValidationError):
        OrchestratorSettings(step_timeout=600, janitor_ceiling=300)


def test_get_repository_uses_config(tmp_path, monkeypatch):
    monkeypatch.setenv("CYCLESYNC_DATABASE_URL", f"sqlite://{tmp_path / 'cycles.db'}")
    repo = get_repository(config=load_config())
    assert isinstance(repo, SQLiteExecutionRepository)

    monkeypatch.delenv("CYCLESYNC_DATABASE_URL")
    repo = get_repository(config=load_config())
    assert isinstance(repo, InMemoryExecutionRepository)


def test_get_repository_rejects_unknown_backend():
    with pytest.raises(ValueError, match="Unsupported database backend"):
        get_repository("mongodb://localhost/cycles")
