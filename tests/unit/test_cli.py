import asyncio
from datetime import timedelta
from pathlib import Path

import pytest
from typer.testing import CliRunner

import cyclesync.persistence as persistence
from cyclesync.cli import app
from cyclesync.persistence import (
    InMemoryExecutionRepository,
    JobExecutionRecord,
    JobLogEntry,
    JobStatus,
    OverallStatus,
)
from cyclesync.persistence.models import utcnow

FIXTURE = Path(__file__).resolve().parent.parent / "fixtures" / "daily_workflow.py"


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    monkeypatch.setenv("CYCLESYNC_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("CYCLESYNC_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


def _setup_repo() -> InMemoryExecutionRepository:
    repo = InMemoryExecutionRepository()
    persistence._repository_instance = repo
    return repo


def _record(step_id: str, status: JobStatus, **fields) -> JobExecutionRecord:
    return JobExecutionRecord(
        workflow_name="Daily Sync",
        cycle_number=3,
        step_id=step_id,
        name=step_id.title(),
        status=status,
        **fields,
    )


def test_status_command_without_state():
    _setup_repo()

    result = CliRunner().invoke(app, ["status"])
    assert result.exit_code == 0, result.output
    assert "Not initialized" in result.output


def test_status_command_shows_pause_details():
    repo = _setup_repo()
    asyncio.run(
        repo.save_cycle_state(
            "Daily Sync",
            {
                "current_cycle": 3,
                "total_cycles": 2,
                "progress": 42.0,
                "is_paused": True,
                "pause_reason": "Provider daily API quota reached",
                "next_cycle_scheduled": utcnow() + timedelta(hours=2),
                "overall_status": OverallStatus.PAUSED,
            },
        )
    )

    result = CliRunner().invoke(app, ["status", "--name", "Daily Sync"])
    assert result.exit_code == 0, result.output
    assert "Daily Sync: paused (cycle 3, 42.0%)" in result.output
    assert "Completed cycles: 2" in result.output
    assert "Pause reason: Provider daily API quota reached" in result.output
    assert "Resumes at:" in result.output


def test_jobs_commands_list_and_show_records():
    repo = _setup_repo()
    done = asyncio.run(
        repo.create_job(_record("sync", JobStatus.COMPLETED, progress=1.0, result={"rows": 3}))
    )
    failed = asyncio.run(
        repo.create_job(_record("report", JobStatus.FAILED, error="upstream hiccup"))
    )
    asyncio.run(
        repo.append_job_log(done.id, JobLogEntry(message="Sync completed"), limit=10)
    )

    runner = CliRunner()
    result = runner.invoke(app, ["jobs", "list", "--name", "Daily Sync", "--cycle", "3"])
    assert result.exit_code == 0, result.output
    assert done.id in result.output
    assert failed.id in result.output
    assert "completed" in result.output

    result = runner.invoke(app, ["jobs", "show", done.id])
    assert result.exit_code == 0, result.output
    assert "Sync (completed)" in result.output
    assert "Result: {'rows': 3}" in result.output
    assert "Sync completed" in result.output

    result = runner.invoke(app, ["jobs", "show", failed.id])
    assert "Error: upstream hiccup" in result.output

    result = runner.invoke(app, ["jobs", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Job record not found" in result.output


def test_jobs_list_without_records():
    _setup_repo()

    result = CliRunner().invoke(app, ["jobs", "list", "--cycle", "9"])
    assert result.exit_code == 0, result.output
    assert "No job records found" in result.output


def test_janitor_sweep_command():
    repo = _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["janitor", "sweep"])
    assert result.exit_code == 0, result.output
    assert "No stuck executions found" in result.output

    stuck = asyncio.run(
        repo.create_job(
            _record("sync", JobStatus.RUNNING, started_at=utcnow() - timedelta(hours=1))
        )
    )
    result = runner.invoke(app, ["janitor", "sweep", "--ceiling", "600"])
    assert result.exit_code == 0, result.output
    assert f"Failed stuck execution {stuck.id}" in result.output
    assert asyncio.run(repo.get_job(stuck.id)).status == JobStatus.FAILED


def test_run_command_executes_workflow_file():
    _setup_repo()

    result = CliRunner().invoke(
        app, ["run", str(FIXTURE), "--max-cycles", "1", "--log-level", "WARNING"]
    )
    assert result.exit_code == 0, result.output
    assert "Starting workflow: Fixture Sync" in result.output
    assert "Workflow Fixture Sync: completed after 1 cycles" in result.output


def test_run_command_rejects_bad_reference(tmp_path):
    result = CliRunner().invoke(app, ["run", str(tmp_path / "nowhere.py")])
    assert result.exit_code == 1
    assert "does not exist" in result.output

    result = CliRunner().invoke(app, ["run", f"{FIXTURE}:not_a_workflow"])
    assert result.exit_code == 1
    assert "not a WorkflowDefinition" in result.output
