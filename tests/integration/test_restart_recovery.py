"""Crash and restart of a workflow persisted in SQLite."""

import asyncio

import pytest

from cyclesync.config import OrchestratorSettings
from cyclesync.constants import STALE_EXECUTION_ERROR
from cyclesync.contracts import WorkflowStep
from cyclesync.engine import CycleEngine
from cyclesync.persistence import JobStatus, SQLiteExecutionRepository
from cyclesync.recovery import RecoveryController, RecoveryOutcome

SETTINGS = OrchestratorSettings(
    step_timeout=5,
    stale_after=0.01,
    condition_poll_interval=0.01,
    progress_throttle=0,
    status_throttle=0,
)
STEPS = [
    WorkflowStep(name="Sync prices", step_id="prices"),
    WorkflowStep(name="Fundamentals", step_id="fundamentals", skipped=True),
    WorkflowStep(name="Compute metrics", step_id="metrics"),
    WorkflowStep(name="Report", step_id="report"),
]


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_restart_resumes_at_interrupted_step(tmp_path):
    db_path = tmp_path / "cycles.db"
    calls = []
    never = asyncio.Event()

    async def prices(ctx):
        calls.append(("prices", ctx.cycle.cycle_number))

    async def metrics_hangs(ctx):
        calls.append(("metrics", ctx.cycle.cycle_number))
        await ctx.progress(0.42)
        await never.wait()

    async def metrics(ctx):
        calls.append(("metrics", ctx.cycle.cycle_number))

    async def report(ctx):
        calls.append(("report", ctx.cycle.cycle_number))
        return {"pages": 2}

    repo = SQLiteExecutionRepository(db_path)
    first = CycleEngine(
        "Daily Sync",
        STEPS,
        {"prices": prices, "metrics": metrics_hangs, "report": report},
        repo,
        settings=SETTINGS,
    )
    await first.start()

    async def metrics_in_flight():
        record = await repo.find_job("Daily Sync", 1, "metrics")
        return record is not None and record.progress == 0.42

    await _until(metrics_in_flight)
    # process dies without persisting anything further
    await first.close()
    await asyncio.sleep(0.05)

    reopened = SQLiteExecutionRepository(db_path)
    state = await reopened.get_cycle_state("Daily Sync")
    assert state.is_running is True
    assert state.current_step_index == 2

    second = CycleEngine(
        "Daily Sync",
        STEPS,
        {"prices": prices, "metrics": metrics, "report": report},
        reopened,
        settings=SETTINGS,
        max_cycles=1,
    )
    outcome = await RecoveryController(second).recover()
    await asyncio.wait_for(second.wait(), 5)

    assert outcome == RecoveryOutcome.RESUMED
    assert calls == [
        ("prices", 1),
        ("metrics", 1),
        ("metrics", 1),
        ("report", 1),
    ]

    records = await reopened.find_jobs(workflow_name="Daily Sync", cycle_number=1)
    by_step = {}
    for record in records:
        by_step.setdefault(record.step_id, []).append(record)
    assert [r.status for r in by_step["prices"]] == [JobStatus.COMPLETED]
    assert [r.status for r in by_step["fundamentals"]] == [JobStatus.SKIPPED]
    assert [r.status for r in by_step["metrics"]] == [JobStatus.FAILED, JobStatus.COMPLETED]
    assert by_step["metrics"][0].error == STALE_EXECUTION_ERROR
    assert by_step["report"][0].result == {"pages": 2}

    final = await reopened.get_cycle_state("Daily Sync")
    assert final.total_cycles == 1
    assert final.progress == 100.0
    assert final.is_running is False
