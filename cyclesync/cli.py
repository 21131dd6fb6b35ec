"""Command line interface for running and inspecting cycled workflows."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from cyclesync.app import CycleSyncApp
from cyclesync.config import load_config
from cyclesync.contracts import WorkflowLoadError
from cyclesync.janitor import StuckExecutionJanitor
from cyclesync.loader import load_workflow
from cyclesync.persistence import get_repository
from cyclesync.persistence.models import OverallStatus
from cyclesync.status import read_status

app = typer.Typer(help="CLI for cyclesync workflows")

# Command groups
jobs_app = typer.Typer(help="Commands for inspecting job execution records")
janitor_app = typer.Typer(help="Commands for reclaiming stuck executions")

app.add_typer(jobs_app, name="jobs")
app.add_typer(janitor_app, name="janitor")


def _format_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


@app.callback()
def main() -> None:
    """cyclesync CLI entry point."""
    pass


@app.command("run")
def run(
    workflow_ref: str,
    base_path: Optional[Path] = typer.Option(
        None, help="Directory used to resolve the workflow reference"
    ),
    max_cycles: Optional[int] = typer.Option(
        None, min=1, help="Stop after this many completed cycles"
    ),
    lifespan: Optional[float] = typer.Option(
        None, help="Run for at most this many seconds"
    ),
    log_level: str = typer.Option("INFO", help="Root logging level"),
) -> None:
    """
    Run a workflow, resuming where the previous process stopped.

    The workflow reference is ``module:attr`` or ``path/to/file.py:attr``; the
    attribute defaults to ``workflow`` and must be a WorkflowDefinition.

    Example:
        cyclesync run daily_sync:workflow
        cyclesync run ./jobs/daily.py:workflow --max-cycles 1 --lifespan 600
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        definition = load_workflow(workflow_ref, base_path)
    except WorkflowLoadError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    config = load_config()
    cycle_app = CycleSyncApp(definition, config=config, max_cycles=max_cycles)
    typer.echo(f"Starting workflow: {definition.name}")
    asyncio.run(cycle_app.run(lifespan=lifespan))
    snapshot = cycle_app.engine.status()
    typer.echo(
        f"Workflow {definition.name}: {snapshot.overall_status.value} "
        f"after {snapshot.total_cycles} cycles"
    )


@app.command("status")
def status(
    name: Optional[str] = typer.Option(None, help="Workflow name (default: latest)")
) -> None:
    """
    Show the latest status snapshot of a workflow.

    Example:
        cyclesync status --name "Daily Sync"
        # Output: Daily Sync: paused (cycle 3, 42.0%)
        #         Pause reason: Provider daily API quota reached. ...
    """
    repo = get_repository()
    snapshot = asyncio.run(read_status(repo, name))
    if snapshot.overall_status == OverallStatus.NOT_INITIALIZED:
        typer.echo("Not initialized")
        return
    typer.echo(
        f"{snapshot.name}: {snapshot.overall_status.value} "
        f"(cycle {snapshot.current_cycle}, {snapshot.progress:.1f}%)"
    )
    typer.echo(f"Completed cycles: {snapshot.total_cycles}")
    if snapshot.current_step:
        typer.echo(f"Current step: {snapshot.current_step.name}")
    if snapshot.next_step:
        typer.echo(f"Next step: {snapshot.next_step.name}")
    if snapshot.pause_reason:
        typer.echo(f"Pause reason: {snapshot.pause_reason}")
    if snapshot.next_cycle_scheduled:
        typer.echo(f"Resumes at: {_format_time(snapshot.next_cycle_scheduled)} UTC")
    if snapshot.stop_reason:
        typer.echo(f"Stop reason: {snapshot.stop_reason}")


@jobs_app.command("list")
def jobs_list(
    name: Optional[str] = typer.Option(None, help="Filter by workflow name"),
    cycle: Optional[int] = typer.Option(None, help="Filter by cycle number"),
) -> None:
    """
    List job execution records.

    Example:
        cyclesync jobs list --name "Daily Sync" --cycle 3
        # Output: 9f1c...    3    sync    completed    100%
    """
    repo = get_repository()
    records = asyncio.run(repo.find_jobs(workflow_name=name, cycle_number=cycle))
    if not records:
        typer.echo("No job records found")
        return
    for record in records:
        typer.echo(
            f"{record.id}\t{record.cycle_number}\t{record.step_id}\t"
            f"{record.status.value}\t{record.progress:.0%}"
        )


@jobs_app.command("show")
def jobs_show(record_id: str) -> None:
    """Show a job execution record with its persisted log."""
    repo = get_repository()
    record = asyncio.run(repo.get_job(record_id))
    if record is None:
        typer.echo("Job record not found")
        raise typer.Exit(code=1)
    typer.echo(f"Job {record.id}: {record.name} ({record.status.value})")
    typer.echo(f"Workflow: {record.workflow_name}, cycle {record.cycle_number}")
    typer.echo(
        f"Started: {_format_time(record.started_at)}, "
        f"ended: {_format_time(record.ended_at)}, progress {record.progress:.0%}"
    )
    if record.error:
        typer.echo(f"Error: {record.error}")
    if record.result is not None:
        typer.echo(f"Result: {record.result}")
    for entry in record.logs:
        typer.echo(f"- [{entry.level}] {_format_time(entry.timestamp)} {entry.message}")


@janitor_app.command("sweep")
def janitor_sweep(
    ceiling: Optional[float] = typer.Option(
        None, help="Seconds a record may stay running (default: configured ceiling)"
    )
) -> None:
    """Mark executions stuck in running beyond the ceiling as failed."""
    config = load_config()
    repo = get_repository()
    janitor = StuckExecutionJanitor(
        repo, ceiling=ceiling or config.orchestrator.janitor_ceiling
    )
    reclaimed = asyncio.run(janitor.sweep())
    if not reclaimed:
        typer.echo("No stuck executions found")
        return
    for record in reclaimed:
        typer.echo(f"Failed stuck execution {record.id} ({record.name})")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
