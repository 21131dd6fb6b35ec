"""Execution of a single workflow step and the lifecycle of its record."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from .config import OrchestratorSettings
from .constants import (
    LOG_MILESTONE_MARKERS,
    SKIPPED_RESULT_REASON,
    STALE_EXECUTION_ERROR,
)
from .contracts import (
    CycleContext,
    CycleSyncError,
    JobFunction,
    StepOutcome,
    StepTimeoutError,
    WorkflowStep,
)
from .persistence.models import (
    ACTIVE_STATUSES,
    JobExecutionRecord,
    JobLogEntry,
    JobStatus,
    utcnow,
)
from .persistence.repository import ExecutionRepository
from .quota import is_quota_signal

logger = logging.getLogger(__name__)
jobs_logger = logging.getLogger("cyclesync.jobs")

ProgressHook = Callable[[], Awaitable[None]]

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
_PERSISTED_LEVELS = ("warning", "error")


class StepResult(BaseModel):
    """Outcome of :meth:`JobExecutionCoordinator.run_step`."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    outcome: StepOutcome
    record: Optional[JobExecutionRecord] = None
    error: Optional[BaseException] = None
    result: Any = None


class JobContext:
    """Callbacks handed to a job function while it runs."""

    def __init__(
        self,
        record_id: str,
        step: WorkflowStep,
        cycle: CycleContext,
        repository: ExecutionRepository,
        settings: OrchestratorSettings,
        on_progress: Optional[ProgressHook] = None,
    ) -> None:
        self.record_id = record_id
        self.step = step
        self.cycle = cycle
        self._repository = repository
        self._settings = settings
        self._on_progress = on_progress
        self._last_recompute: Optional[float] = None

    async def progress(self, fraction: float) -> None:
        """Report completion of the running step as a fraction in ``[0, 1]``."""
        if isinstance(fraction, bool) or not isinstance(fraction, (int, float)):
            logger.warning(f"Ignoring non-numeric progress {fraction!r} for {self.step.name}")
            return
        if not 0.0 <= fraction <= 1.0:
            logger.warning(f"Ignoring out of range progress {fraction} for {self.step.name}")
            return
        try:
            await self._repository.update_job(self.record_id, progress=float(fraction))
        except Exception as exc:
            logger.warning(f"Failed to persist progress for {self.step.name}: {exc}")
            return

        if self._on_progress is None:
            return
        now = time.monotonic()
        if (
            self._last_recompute is not None
            and now - self._last_recompute < self._settings.progress_throttle
        ):
            return
        self._last_recompute = now
        try:
            await self._on_progress()
        except Exception as exc:
            logger.warning(f"Cycle progress recompute failed: {exc}")

    async def append_log(self, message: str, level: str = "info") -> None:
        level = "warning" if level == "warn" else level
        jobs_logger.log(_LEVELS.get(level, logging.INFO), f"[{self.step.name}] {message}")
        if level not in _PERSISTED_LEVELS and not any(
            marker in message for marker in LOG_MILESTONE_MARKERS
        ):
            return
        try:
            await self._repository.append_job_log(
                self.record_id,
                JobLogEntry(message=message, level=level),
                self._settings.max_log_entries,
            )
        except Exception as exc:
            logger.warning(f"Failed to persist log entry for {self.step.name}: {exc}")


def _consume_background_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"Timed out job finished in the background with error: {exc}")


class JobExecutionCoordinator:
    """Run one workflow step and keep its execution record up to date."""

    def __init__(
        self,
        repository: ExecutionRepository,
        jobs: Dict[str, JobFunction],
        settings: Optional[OrchestratorSettings] = None,
        on_progress: Optional[ProgressHook] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.jobs = jobs
        self.settings = settings or OrchestratorSettings()
        self.on_progress = on_progress
        self._clock = clock

    # ------------------------------------------------------------------
    # Persistence helpers
    async def _safe(self, action: str, coro: Awaitable[Any]) -> Any:
        try:
            return await coro
        except Exception as exc:
            logger.error(f"Persistence failure during {action}: {exc}")
            return None

    async def _update(
        self, record: JobExecutionRecord, **fields: Any
    ) -> JobExecutionRecord:
        updated = await self._safe(
            f"update of record {record.id}",
            self.repository.update_job(record.id, **fields),
        )
        return updated or record.model_copy(update=fields)

    async def _create(
        self, step: WorkflowStep, ctx: CycleContext, **fields: Any
    ) -> JobExecutionRecord:
        record = JobExecutionRecord(
            workflow_name=ctx.workflow_name,
            cycle_number=ctx.cycle_number,
            step_id=step.step_id,
            name=step.name,
            metadata={
                "workflow_name": ctx.workflow_name,
                "cycle_number": ctx.cycle_number,
                "step_id": step.step_id,
                "node_id": ctx.node_id,
                "parallel_group": step.parallel_group,
            },
            **fields,
        )
        created = await self._safe(
            f"creation of record for {step.step_id}", self.repository.create_job(record)
        )
        return created or record

    def _is_stale(self, record: JobExecutionRecord) -> bool:
        started = record.started_at or record.scheduled_at
        return (self._clock() - started).total_seconds() > self.settings.stale_after

    # ------------------------------------------------------------------
    async def mark_failed(
        self, record: JobExecutionRecord, error: BaseException | str
    ) -> JobExecutionRecord:
        return await self._update(
            record, status=JobStatus.FAILED, error=str(error), ended_at=self._clock()
        )

    async def _skip(self, step: WorkflowStep, ctx: CycleContext) -> StepResult:
        existing = await self._safe(
            f"lookup of {step.step_id}",
            self.repository.find_job(ctx.workflow_name, ctx.cycle_number, step.step_id),
        )
        fields = {
            "status": JobStatus.SKIPPED,
            "progress": 1.0,
            "result": {"reason": SKIPPED_RESULT_REASON},
            "ended_at": self._clock(),
        }
        if existing is None:
            record = await self._create(step, ctx, **fields)
        elif existing.status == JobStatus.SKIPPED:
            record = existing
        else:
            record = await self._update(existing, **fields)
        logger.info(f"Step {step.name} skipped in cycle {ctx.cycle_number}")
        return StepResult(outcome=StepOutcome.SKIPPED, record=record)

    async def _acquire(
        self,
        step: WorkflowStep,
        ctx: CycleContext,
        existing: Optional[JobExecutionRecord],
    ) -> JobExecutionRecord:
        """Resolve the record the next attempt of ``step`` runs under."""
        now = self._clock()

        if existing is not None and existing.status in ACTIVE_STATUSES:
            if self._is_stale(existing):
                logger.warning(
                    f"Found stale execution of {step.name} in cycle {ctx.cycle_number}, "
                    "starting a new attempt"
                )
                await self.mark_failed(existing, STALE_EXECUTION_ERROR)
                existing = None
            else:
                logger.warning(f"Reusing in-flight record of {step.name}")
                return existing

        if existing is not None and existing.status in (
            JobStatus.CANCELLED,
            JobStatus.PAUSED,
            JobStatus.FAILED,
        ):
            logger.info(
                f"Retrying {step.name} from {existing.progress:.0%} "
                f"(previous status {existing.status.value})"
            )
            existing = await self._update(existing, status=JobStatus.RETRYING)
            return await self._update(
                existing,
                status=JobStatus.RUNNING,
                started_at=now,
                ended_at=None,
                error=None,
            )

        if existing is not None and existing.status == JobStatus.SCHEDULED:
            return await self._update(
                existing, status=JobStatus.RUNNING, started_at=now, progress=0.0
            )

        record = await self._create(step, ctx, status=JobStatus.SCHEDULED)
        return await self._update(
            record, status=JobStatus.RUNNING, started_at=now, progress=0.0
        )

    async def _execute(
        self, step: WorkflowStep, job: JobFunction, job_ctx: JobContext
    ) -> Any:
        task = asyncio.ensure_future(job(job_ctx))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.settings.step_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()
        task.add_done_callback(_consume_background_result)
        raise StepTimeoutError(step.name, self.settings.step_timeout)

    async def run_step(self, step: WorkflowStep, ctx: CycleContext) -> StepResult:
        """Execute ``step`` for the cycle described by ``ctx``."""
        if step.skipped:
            return await self._skip(step, ctx)

        existing = await self._safe(
            f"lookup of {step.step_id}",
            self.repository.find_job(ctx.workflow_name, ctx.cycle_number, step.step_id),
        )
        if existing is not None and existing.status == JobStatus.COMPLETED:
            logger.info(f"Step {step.name} already completed in cycle {ctx.cycle_number}")
            return StepResult(
                outcome=StepOutcome.ALREADY_DONE, record=existing, result=existing.result
            )

        record = await self._acquire(step, ctx, existing)
        job_ctx = JobContext(
            record.id, step, ctx, self.repository, self.settings, self.on_progress
        )
        await job_ctx.append_log(f"{step.name} started")

        job = self.jobs.get(step.step_id)
        try:
            if job is None:
                raise CycleSyncError(f"Job function not found: {step.step_id}")
            result = await self._execute(step, job, job_ctx)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if is_quota_signal(exc):
                logger.warning(f"Step {step.name} hit the provider quota: {exc}")
                return StepResult(outcome=StepOutcome.QUOTA_PAUSE, record=record, error=exc)
            logger.error(f"Step {step.name} failed: {exc}")
            record = await self.mark_failed(record, exc)
            return StepResult(outcome=StepOutcome.FAILURE, record=record, error=exc)

        current = await self._safe(
            f"reload of record {record.id}", self.repository.get_job(record.id)
        )
        if current is not None and current.status == JobStatus.CANCELLED:
            logger.info(f"Discarding result of {step.name}, its record was cancelled")
            return StepResult(outcome=StepOutcome.CANCELLED, record=current, result=result)

        record = await self._update(
            record,
            status=JobStatus.COMPLETED,
            progress=1.0,
            result=result,
            ended_at=self._clock(),
        )
        await job_ctx.append_log(f"{step.name} completed")
        return StepResult(outcome=StepOutcome.SUCCESS, record=record, result=result)
