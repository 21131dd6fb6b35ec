"""The cycle engine: drives a workflow through repeating cycles."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import OrchestratorSettings
from .constants import (
    CANCELLED_ON_PAUSE_ERROR,
    MANUAL_PAUSE_REASON,
    MAX_CYCLES_REASON,
    QUOTA_PAUSE_REASON,
)
from .contracts import (
    CancellableQueue,
    CycleContext,
    JobFunction,
    StepInfo,
    StepOutcome,
    WorkflowDefinition,
    WorkflowNotInitializedError,
    WorkflowStep,
)
from .coordinator import JobExecutionCoordinator, StepResult
from .persistence.models import (
    ACTIVE_STATUSES,
    DONE_STATUSES,
    CycleSnapshot,
    CycleState,
    JobStatus,
    OverallStatus,
    utcnow,
)
from .persistence.repository import ExecutionRepository
from .quota import next_quota_reset
from .status import StatusPublisher

logger = logging.getLogger(__name__)

Condition = Callable[..., Any]
ResumePolicy = Callable[[datetime], datetime]

CONTINUE_CONDITIONS_UNMET_REASON = "Continue conditions not met"
EMPTY_WORKFLOW_REASON = "Workflow has no steps"


async def _evaluate(fn: Condition, *args: Any) -> bool:
    value = fn(*args)
    if inspect.isawaitable(value):
        value = await value
    return bool(value)


def _label_of(fn: Condition, label: Optional[str]) -> str:
    return label or getattr(fn, "__name__", None) or repr(fn)


class CycleEngine:
    """Run the steps of a workflow one at a time, cycle after cycle.

    The engine keeps a mirror of the persisted :class:`CycleState` and writes
    every transition back to the repository as a partial update. A single
    driving task walks the workflow; while paused, a watcher task polls the
    continue conditions and resumes the cycle at the step it stopped on.
    """

    def __init__(
        self,
        name: str,
        workflow: List[WorkflowStep],
        jobs: Dict[str, JobFunction],
        repository: ExecutionRepository,
        *,
        settings: Optional[OrchestratorSettings] = None,
        publisher: Optional[StatusPublisher] = None,
        api_queue: Optional[CancellableQueue] = None,
        max_cycles: Optional[int] = None,
        resume_policy: ResumePolicy = next_quota_reset,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.name = name
        self.workflow = list(workflow)
        self.repository = repository
        self.settings = settings or OrchestratorSettings()
        self.publisher = publisher
        self.api_queue = api_queue
        self.max_cycles = max_cycles
        self._resume_policy = resume_policy
        self._clock = clock
        self.coordinator = JobExecutionCoordinator(
            repository,
            jobs,
            self.settings,
            on_progress=self.refresh_progress,
            clock=clock,
        )
        self._state: Optional[CycleState] = None
        self._pause_conditions: List[Tuple[str, Condition]] = []
        self._continue_conditions: List[Tuple[str, Condition]] = []
        self._drive_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None

    @classmethod
    def from_definition(
        cls,
        definition: WorkflowDefinition,
        repository: ExecutionRepository,
        **kwargs: Any,
    ) -> "CycleEngine":
        kwargs.setdefault("max_cycles", definition.max_cycles)
        return cls(definition.name, definition.steps, definition.jobs, repository, **kwargs)

    # ------------------------------------------------------------------
    # Conditions
    def pause_on(self, fn: Condition, label: Optional[str] = None) -> None:
        """Register a pause condition, called with the error of a quota failure."""
        self._pause_conditions.append((_label_of(fn, label), fn))

    def continue_on(self, fn: Condition, label: Optional[str] = None) -> None:
        """Register a continue condition, polled without arguments while paused."""
        self._continue_conditions.append((_label_of(fn, label), fn))

    # ------------------------------------------------------------------
    # State helpers
    @property
    def state(self) -> Optional[CycleState]:
        return self._state

    @property
    def is_driving(self) -> bool:
        return self._drive_task is not None and not self._drive_task.done()

    def _require_state(self) -> CycleState:
        if self._state is None:
            raise WorkflowNotInitializedError(
                f"Cycle {self.name} has not been started or restored"
            )
        return self._state

    def _step_fields(self, index: int) -> Dict[str, Any]:
        steps = self.workflow
        return {
            "current_step_index": index,
            "current_step": StepInfo.from_step(steps[index], index)
            if index < len(steps)
            else None,
            "next_step": StepInfo.from_step(steps[index + 1], index + 1)
            if index + 1 < len(steps)
            else None,
        }

    def _definition_fields(self) -> Dict[str, Any]:
        return {
            "total_steps": len(self.workflow),
            "max_cycles": self.max_cycles,
            "pause_conditions": [label for label, _ in self._pause_conditions],
            "continue_conditions": [label for label, _ in self._continue_conditions],
        }

    def _new_cycle_fields(self, cycle_number: int) -> Dict[str, Any]:
        return {
            "current_cycle": cycle_number,
            "completed_steps": 0,
            "failed_steps": 0,
            "progress": 0.0,
            **self._step_fields(0),
        }

    async def _save(self, **fields: Any) -> None:
        state = self._require_state()
        self._state = state.model_copy(update=fields)
        try:
            self._state = await self.repository.save_cycle_state(self.name, fields)
        except Exception as exc:
            logger.error(f"Failed to persist state of cycle {self.name}: {exc}")
        if self.publisher is not None:
            await self.publisher.publish(self._state)

    async def _cancel_running_records(self, error: str) -> None:
        state = self._require_state()
        try:
            running = await self.repository.find_jobs(
                workflow_name=self.name,
                cycle_number=state.current_cycle,
                statuses=ACTIVE_STATUSES,
            )
            for record in running:
                await self.repository.update_job(
                    record.id,
                    status=JobStatus.CANCELLED,
                    error=error,
                    ended_at=self._clock(),
                )
                logger.info(f"Cancelled running record of {record.name}")
        except Exception as exc:
            logger.error(f"Failed to cancel running records of {self.name}: {exc}")

    async def _cancel_external_operations(self) -> None:
        if self.api_queue is None:
            return
        try:
            await self.api_queue.cancel_all()
        except Exception as exc:
            logger.error(f"Failed to cancel external operations: {exc}")

    async def _continue_allowed(self) -> bool:
        for label, fn in self._continue_conditions:
            try:
                if not await _evaluate(fn):
                    return False
            except Exception as exc:
                logger.error(f"Continue condition {label} failed: {exc}")
                return False
        return True

    # ------------------------------------------------------------------
    # Progress
    async def refresh_progress(self) -> float:
        """Recompute cycle progress from the current cycle's job records."""
        state = self._require_state()
        total = len(self.workflow)
        try:
            records = await self.repository.find_jobs(
                workflow_name=self.name, cycle_number=state.current_cycle
            )
        except Exception as exc:
            logger.error(f"Failed to load records for progress of {self.name}: {exc}")
            return state.progress

        latest = {record.step_id: record for record in records}
        contribution = 0.0
        completed = failed = 0
        for step in self.workflow:
            record = latest.get(step.step_id)
            if record is None:
                continue
            if record.status in DONE_STATUSES:
                contribution += 100.0
                completed += 1
            elif record.status in ACTIVE_STATUSES:
                contribution += record.progress * 100.0
            elif record.status == JobStatus.FAILED:
                failed += 1

        progress = min(100.0, max(0.0, contribution / total)) if total else 0.0
        await self._save(
            progress=progress,
            completed_steps=completed,
            failed_steps=failed,
            total_steps=total,
        )
        return progress

    # ------------------------------------------------------------------
    # Lifecycle
    def _ensure_driving(self) -> None:
        if self.is_driving:
            return
        self._drive_task = asyncio.create_task(
            self._drive(), name=f"cycle-engine:{self.name}"
        )

    def _ensure_watching(self) -> None:
        if self._watch_task is not None and not self._watch_task.done():
            return
        self._watch_task = asyncio.create_task(
            self._watch(), name=f"cycle-watcher:{self.name}"
        )

    async def start(self) -> None:
        """Begin a fresh run of the workflow at the first step."""
        if self.is_driving:
            logger.warning(f"Cycle {self.name} is already running")
            return
        # never reuse the records of an earlier run
        cycle_number = self._state.current_cycle + 1 if self._state else 1
        if self._state is None:
            self._state = CycleState(name=self.name)
        await self._save(
            **self._definition_fields(),
            **self._new_cycle_fields(cycle_number),
            total_cycles=0,
            is_running=True,
            is_paused=False,
            manual_pause=False,
            pause_reason=None,
            stop_reason=None,
            next_cycle_scheduled=None,
            overall_status=OverallStatus.RUNNING,
        )
        logger.info(f"Starting cycle {cycle_number} of {self.name}")
        self._ensure_driving()

    async def restore(self, state: CycleState) -> None:
        """Attach a persisted state and the live workflow without driving it."""
        if self.max_cycles is None:
            self.max_cycles = state.max_cycles
        self._state = state
        index = min(max(state.current_step_index, 0), len(self.workflow))
        fields: Dict[str, Any] = {
            **self._definition_fields(),
            **self._step_fields(index),
            "is_running": False,
        }
        if state.is_paused:
            fields["overall_status"] = OverallStatus.PAUSED
        await self._save(**fields)
        if state.is_paused and not state.manual_pause:
            self._ensure_watching()

    async def resume_from(self, index: int) -> None:
        """Continue the current cycle from the step at ``index``."""
        self._require_state()
        index = min(max(index, 0), len(self.workflow))
        await self._save(
            **self._step_fields(index),
            is_running=True,
            is_paused=False,
            pause_reason=None,
            stop_reason=None,
            next_cycle_scheduled=None,
            overall_status=OverallStatus.RUNNING,
        )
        await self.refresh_progress()
        logger.info(f"Resuming cycle {self._state.current_cycle} of {self.name} at step {index}")
        self._ensure_driving()

    async def start_next_cycle(self) -> None:
        state = self._require_state()
        await self._save(
            **self._new_cycle_fields(state.current_cycle + 1),
            is_running=True,
            is_paused=False,
            pause_reason=None,
            stop_reason=None,
            next_cycle_scheduled=None,
            overall_status=OverallStatus.RUNNING,
        )
        logger.info(f"Starting cycle {self._state.current_cycle} of {self.name}")
        self._ensure_driving()

    async def pause(self, reason: Optional[str] = None) -> None:
        """Pause the cycle until the continue conditions allow it to resume."""
        self._require_state()
        resume_at = self._resume_policy(self._clock())
        reason = reason or QUOTA_PAUSE_REASON.format(
            resume_at=resume_at.strftime("%Y-%m-%d %H:%M")
        )
        await self._cancel_running_records(CANCELLED_ON_PAUSE_ERROR)
        await self._cancel_external_operations()
        await self._save(
            is_running=False,
            is_paused=True,
            pause_reason=reason,
            next_cycle_scheduled=resume_at,
            overall_status=OverallStatus.PAUSED,
        )
        logger.warning(f"Cycle {self.name} paused: {reason}")
        self._ensure_watching()

    async def resume(self) -> None:
        state = self._require_state()
        if state.manual_pause:
            logger.info(f"Cycle {self.name} is manually paused, not resuming")
            return
        if not state.is_paused:
            return
        await self._save(
            is_running=True,
            is_paused=False,
            pause_reason=None,
            next_cycle_scheduled=None,
            overall_status=OverallStatus.RUNNING,
        )
        logger.info(f"Cycle {self.name} resumed at step {state.current_step_index}")
        self._ensure_driving()

    async def pause_manually(self) -> None:
        self._require_state()
        await self._cancel_running_records(CANCELLED_ON_PAUSE_ERROR)
        await self._save(
            is_running=False,
            is_paused=True,
            manual_pause=True,
            pause_reason=MANUAL_PAUSE_REASON,
            next_cycle_scheduled=None,
            overall_status=OverallStatus.PAUSED,
        )
        logger.info(f"Cycle {self.name} manually paused")

    async def resume_manually(self) -> None:
        self._require_state()
        await self._save(manual_pause=False)
        await self.resume()

    async def stop(
        self,
        reason: str = "Stopped by user",
        status: OverallStatus = OverallStatus.STOPPED,
    ) -> None:
        self._require_state()
        current = asyncio.current_task()
        if self._watch_task is not None and self._watch_task is not current:
            self._watch_task.cancel()
        if self._drive_task is not None and self._drive_task is not current:
            self._drive_task.cancel()
        await self._cancel_running_records(f"Cycle stopped: {reason}")
        await self._save(
            is_running=False,
            is_paused=False,
            manual_pause=False,
            pause_reason=None,
            stop_reason=reason,
            next_cycle_scheduled=None,
            overall_status=status,
        )
        logger.info(f"Cycle {self.name} stopped: {reason}")

    async def restart(self) -> None:
        """Stop the engine and start over with a fresh cycle count."""
        if self._state is not None:
            await self.stop("Restarting")
            if self._drive_task is not None:
                await asyncio.wait({self._drive_task})
        await self.start()

    def status(self) -> CycleSnapshot:
        if self._state is None:
            return CycleSnapshot(name=self.name)
        return CycleSnapshot.from_state(self._state)

    async def close(self) -> None:
        """Cancel the engine tasks, leaving the persisted state untouched."""
        tasks = {
            task
            for task in (self._drive_task, self._watch_task)
            if task is not None and not task.done()
        }
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

    async def wait(self) -> None:
        """Block until neither the driving task nor the watcher is alive."""
        while True:
            pending = {
                task
                for task in (self._drive_task, self._watch_task)
                if task is not None and not task.done()
            }
            if not pending:
                return
            await asyncio.wait(pending)

    # ------------------------------------------------------------------
    # Driving loop
    async def _handle_quota(self, result: StepResult) -> bool:
        """Return True when a pause condition paused or stopped the cycle."""
        triggered = []
        for label, fn in self._pause_conditions:
            try:
                if await _evaluate(fn, result.error):
                    triggered.append(label)
            except Exception as exc:
                logger.error(f"Pause condition {label} failed: {exc}")
                await self.stop(f"Pause condition {label} failed: {exc}")
                return True
        if not triggered:
            return False
        logger.info(f"Pause conditions triggered: {', '.join(triggered)}")
        await self.pause()
        return True

    async def _complete_cycle(self) -> bool:
        """Close the finished cycle; return True when the loop should go on."""
        state = self._require_state()
        await self.refresh_progress()
        total_cycles = state.total_cycles + 1
        await self._save(
            total_cycles=total_cycles, overall_status=OverallStatus.COMPLETED
        )
        logger.info(
            f"Cycle {state.current_cycle} of {self.name} completed "
            f"({self._state.completed_steps} done, {self._state.failed_steps} failed)"
        )
        if self.max_cycles is not None and total_cycles >= self.max_cycles:
            await self.stop(MAX_CYCLES_REASON, status=OverallStatus.COMPLETED)
            return False

        await self._save(
            **self._new_cycle_fields(state.current_cycle + 1),
            overall_status=OverallStatus.RUNNING,
        )
        if not await self._continue_allowed():
            await self.pause(CONTINUE_CONDITIONS_UNMET_REASON)
            return False
        logger.info(f"Starting cycle {self._state.current_cycle} of {self.name}")
        return True

    async def _drive(self) -> None:
        try:
            while True:
                state = self._require_state()
                if not state.is_running or state.is_paused:
                    return
                if not self.workflow:
                    await self.stop(EMPTY_WORKFLOW_REASON)
                    return

                index = state.current_step_index
                if index >= len(self.workflow):
                    if not await self._complete_cycle():
                        return
                    # cycles run back to back, but let other tasks in between
                    await asyncio.sleep(0)
                    continue

                step = self.workflow[index]
                await self._save(**self._step_fields(index))
                ctx = CycleContext(
                    workflow_name=self.name,
                    cycle_number=state.current_cycle,
                    step_index=index,
                )
                result = await self.coordinator.run_step(step, ctx)

                if result.outcome == StepOutcome.QUOTA_PAUSE:
                    if await self._handle_quota(result):
                        return
                    if result.record is not None:
                        await self.coordinator.mark_failed(result.record, result.error)
                    result = result.model_copy(update={"outcome": StepOutcome.FAILURE})

                if not result.outcome.advances:
                    # resumed while the cancelled job was still finishing
                    if self._state.is_running and not self._state.is_paused:
                        logger.info(f"Retrying cancelled step {step.name} of {self.name}")
                        continue
                    logger.info(f"Step {step.name} was cancelled, cycle {self.name} halted")
                    return
                if result.outcome == StepOutcome.FAILURE:
                    logger.warning(
                        f"Step {step.name} failed in cycle {state.current_cycle}, "
                        "moving on to the next step"
                    )

                if self._state.is_paused or not self._state.is_running:
                    return
                await self.refresh_progress()
                await self._save(**self._step_fields(index + 1))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"Cycle {self.name} crashed")
            await self.stop(f"Engine error: {exc}")

    async def _watch(self) -> None:
        while True:
            state = self._state
            if state is None or not state.is_paused or state.manual_pause:
                return
            await asyncio.sleep(self.settings.condition_poll_interval)
            state = self._state
            if state is None or not state.is_paused or state.manual_pause:
                return
            if await self._continue_allowed():
                await self.resume()
                return
