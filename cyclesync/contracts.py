"""Core contracts for cyclesync workflows."""

from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator

JobFunction = Callable[..., Awaitable[Any]]


class CycleSyncError(Exception):
    """Base class for cyclesync errors."""


class StepTimeoutError(CycleSyncError):
    """Raised when a job function does not finish within the step timeout."""

    def __init__(self, step_name: str, timeout: float) -> None:
        super().__init__(f"Step {step_name} timed out after {timeout:g}s")
        self.step_name = step_name
        self.timeout = timeout


class WorkflowNotInitializedError(CycleSyncError):
    """Raised when the engine is driven before a workflow has been attached."""


class WorkflowLoadError(CycleSyncError):
    """Raised when a workflow reference cannot be resolved."""


class StepOutcome(str, Enum):
    """Result classification of a single step execution."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    ALREADY_DONE = "already_done"
    FAILURE = "failure"
    QUOTA_PAUSE = "quota_pause"
    CANCELLED = "cancelled"

    @property
    def advances(self) -> bool:
        """Whether the cycle moves past the step after this outcome."""
        return self in (
            StepOutcome.SUCCESS,
            StepOutcome.SKIPPED,
            StepOutcome.ALREADY_DONE,
            StepOutcome.FAILURE,
        )


def node_id_for(index: int) -> str:
    """Stable identifier of the workflow position ``index``."""
    return f"step_{index}"


class WorkflowStep(BaseModel):
    """Defines one step in a workflow."""

    name: str
    step_id: str
    skipped: bool = False
    parallel_group: Optional[str] = Field(
        default=None, description="Advisory label, steps still run sequentially"
    )


class StepInfo(BaseModel):
    """Denormalized step description shown in status snapshots."""

    name: str
    step_id: str
    index: int
    parallel_group: Optional[str] = None
    skipped: bool = False

    @classmethod
    def from_step(cls, step: WorkflowStep, index: int) -> "StepInfo":
        return cls(
            name=step.name,
            step_id=step.step_id,
            index=index,
            parallel_group=step.parallel_group,
            skipped=step.skipped,
        )


class CycleContext(BaseModel):
    """Position of a step inside a running cycle."""

    workflow_name: str
    cycle_number: int
    step_index: int

    @property
    def node_id(self) -> str:
        return node_id_for(self.step_index)


class WorkflowDefinition(BaseModel):
    """A named workflow together with the job functions backing its steps."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    steps: List[WorkflowStep] = Field(default_factory=list)
    jobs: Dict[str, JobFunction] = Field(default_factory=dict)
    max_cycles: Optional[int] = None

    @model_validator(mode="after")
    def _check_steps(self) -> "WorkflowDefinition":
        seen: set[str] = set()
        for step in self.steps:
            if step.step_id in seen:
                raise ValueError(f"Duplicate step id: {step.step_id}")
            seen.add(step.step_id)
            if not step.skipped and step.step_id not in self.jobs:
                raise ValueError(f"Job function not found: {step.step_id}")
        return self


class CancellableQueue(Protocol):
    """Handle on the shared rate-limited API queue."""

    async def cancel_all(self) -> None:
        """Drop or abort queued external calls."""


__all__ = [
    "CancellableQueue",
    "CycleContext",
    "CycleSyncError",
    "JobFunction",
    "StepInfo",
    "StepOutcome",
    "StepTimeoutError",
    "WorkflowDefinition",
    "WorkflowLoadError",
    "WorkflowNotInitializedError",
    "WorkflowStep",
    "node_id_for",
]
