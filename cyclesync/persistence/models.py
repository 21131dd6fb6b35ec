"""Data models for persisted cycle and job execution state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import StepInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    PAUSED = "paused"


ACTIVE_STATUSES = (JobStatus.RUNNING, JobStatus.RETRYING)
DONE_STATUSES = (JobStatus.COMPLETED, JobStatus.SKIPPED)


class JobLogEntry(BaseModel):
    """A single persisted log line of a job execution."""

    message: str
    level: str = "info"
    timestamp: datetime = Field(default_factory=utcnow)


class JobExecutionRecord(BaseModel):
    """Record of one attempt of one workflow step within one cycle."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workflow_name: str
    cycle_number: int
    step_id: str
    name: str
    status: JobStatus = JobStatus.SCHEDULED
    scheduled_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    result: Any = None
    error: Optional[str] = None
    logs: list[JobLogEntry] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class OverallStatus(str, Enum):
    NOT_INITIALIZED = "not_initialized"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"


class CycleState(BaseModel):
    """Persisted state of a named cycled workflow."""

    name: str
    current_cycle: int = 0
    total_cycles: int = 0
    max_cycles: Optional[int] = None
    is_running: bool = False
    is_paused: bool = False
    manual_pause: bool = False
    pause_reason: Optional[str] = None
    stop_reason: Optional[str] = None
    current_step_index: int = 0
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    current_step: Optional[StepInfo] = None
    next_step: Optional[StepInfo] = None
    next_cycle_scheduled: Optional[datetime] = None
    pause_conditions: list[str] = Field(default_factory=list)
    continue_conditions: list[str] = Field(default_factory=list)
    overall_status: OverallStatus = OverallStatus.NOT_INITIALIZED
    last_updated: datetime = Field(default_factory=utcnow)


class CycleSnapshot(BaseModel):
    """Status view pushed to sinks and returned by the status reader."""

    name: Optional[str] = None
    overall_status: OverallStatus = OverallStatus.NOT_INITIALIZED
    is_running: bool = False
    is_paused: bool = False
    pause_reason: Optional[str] = None
    stop_reason: Optional[str] = None
    current_cycle: int = 0
    total_cycles: int = 0
    progress: float = 0.0
    current_step: Optional[StepInfo] = None
    next_step: Optional[StepInfo] = None
    next_cycle_scheduled: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: CycleState) -> "CycleSnapshot":
        return cls(
            name=state.name,
            overall_status=state.overall_status,
            is_running=state.is_running,
            is_paused=state.is_paused,
            pause_reason=state.pause_reason,
            stop_reason=state.stop_reason,
            current_cycle=state.current_cycle,
            total_cycles=state.total_cycles,
            progress=state.progress,
            current_step=state.current_step,
            next_step=state.next_step,
            next_cycle_scheduled=state.next_cycle_scheduled,
        )
