"""Repository abstraction for cycle and job execution persistence."""

from __future__ import annotations

from typing import Any, Iterable, Optional, Protocol

from .models import CycleState, JobExecutionRecord, JobLogEntry, JobStatus

# Fields of a job record that may be changed after creation
UPDATABLE_JOB_FIELDS = frozenset(
    name for name in JobExecutionRecord.model_fields if name != "id"
)


def check_job_fields(fields: dict[str, Any]) -> None:
    """Reject partial updates touching unknown or immutable fields."""
    unknown = set(fields) - UPDATABLE_JOB_FIELDS
    if unknown:
        raise ValueError(f"Unknown job record fields: {sorted(unknown)}")


class ExecutionRepository(Protocol):
    """Protocol for cycle state and job execution persistence backends.

    All mutations are partial: only the named fields are written, so the engine
    loop and a job's progress callback can update the same record without
    overwriting each other.
    """

    async def create_job(self, record: JobExecutionRecord) -> JobExecutionRecord:
        """Persist a new job execution record."""

    async def get_job(self, record_id: str) -> JobExecutionRecord | None:
        """Return the record with ``record_id``."""

    async def find_job(
        self, workflow_name: str, cycle_number: int, step_id: str
    ) -> JobExecutionRecord | None:
        """Return the most recent attempt for the composite key."""

    async def find_jobs(
        self,
        workflow_name: Optional[str] = None,
        cycle_number: Optional[int] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
    ) -> list[JobExecutionRecord]:
        """Return matching records, oldest attempt first."""

    async def update_job(
        self, record_id: str, **fields: Any
    ) -> JobExecutionRecord | None:
        """Set the given fields on a record and return the updated record."""

    async def append_job_log(
        self, record_id: str, entry: JobLogEntry, limit: int
    ) -> None:
        """Append a log entry, keeping at most ``limit`` most recent entries."""

    async def get_cycle_state(self, name: str) -> CycleState | None:
        """Return the persisted state of the workflow ``name``."""

    async def save_cycle_state(self, name: str, fields: dict[str, Any]) -> CycleState:
        """Upsert the given state fields for workflow ``name``."""

    async def latest_cycle_state(self) -> CycleState | None:
        """Return the most recently updated cycle state."""

    async def list_cycle_states(self) -> list[CycleState]:
        """Return all persisted cycle states."""
