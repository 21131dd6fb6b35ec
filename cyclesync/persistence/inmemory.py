"""In-memory implementation of the execution repository."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from .models import CycleState, JobExecutionRecord, JobLogEntry, JobStatus, utcnow
from .repository import ExecutionRepository, check_job_fields


class InMemoryExecutionRepository(ExecutionRepository):
    """Store cycle state and job records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, JobExecutionRecord] = {}
        self._states: Dict[str, CycleState] = {}

    # ------------------------------------------------------------------
    # Job execution records
    async def create_job(self, record: JobExecutionRecord) -> JobExecutionRecord:
        if record.id in self._jobs:
            raise ValueError(f"Job record {record.id} already exists")
        self._jobs[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def get_job(self, record_id: str) -> JobExecutionRecord | None:
        record = self._jobs.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def find_job(
        self, workflow_name: str, cycle_number: int, step_id: str
    ) -> JobExecutionRecord | None:
        # dicts keep insertion order, so the last match is the latest attempt
        latest = None
        for record in self._jobs.values():
            if (
                record.workflow_name == workflow_name
                and record.cycle_number == cycle_number
                and record.step_id == step_id
            ):
                latest = record
        return latest.model_copy(deep=True) if latest else None

    async def find_jobs(
        self,
        workflow_name: Optional[str] = None,
        cycle_number: Optional[int] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
    ) -> list[JobExecutionRecord]:
        wanted = {JobStatus(s) for s in statuses} if statuses is not None else None
        return [
            record.model_copy(deep=True)
            for record in self._jobs.values()
            if (workflow_name is None or record.workflow_name == workflow_name)
            and (cycle_number is None or record.cycle_number == cycle_number)
            and (wanted is None or record.status in wanted)
        ]

    async def update_job(
        self, record_id: str, **fields: Any
    ) -> JobExecutionRecord | None:
        check_job_fields(fields)
        record = self._jobs.get(record_id)
        if record is None:
            return None
        updated = JobExecutionRecord.model_validate({**record.model_dump(), **fields})
        self._jobs[record_id] = updated
        return updated.model_copy(deep=True)

    async def append_job_log(
        self, record_id: str, entry: JobLogEntry, limit: int
    ) -> None:
        record = self._jobs.get(record_id)
        if record is None:
            return
        record.logs = [*record.logs, entry][-limit:]

    # ------------------------------------------------------------------
    # Cycle state
    async def get_cycle_state(self, name: str) -> CycleState | None:
        state = self._states.get(name)
        return state.model_copy(deep=True) if state else None

    async def save_cycle_state(self, name: str, fields: dict[str, Any]) -> CycleState:
        current = self._states.get(name)
        base = current.model_dump() if current else {}
        state = CycleState.model_validate(
            {**base, "last_updated": utcnow(), **fields, "name": name}
        )
        self._states[name] = state
        return state.model_copy(deep=True)

    async def latest_cycle_state(self) -> CycleState | None:
        if not self._states:
            return None
        latest = max(self._states.values(), key=lambda s: s.last_updated)
        return latest.model_copy(deep=True)

    async def list_cycle_states(self) -> list[CycleState]:
        return [state.model_copy(deep=True) for state in self._states.values()]
