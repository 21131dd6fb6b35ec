"""Pick up a cycled workflow where the previous process left it."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Optional

from .engine import CycleEngine
from .persistence.models import (
    DONE_STATUSES,
    CycleState,
    JobExecutionRecord,
    JobStatus,
)
from .persistence.repository import ExecutionRepository

logger = logging.getLogger(__name__)

# statuses that close a step for the purpose of deciding a cycle is over
EXHAUSTED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.SKIPPED)


class RecoveryOutcome(str, Enum):
    FRESH_START = "fresh_start"
    NEXT_CYCLE = "next_cycle"
    RESUMED = "resumed"
    PAUSED = "paused"
    FINISHED = "finished"


class RecoveryController:
    """Restore a :class:`CycleEngine` from persisted state and set it going."""

    def __init__(
        self, engine: CycleEngine, repository: Optional[ExecutionRepository] = None
    ) -> None:
        self.engine = engine
        self.repository = repository or engine.repository

    async def _latest_records(self, state: CycleState) -> Dict[str, JobExecutionRecord]:
        records = await self.repository.find_jobs(
            workflow_name=state.name, cycle_number=state.current_cycle
        )
        # oldest attempt first, so later attempts win
        return {record.step_id: record for record in records}

    def _is_exhausted(self, records: Dict[str, JobExecutionRecord]) -> bool:
        return all(
            step.step_id in records
            and records[step.step_id].status in EXHAUSTED_STATUSES
            for step in self.engine.workflow
        )

    def resume_index(self, records: Dict[str, JobExecutionRecord]) -> int:
        """Index of the first step whose record is missing or not done."""
        for index, step in enumerate(self.engine.workflow):
            record = records.get(step.step_id)
            if record is None or record.status not in DONE_STATUSES:
                return index
        return len(self.engine.workflow)

    async def recover(self) -> RecoveryOutcome:
        engine = self.engine
        state = await self.repository.get_cycle_state(engine.name)
        if state is None or state.current_cycle < 1:
            logger.info(f"No persisted state for {engine.name}, starting fresh")
            await engine.start()
            return RecoveryOutcome.FRESH_START

        await engine.restore(state)
        if state.is_paused:
            logger.info(
                f"Cycle {engine.name} is paused ({state.pause_reason}), "
                "waiting for continue conditions"
            )
            return RecoveryOutcome.PAUSED

        max_cycles = engine.max_cycles
        if max_cycles is not None and state.total_cycles >= max_cycles:
            logger.info(f"Cycle {engine.name} already ran {state.total_cycles} cycles")
            return RecoveryOutcome.FINISHED

        try:
            records = await self._latest_records(state)
            if self._is_exhausted(records):
                logger.info(
                    f"Cycle {state.current_cycle} of {engine.name} is exhausted, "
                    "starting the next one"
                )
                await engine.start_next_cycle()
                return RecoveryOutcome.NEXT_CYCLE
            index = self.resume_index(records)
        except Exception as exc:
            logger.warning(
                f"Could not determine resume position of {engine.name}, "
                f"restarting cycle {state.current_cycle} from the first step: {exc}"
            )
            index = 0

        await engine.resume_from(index)
        return RecoveryOutcome.RESUMED
