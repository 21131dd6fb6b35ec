"""Periodic reclamation of executions stuck in ``running``."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .constants import DEFAULT_JANITOR_CEILING, DEFAULT_JANITOR_INTERVAL
from .persistence.models import ACTIVE_STATUSES, JobExecutionRecord, JobStatus, utcnow
from .persistence.repository import ExecutionRepository

logger = logging.getLogger(__name__)


class StuckExecutionJanitor:
    """Fail any record that stayed running longer than ``ceiling`` seconds.

    Independent of the staleness check done when a step is resumed: this one
    sweeps every workflow and every cycle on a fixed interval.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        ceiling: float = DEFAULT_JANITOR_CEILING,
        interval: float = DEFAULT_JANITOR_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.ceiling = ceiling
        self.interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> List[JobExecutionRecord]:
        """Mark stuck records failed and return them."""
        threshold = self._clock() - timedelta(seconds=self.ceiling)
        candidates = await self.repository.find_jobs(statuses=ACTIVE_STATUSES)
        reclaimed: List[JobExecutionRecord] = []
        for record in candidates:
            started = record.started_at or record.scheduled_at
            if started >= threshold:
                continue
            try:
                updated = await self.repository.update_job(
                    record.id,
                    status=JobStatus.FAILED,
                    error=(
                        "Job stuck in running status for more than "
                        f"{self.ceiling / 3600:g} hours"
                    ),
                    ended_at=self._clock(),
                )
            except Exception as exc:
                logger.error(f"Failed to mark stuck job {record.name} as failed: {exc}")
                continue
            reclaimed.append(updated or record)

        if reclaimed:
            logger.warning(f"Cleaned up {len(reclaimed)} stuck jobs")
        else:
            logger.debug("Job maintenance completed: no stuck jobs")
        return reclaimed

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception as exc:
                logger.error(f"Stuck job sweep failed: {exc}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.is_running:
            logger.debug("Job maintenance already running")
            return
        logger.info(f"Starting job maintenance (every {self.interval / 3600:g} hours)")
        self._task = asyncio.create_task(self._run(), name="stuck-execution-janitor")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Job maintenance stopped")
