"""Wiring of the engine, recovery, quota tracking and maintenance."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from .config import CycleSyncConfig, load_config
from .contracts import CancellableQueue, WorkflowDefinition
from .engine import CycleEngine
from .janitor import StuckExecutionJanitor
from .persistence import get_repository
from .persistence.repository import ExecutionRepository
from .quota import QuotaLimitManager
from .recovery import RecoveryController, RecoveryOutcome
from .status import StatusPublisher, StatusSink

logger = logging.getLogger(__name__)


class CycleSyncApp:
    """Run one workflow with crash recovery and quota based pausing."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        config: Optional[CycleSyncConfig] = None,
        repository: Optional[ExecutionRepository] = None,
        api_queue: Optional[CancellableQueue] = None,
        sinks: Iterable[StatusSink] = (),
        max_cycles: Optional[int] = None,
    ) -> None:
        self.config = config or load_config()
        settings = self.config.orchestrator
        self.repository = repository or get_repository(
            self.config.database_url, self.config
        )
        self.publisher = StatusPublisher(settings.status_throttle, sinks)
        self.quota = QuotaLimitManager()
        self.engine = CycleEngine.from_definition(
            definition,
            self.repository,
            settings=settings,
            publisher=self.publisher,
            api_queue=api_queue,
            max_cycles=max_cycles if max_cycles is not None else definition.max_cycles,
        )
        self.engine.pause_on(self.quota.check_limit, "quota_limit_reached")
        self.engine.continue_on(self.quota.check_reset, "quota_reset")
        self.janitor = StuckExecutionJanitor(
            self.repository,
            ceiling=settings.janitor_ceiling,
            interval=settings.janitor_interval,
        )
        self.recovery = RecoveryController(self.engine, self.repository)
        self._status_task: Optional[asyncio.Task] = None

    async def _log_status(self) -> None:
        interval = self.config.orchestrator.status_log_interval
        while True:
            await asyncio.sleep(interval)
            snapshot = self.engine.status()
            step = snapshot.current_step.name if snapshot.current_step else "-"
            logger.info(
                f"{snapshot.name}: {snapshot.overall_status.value}, "
                f"cycle {snapshot.current_cycle}, {snapshot.progress:.1f}%, step {step}"
            )

    async def start(self) -> RecoveryOutcome:
        self.janitor.start()
        persisted = await self.repository.get_cycle_state(self.engine.name)
        if persisted is not None and persisted.is_paused and not persisted.manual_pause:
            self.quota.restore(persisted.next_cycle_scheduled)
        outcome = await self.recovery.recover()
        logger.info(f"Workflow {self.engine.name} recovered: {outcome.value}")
        if self._status_task is None:
            self._status_task = asyncio.create_task(self._log_status())
        return outcome

    async def shutdown(self) -> None:
        if self._status_task is not None:
            self._status_task.cancel()
            self._status_task = None
        await self.janitor.stop()
        if self.engine.state is not None and (
            self.engine.state.is_running or self.engine.is_driving
        ):
            await self.engine.stop("Shutdown")
        await self.engine.close()
        await self.publisher.flush()

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Run until the engine finishes or ``lifespan`` seconds elapse."""
        await self.start()
        try:
            if lifespan is None:
                await self.engine.wait()
            else:
                try:
                    await asyncio.wait_for(self.engine.wait(), timeout=lifespan)
                except asyncio.TimeoutError:
                    logger.info(f"Lifespan of {lifespan}s reached, shutting down")
        finally:
            await self.shutdown()
