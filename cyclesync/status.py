"""Throttled publication of cycle status snapshots."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Iterable, List, Optional

from .constants import DEFAULT_STATUS_THROTTLE
from .persistence.models import CycleSnapshot, CycleState
from .persistence.repository import ExecutionRepository

logger = logging.getLogger(__name__)

StatusSink = Callable[[CycleSnapshot], Any]


class StatusPublisher:
    """Push cycle snapshots to sinks, at most once per ``throttle`` seconds.

    Updates arriving inside the throttle window are coalesced: the newest
    snapshot is delivered once the window closes, so sinks always end up
    with the most recent state.
    """

    def __init__(
        self,
        throttle: float = DEFAULT_STATUS_THROTTLE,
        sinks: Iterable[StatusSink] = (),
    ) -> None:
        self.throttle = throttle
        self._sinks: List[StatusSink] = list(sinks)
        self._latest: Optional[CycleSnapshot] = None
        self._last_push: Optional[float] = None
        self._pending: Optional[asyncio.Task] = None

    @property
    def latest(self) -> Optional[CycleSnapshot]:
        return self._latest

    def add_sink(self, sink: StatusSink) -> None:
        self._sinks.append(sink)

    async def _push(self, snapshot: CycleSnapshot) -> None:
        self._last_push = time.monotonic()
        for sink in self._sinks:
            try:
                value = sink(snapshot)
                if inspect.isawaitable(value):
                    await value
            except Exception as exc:
                logger.warning(f"Status sink {sink!r} failed: {exc}")

    async def _flush_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._pending = None
        if self._latest is not None:
            await self._push(self._latest)

    async def publish(self, state: CycleState, force: bool = False) -> None:
        self._latest = CycleSnapshot.from_state(state)
        now = time.monotonic()
        elapsed = None if self._last_push is None else now - self._last_push
        if force or elapsed is None or elapsed >= self.throttle:
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None
            await self._push(self._latest)
        elif self._pending is None:
            self._pending = asyncio.create_task(
                self._flush_later(self.throttle - elapsed)
            )

    async def flush(self) -> None:
        """Deliver the newest snapshot now, dropping any delayed push."""
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self._latest is not None:
            await self._push(self._latest)


async def read_status(
    repository: ExecutionRepository, name: Optional[str] = None
) -> CycleSnapshot:
    """Return the persisted snapshot of ``name`` (or the latest workflow).

    When nothing has been persisted yet the not-initialized default is
    returned instead of raising.
    """
    if name is not None:
        state = await repository.get_cycle_state(name)
    else:
        state = await repository.latest_cycle_state()
    if state is None:
        return CycleSnapshot(name=name)
    return CycleSnapshot.from_state(state)
