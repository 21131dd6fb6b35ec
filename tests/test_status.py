import asyncio

import pytest

from cyclesync.persistence import InMemoryExecutionRepository
from cyclesync.persistence.models import CycleState, OverallStatus
from cyclesync.status import StatusPublisher, read_status


def _state(progress: float) -> CycleState:
    return CycleState(
        name="Daily Sync",
        current_cycle=1,
        progress=progress,
        is_running=True,
        overall_status=OverallStatus.RUNNING,
    )


@pytest.mark.asyncio
async def test_publisher_coalesces_updates_inside_throttle_window():
    received = []
    publisher = StatusPublisher(throttle=0.05, sinks=[received.append])

    await publisher.publish(_state(10))
    await publisher.publish(_state(20))
    await publisher.publish(_state(30))

    assert [s.progress for s in received] == [10]
    assert publisher.latest.progress == 30

    await asyncio.sleep(0.1)
    assert [s.progress for s in received] == [10, 30]


@pytest.mark.asyncio
async def test_forced_publish_and_flush_deliver_immediately():
    received = []

    async def sink(snapshot):
        received.append(snapshot.progress)

    publisher = StatusPublisher(throttle=60, sinks=[sink])
    await publisher.publish(_state(10))
    await publisher.publish(_state(20), force=True)
    await publisher.publish(_state(40))
    await publisher.flush()

    assert received == [10, 20, 40]


@pytest.mark.asyncio
async def test_failing_sink_does_not_break_other_sinks():
    received = []

    def broken(snapshot):
        raise RuntimeError("ui offline")

    publisher = StatusPublisher(throttle=0, sinks=[broken, received.append])
    await publisher.publish(_state(50))

    assert [s.progress for s in received] == [50]


@pytest.mark.asyncio
async def test_read_status_defaults_to_not_initialized():
    repo = InMemoryExecutionRepository()

    snapshot = await read_status(repo)

    assert snapshot.overall_status == OverallStatus.NOT_INITIALIZED
    assert snapshot.is_running is False
    assert snapshot.current_cycle == 0
    assert snapshot.progress == 0.0
    assert (await read_status(repo, "Daily Sync")).name == "Daily Sync"


@pytest.mark.asyncio
async def test_read_status_returns_latest_persisted_state():
    repo = InMemoryExecutionRepository()
    await repo.save_cycle_state("Weekly", {"current_cycle": 2})
    await repo.save_cycle_state(
        "Daily Sync",
        {
            "current_cycle": 4,
            "is_paused": True,
            "pause_reason": "quota",
            "overall_status": OverallStatus.PAUSED,
        },
    )

    snapshot = await read_status(repo)
    assert snapshot.name == "Daily Sync"
    assert snapshot.is_paused is True
    assert snapshot.pause_reason == "quota"

    weekly = await read_status(repo, "Weekly")
    assert weekly.current_cycle == 2
