"""Tests for the periodic maintenance task."""

import asyncio

import pytest

from livequeue.core.job import LogStatus, ProcessingLogRecord
from livequeue.core.maintenance import MaintenanceTask
from livequeue.core.manager import QueueManager


@pytest.fixture
def manager(store, resolver) -> QueueManager:
    return QueueManager(store, resolver=resolver, max_size=10)


async def test_run_once_reports_actions(manager, store, clock):
    stuck_id = await manager.enqueue("chat", {})
    await store.try_claim(stuck_id)
    await store.append_log(
        ProcessingLogRecord(
            job_id=stuck_id, event_type="chat", status=LogStatus.FAILED, processed_at=clock()
        )
    )
    clock.advance(31 * 86400)

    task = MaintenanceTask(manager, interval=60)
    actions = await task.run_once()

    assert "Reset 1 stuck jobs" in actions
    assert "Cleared 1 old processing log records" in actions
    assert task.runs == 1


async def test_run_once_nothing_to_do(manager):
    task = MaintenanceTask(manager, interval=60)
    assert await task.run_once() == []


def test_interval_must_be_positive(manager):
    with pytest.raises(ValueError):
        MaintenanceTask(manager, interval=0)


@pytest.mark.timeout(5)
async def test_start_and_stop(manager):
    task = MaintenanceTask(manager, interval=30)

    handle = task.start()
    assert task.start() is handle
    async with asyncio.timeout(2):
        while task.runs == 0:
            await asyncio.sleep(0.01)
    assert task.is_running

    await task.stop()

    assert not task.is_running
    assert task.runs == 1


@pytest.mark.timeout(5)
async def test_failures_do_not_end_the_task(manager):
    calls = 0

    async def broken():
        nonlocal calls
        calls += 1
        raise ConnectionError("store down")

    manager.optimize_queue = broken
    task = MaintenanceTask(manager, interval=0.01)
    task.start()

    async with asyncio.timeout(2):
        while calls < 3:
            await asyncio.sleep(0.01)
    assert task.is_running

    await task.stop()
    assert task.failures >= 3
    assert task.runs == 0
