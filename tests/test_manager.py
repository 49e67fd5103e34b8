"""Tests for QueueManager enqueue, introspection and maintenance."""

import asyncio

import pytest
from pydantic import ValidationError

from livequeue.core.consumer import HandlerSet
from livequeue.core.errors import QueueFullError
from livequeue.core.job import JobStatus, LogStatus, ProcessingLogRecord
from livequeue.core.manager import HealthState, QueueManager
from livequeue.core.priority import PriorityResolver
from livequeue.core.processor import JobProcessor, ProcessorState


@pytest.fixture
def manager(store, resolver) -> QueueManager:
    return QueueManager(store, resolver=resolver, max_size=10)


async def add_logs(store, clock, successes: int, failures: int) -> None:
    for status, count in ((LogStatus.SUCCESS, successes), (LogStatus.FAILED, failures)):
        for _ in range(count):
            await store.append_log(
                ProcessingLogRecord(
                    job_id="00000000-0000-4000-8000-000000000000",
                    event_type="chat",
                    status=status,
                    processed_at=clock(),
                )
            )


class TestEnqueue:
    async def test_enqueue_resolves_priority(self, manager, store):
        job_id = await manager.enqueue("gift", {"giftName": "Rose"})
        job = await store.get(job_id)

        assert job.priority == 100
        assert job.status is JobStatus.PENDING
        assert job.payload == {"giftName": "Rose"}
        assert job.max_attempts == 3

    async def test_enqueue_with_consumer_profile(self, manager, store):
        manager.register_priority_profile("game", {"chat": 40})
        job = await store.get(await manager.enqueue("chat", {}, consumer_id="game"))
        assert job.priority == 40
        assert job.consumer_id == "game"

    async def test_enqueue_custom_max_attempts(self, manager, store):
        job = await store.get(await manager.enqueue("chat", {}, max_attempts=7))
        assert job.max_attempts == 7

    async def test_defaults_to_active_consumer(self, manager, store):
        processor = JobProcessor(store, HandlerSet(consumer_id="game"))
        manager.register_processor(processor)
        manager.register_priority_profile("game", {"like": 45})

        job = await store.get(await manager.enqueue("like", {}))

        assert job.consumer_id == "game"
        assert job.priority == 45

    async def test_queue_full_rejects_low_priority(self, manager, store):
        for _ in range(10):
            await manager.enqueue("like", {})

        with pytest.raises(QueueFullError) as exc_info:
            await manager.enqueue("chat", {"comment": "hi"})

        assert exc_info.value.current_size == 10
        assert exc_info.value.max_size == 10
        assert exc_info.value.priority == 10
        assert await store.count_active() == 10

    async def test_gift_protection_under_overflow(self, store, resolver):
        manager = QueueManager(store, resolver=resolver, max_size=20)
        for _ in range(20):
            await manager.enqueue("like", {})

        job_id = await manager.enqueue("gift", {"giftName": "Lion"})

        assert await store.get(job_id) is not None
        # ceil(20 * 10%) evicted, then the gift inserted
        assert await store.count_active() == 19

    async def test_invalid_event_on_full_queue_evicts_nothing(self, manager, store):
        for _ in range(10):
            await manager.enqueue("like", {})

        with pytest.raises(ValidationError):
            await manager.enqueue("gift", {"bad": object()})
        with pytest.raises(ValidationError):
            await manager.enqueue("", {})

        assert await store.count_active() == 10

    async def test_explicit_zero_max_attempts_rejected(self, manager, store):
        with pytest.raises(ValidationError):
            await manager.enqueue("chat", {}, max_attempts=0)
        assert await store.count_active() == 0

    async def test_concurrent_enqueues_respect_capacity(self, manager, store):
        for _ in range(9):
            await manager.enqueue("like", {})

        results = await asyncio.gather(
            *(manager.enqueue("chat", {}) for _ in range(5)), return_exceptions=True
        )

        assert sum(isinstance(r, str) for r in results) == 1
        assert all(isinstance(r, (str, QueueFullError)) for r in results)
        assert await store.count_active() == 10

    async def test_enqueue_wakes_idle_processor(self, manager, store):
        done = asyncio.Event()
        processor = JobProcessor(
            store, HandlerSet(handlers={"chat": lambda p: done.set()}), idle_timeout=30
        )
        manager.register_processor(processor)
        processor.start()

        async with asyncio.timeout(5):
            while processor.state is not ProcessorState.IDLE:
                await asyncio.sleep(0.005)
        await manager.enqueue("chat", {})

        await asyncio.wait_for(done.wait(), timeout=2)
        await processor.shutdown()
        manager.unregister_processor(processor)
        assert manager.notify() == 0


class TestEndToEnd:
    @pytest.mark.timeout(5)
    async def test_gift_processed_before_chat(self, store, resolver):
        manager = QueueManager(store, resolver=resolver, max_size=10)
        processor = JobProcessor(
            store,
            HandlerSet(handlers={"gift": lambda p: None, "chat": lambda p: None}),
            idle_timeout=0.05,
        )
        manager.register_processor(processor)

        gift_id = await manager.enqueue("gift", {"giftName": "Rose"})
        chat_id = await manager.enqueue("chat", {"comment": "hello"})

        processor.start()
        async with asyncio.timeout(5):
            while await store.count_active() > 0:
                await asyncio.sleep(0.005)
        await processor.shutdown()

        logs = list(reversed(await manager.recent_logs()))
        assert [r.job_id for r in logs] == [gift_id, chat_id]
        assert all(r.status is LogStatus.SUCCESS for r in logs)
        assert (await store.get(gift_id)).status is JobStatus.COMPLETED
        assert (await store.get(chat_id)).status is JobStatus.COMPLETED


class TestIntrospection:
    async def test_queue_status(self, manager):
        for _ in range(3):
            await manager.enqueue("chat", {})
        await manager.enqueue("gift", {})

        status = await manager.get_queue_status()

        assert status.current_size == 4
        assert status.max_size == 10
        assert status.utilization_percent == 40.0
        assert status.status_counts["pending"] == 4
        assert status.event_type_counts == {"chat": 3, "gift": 1}

    async def test_healthy_when_idle(self, manager):
        report = await manager.get_health_status()
        assert report.status is HealthState.HEALTHY
        assert report.issues == []
        assert report.success_rate == 100.0

    async def test_warning_on_utilization(self, store, resolver):
        manager = QueueManager(store, resolver=resolver, max_size=100)
        for _ in range(91):
            await manager.enqueue("like", {})

        report = await manager.get_health_status()

        assert report.status is HealthState.WARNING
        assert any("utilization" in issue for issue in report.issues)

    async def test_critical_on_utilization(self, store, resolver):
        manager = QueueManager(store, resolver=resolver, max_size=100)
        for _ in range(96):
            await manager.enqueue("like", {})
        assert (await manager.get_health_status()).status is HealthState.CRITICAL

    @pytest.mark.parametrize(
        "successes,failures,expected",
        [
            (96, 4, HealthState.HEALTHY),
            (94, 6, HealthState.WARNING),
            (89, 11, HealthState.CRITICAL),
        ],
    )
    async def test_success_rate_thresholds(
        self, manager, store, clock, successes, failures, expected
    ):
        await add_logs(store, clock, successes, failures)
        report = await manager.get_health_status()
        assert report.status is expected
        assert report.success_rate == successes

    async def test_health_window_excludes_old_logs(self, manager, store, clock):
        await add_logs(store, clock, 0, 10)
        clock.advance(7200)
        assert (await manager.get_health_status()).status is HealthState.HEALTHY

    async def test_store_error_reported(self, manager, store):
        async def broken():
            raise ConnectionError("store down")

        store.count_active = broken
        report = await manager.get_health_status()

        assert report.status is HealthState.ERROR
        assert "store down" in report.error

    async def test_processing_stats(self, manager, store, clock):
        await add_logs(store, clock, 3, 1)
        stats = await manager.get_processing_stats(hours=24)
        assert stats.total == 4
        assert stats.success_rate == 75.0

    async def test_event_type_distribution(self, manager):
        await manager.enqueue("gift", {})
        await manager.enqueue("raid", {})

        distribution = await manager.get_event_type_distribution()

        assert distribution["gift"].count == 1
        assert distribution["gift"].priority == 100
        assert distribution["gift"].is_gift_event
        assert distribution["chat"].count == 0
        assert not distribution["chat"].is_gift_event
        assert distribution["raid"].count == 1
        assert distribution["raid"].priority == 0


class TestMaintenanceOperations:
    async def test_reset_stuck_jobs_idempotent(self, manager, store, clock):
        job_id = await manager.enqueue("chat", {})
        await store.try_claim(job_id)
        clock.advance(11 * 60)

        assert await manager.reset_stuck_jobs(timeout_minutes=10) == 1
        assert await manager.reset_stuck_jobs(timeout_minutes=10) == 0
        assert (await store.find_next_eligible()).id == job_id

    async def test_clear_queue(self, manager, store):
        await manager.enqueue("chat", {})
        await manager.enqueue("gift", {})
        assert await manager.clear_queue() == 2
        assert await store.count_active() == 0

    async def test_clear_completed_and_failed(self, manager, store, clock):
        done_id = await manager.enqueue("chat", {})
        await store.try_claim(done_id)
        await store.mark_completed(done_id)
        failed_id = await manager.enqueue("like", {}, max_attempts=1)
        await store.try_claim(failed_id)
        await store.mark_failed(failed_id, 0)

        clock.advance(25 * 3600)
        assert await manager.clear_completed() == 1
        assert await manager.clear_failed() == 0
        clock.advance(168 * 3600)
        assert await manager.clear_failed() == 1

    async def test_clear_logs(self, manager, store, clock):
        await add_logs(store, clock, 2, 0)
        clock.advance(31 * 86400)
        await add_logs(store, clock, 1, 0)

        assert await manager.clear_logs() == 2
        assert len(await manager.recent_logs()) == 1

    async def test_optimize_queue(self, store, resolver, clock):
        manager = QueueManager(store, resolver=resolver, max_size=10)
        stuck_id = await manager.enqueue("follow", {})
        await store.try_claim(stuck_id)
        for _ in range(9):
            await manager.enqueue("like", {})
        clock.advance(11 * 60)

        actions = await manager.optimize_queue()

        assert "Reset 1 stuck jobs" in actions
        assert "Removed 1 low-priority events to prevent overflow" in actions
        assert await store.count_active() == 9

    async def test_from_settings(self, store):
        from livequeue.core.config import QueueSettings

        settings = QueueSettings(max_size=50, max_attempts=5, gift_event_types=["superchat"])
        manager = QueueManager.from_settings(store, settings)

        assert manager.max_size == 50
        assert manager.default_max_attempts == 5
        assert manager.resolver.is_gift_event("superchat")
        assert manager.admission.is_gift_event("superchat")

    def test_resolver_shared_with_admission(self, store):
        resolver = PriorityResolver(gift_event_types={"superchat"})
        manager = QueueManager(store, resolver=resolver)
        assert manager.admission.gift_event_types == frozenset({"superchat"})
