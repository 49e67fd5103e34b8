"""Tests for AdmissionController overflow and eviction policy."""

import pytest

from livequeue.core.admission import AdmissionController
from livequeue.core.job import JobStatus


async def fill(store, make_job, clock, count: int, event_type: str = "like", priority: int = 5):
    """Insert ``count`` pending jobs with strictly increasing created_at."""
    jobs = []
    for _ in range(count):
        job = await store.insert(make_job(event_type, priority=priority))
        jobs.append(job)
        clock.advance(1)
    return jobs


class TestUnderCapacity:
    async def test_accepts_everything_under_limit(self, store):
        admission = AdmissionController(store, max_size=10)
        decision = await admission.admit("like", 0)
        assert decision.accepted
        assert decision.evicted == 0

    def test_rejects_invalid_configuration(self, store):
        with pytest.raises(ValueError):
            AdmissionController(store, max_size=0)
        with pytest.raises(ValueError):
            AdmissionController(store, gift_eviction_fraction=0)


class TestGiftProtection:
    """Gifts always get in."""

    async def test_gift_evicts_configured_fraction(self, store, make_job, clock):
        admission = AdmissionController(store, max_size=20, gift_eviction_fraction=0.1)
        await fill(store, make_job, clock, 20)

        decision = await admission.admit("gift", 100)

        assert decision.accepted
        assert decision.evicted == 2
        assert await store.count_active() == 18

    async def test_eviction_count_rounds_up(self, store):
        admission = AdmissionController(store, max_size=15, gift_eviction_fraction=0.1)
        assert admission.gift_eviction_count == 2

    async def test_gift_accepted_when_nothing_evictable(self, store, make_job, clock):
        admission = AdmissionController(store, max_size=3)
        await fill(store, make_job, clock, 3, event_type="gift", priority=100)

        decision = await admission.admit("gift", 100)

        assert decision.accepted
        assert decision.evicted == 0
        assert await store.count_active() == 3

    async def test_evicts_oldest_first(self, store, make_job, clock):
        admission = AdmissionController(store, max_size=10, gift_eviction_fraction=0.2)
        jobs = await fill(store, make_job, clock, 10)

        await admission.admit("gift", 100)

        assert await store.get(jobs[0].id) is None
        assert await store.get(jobs[1].id) is None
        assert await store.get(jobs[2].id) is not None

    async def test_never_evicts_gifts_or_reserved_priority(self, store, make_job, clock):
        admission = AdmissionController(store, max_size=4, gift_eviction_fraction=1.0)
        gift = await store.insert(make_job("gift", priority=5))
        clock.advance(1)
        vip = await store.insert(make_job("follow", priority=100))
        clock.advance(1)
        await fill(store, make_job, clock, 2)

        decision = await admission.admit("donation", 100)

        assert decision.evicted == 2
        assert await store.get(gift.id) is not None
        assert await store.get(vip.id) is not None

    async def test_never_evicts_processing_jobs(self, store, make_job, clock):
        admission = AdmissionController(store, max_size=2)
        first, _ = await fill(store, make_job, clock, 2)
        claimed = await store.try_claim(first.id)
        assert claimed.status is JobStatus.PROCESSING

        await admission.admit("gift", 100)

        assert (await store.get(first.id)).status is JobStatus.PROCESSING


class TestNonGiftOverflow:
    async def test_low_priority_rejected(self, store, make_job, clock):
        admission = AdmissionController(store, max_size=5)
        await fill(store, make_job, clock, 5)

        decision = await admission.admit("chat", 10)

        assert not decision.accepted
        assert decision.current_size == 5
        assert "full" in decision.reason
        assert await store.count_active() == 5

    async def test_high_priority_evicts_exactly_one(self, store, make_job, clock):
        admission = AdmissionController(store, max_size=5)
        jobs = await fill(store, make_job, clock, 5)

        decision = await admission.admit("follow", 50)

        assert decision.accepted
        assert decision.evicted == 1
        assert await store.get(jobs[0].id) is None
        assert await store.count_active() == 4

    async def test_custom_gift_event_types(self, store, make_job, clock):
        admission = AdmissionController(store, max_size=2, gift_event_types={"superchat"})
        await fill(store, make_job, clock, 2)

        assert not (await admission.admit("gift", 0)).accepted
        assert (await admission.admit("superchat", 0)).accepted
