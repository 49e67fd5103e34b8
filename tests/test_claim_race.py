"""Concurrency tests for the conditional claim.

Architecture invariant: at most one processor ever owns a job, and the
store's conditional claim is the only thing that guarantees it.
"""

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from livequeue.core.job import Job, JobStatus
from livequeue.stores.base import claim_next_job
from livequeue.stores.memory import InMemoryJobStore


class RacingStore(InMemoryJobStore):
    """Store where a rival processor steals the first ``steals`` candidates.

    The steal happens between ``find_next_eligible`` and ``try_claim``,
    which is exactly the window the conditional claim protects.
    """

    def __init__(self, steals: int) -> None:
        super().__init__()
        self.steals = steals
        self.stolen: list[str] = []

    async def try_claim(self, job_id: str) -> Job | None:
        if self.steals > 0:
            self.steals -= 1
            rival = await super().try_claim(job_id)
            if rival is not None:
                self.stolen.append(job_id)
        return await super().try_claim(job_id)


class TestLostRace:
    async def test_lost_race_retries_next_candidate(self):
        store = RacingStore(steals=1)
        first = await store.insert(Job(event_type="gift", priority=100))
        second = await store.insert(Job(event_type="chat", priority=10))

        claimed = await claim_next_job(store)

        assert store.stolen == [first.id]
        assert claimed.id == second.id

    async def test_all_candidates_stolen_returns_none(self):
        store = RacingStore(steals=5)
        await store.insert(Job(event_type="chat"))
        await store.insert(Job(event_type="like"))

        assert await claim_next_job(store) is None
        assert len(store.stolen) == 2

    async def test_race_budget_bounds_retries(self):
        store = RacingStore(steals=10)
        for _ in range(5):
            await store.insert(Job(event_type="chat"))

        assert await claim_next_job(store, max_races=2) is None
        assert len(store.stolen) == 2


async def _claim_all(store: InMemoryJobStore, claimers: int) -> list[str]:
    claimed: list[str] = []

    async def claimer() -> None:
        while True:
            job = await claim_next_job(store)
            if job is None:
                return
            claimed.append(job.id)
            await asyncio.sleep(0)

    await asyncio.gather(*(claimer() for _ in range(claimers)))
    return claimed


@pytest.mark.timeout(10)
@given(claimers=st.integers(min_value=2, max_value=8), jobs=st.integers(min_value=0, max_value=30))
@settings(deadline=None)
def test_at_most_one_owner(claimers: int, jobs: int):
    """N concurrent claimers against M pending jobs claim each job exactly once."""

    async def scenario() -> None:
        store = InMemoryJobStore()
        ids = {(await store.insert(Job(event_type="chat"))).id for _ in range(jobs)}

        claimed = await _claim_all(store, claimers)

        assert len(claimed) == jobs
        assert set(claimed) == ids
        statuses = await store.count_by_status()
        assert statuses[JobStatus.PROCESSING.value] == jobs

    asyncio.run(scenario())
