"""JobStore protocol and the claim protocol built on it.

ALL persistence lives in stores. The manager and processors never hold
jobs outside of the snapshot they are currently working on; the store is
the single source of truth.

The only concurrency primitive the engine relies on is ``try_claim``: a
conditional pending -> processing transition that succeeds for exactly
one caller.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from livequeue.core.job import Job, JobStatus, ProcessingLogRecord
from livequeue.core.logging import get_logger

# Lost races tolerated by a single claim_next_job call
DEFAULT_MAX_CLAIM_RACES = 100

_log = get_logger("livequeue.store")


class JobStore(Protocol):
    """Protocol defining the interface for durable job stores.

    Stores are responsible for:
    - Persisting jobs and their state transitions
    - Selecting the next eligible job (highest priority, earliest available_at)
    - Atomically claiming a job for exactly one processor
    - Keeping the append-only processing log
    """

    def now(self) -> datetime:
        """Current time on the clock the store compares ``available_at`` against."""
        ...

    async def insert(self, job: Job) -> Job:
        """Persist a new job and return the stored snapshot."""
        ...

    async def get(self, job_id: str) -> Job | None:
        ...

    async def find_next_eligible(self) -> Job | None:
        """Return the best claim candidate without claiming it.

        Candidates are pending, have ``available_at <= now`` and
        ``attempts < max_attempts``; ordering is priority descending, then
        ``available_at`` ascending.
        """
        ...

    async def try_claim(self, job_id: str) -> Job | None:
        """Flip a job to processing and increment attempts, only if still eligible.

        Returns:
            The claimed snapshot, or None if another processor won the race.
        """
        ...

    async def release(self, job_id: str) -> Job | None:
        """Return a processing job to pending without touching attempts.

        A job that has already used all of its attempts is retired as failed
        instead, since it could never be claimed again.
        """
        ...

    async def mark_completed(self, job_id: str, skip_reason: str | None = None) -> Job | None:
        """Retire a job as completed. Idempotent."""
        ...

    async def mark_failed(
        self, job_id: str, retry_delay: float, terminal: bool = False
    ) -> Job | None:
        """Record a failed attempt.

        Retires the job as failed when ``terminal`` or when attempts are
        exhausted, otherwise returns it to pending no earlier than
        ``now + retry_delay``.
        """
        ...

    async def count_active(self) -> int:
        """Number of pending plus processing jobs."""
        ...

    async def count_by_status(self) -> dict[str, int]:
        ...

    async def count_by_event_type(self) -> dict[str, int]:
        """Active job counts keyed by event type."""
        ...

    async def evict_oldest(
        self,
        limit: int,
        protected_event_types: Iterable[str],
        below_priority: int,
    ) -> int:
        """Delete up to ``limit`` of the oldest pending, unprotected, low-priority jobs."""
        ...

    async def delete_all(self) -> int:
        ...

    async def delete_terminal(self, status: JobStatus, older_than: datetime) -> int:
        """Delete jobs in a terminal ``status`` last updated before ``older_than``."""
        ...

    async def reset_stuck(self, older_than: datetime) -> int:
        """Reset processing jobs last updated before ``older_than``."""
        ...

    async def append_log(self, record: ProcessingLogRecord) -> None:
        ...

    async def recent_logs(
        self, limit: int = 100, event_type: str | None = None
    ) -> list[ProcessingLogRecord]:
        """Most recent log records first."""
        ...

    async def logs_since(self, since: datetime) -> list[ProcessingLogRecord]:
        ...

    async def delete_logs(self, older_than: datetime) -> int:
        ...

    async def close(self) -> None:
        ...


async def claim_next_job(
    store: JobStore, max_races: int = DEFAULT_MAX_CLAIM_RACES
) -> Job | None:
    """Claim the next eligible job, retrying transparently on lost races.

    A lost race means another processor claimed the candidate, so the next
    query observes a different job; the retry budget only guards against
    pathological contention.

    Returns:
        The claimed job, or None if nothing is eligible.
    """
    for _ in range(max_races):
        candidate = await store.find_next_eligible()
        if candidate is None:
            return None

        claimed = await store.try_claim(candidate.id)
        if claimed is not None:
            return claimed

        _log.debug(
            f"Lost claim race for job {candidate.id}, retrying",
            extra={"job_id": candidate.id, "event_type": candidate.event_type},
        )

    _log.warning(f"Gave up claiming after {max_races} lost races", extra={"races": max_races})
    return None
