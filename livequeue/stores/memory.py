"""In-memory job store guarded by an asyncio.Lock."""

import asyncio
from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from livequeue.core.job import Job, JobStatus, ProcessingLogRecord, utcnow


class InMemoryJobStore:
    """Job store backed by a dict of immutable Job snapshots.

    This store is suitable for development and testing. It provides no
    durability guarantees; jobs are lost if the process terminates.

    Every mutation happens under a single lock, which makes ``try_claim``
    the same conditional update a transactional store performs.

    Args:
        clock: Callable returning the current UTC time. Tests inject a
            controllable clock here.
        max_log_entries: Oldest log records are dropped beyond this size.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        max_log_entries: int = 10_000,
    ) -> None:
        self._jobs: dict[str, Job] = {}
        self._logs: deque[ProcessingLogRecord] = deque(maxlen=max_log_entries)
        self._lock = asyncio.Lock()
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def __len__(self) -> int:
        return len(self._jobs)

    async def insert(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = job
            return job

    async def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def find_next_eligible(self) -> Job | None:
        now = self.now()
        candidates = [job for job in self._jobs.values() if job.is_eligible(now)]
        if not candidates:
            return None
        return min(candidates, key=lambda j: (-j.priority, j.available_at, j.created_at))

    async def try_claim(self, job_id: str) -> Job | None:
        async with self._lock:
            now = self.now()
            job = self._jobs.get(job_id)
            if job is None or not job.is_eligible(now):
                return None
            claimed = job.model_copy(
                update={
                    "status": JobStatus.PROCESSING,
                    "attempts": job.attempts + 1,
                    "updated_at": now,
                }
            )
            self._jobs[job_id] = claimed
            return claimed

    async def release(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PROCESSING:
                return job
            now = self.now()
            if job.attempts >= job.max_attempts:
                update = {"status": JobStatus.FAILED, "processed_at": now, "updated_at": now}
            else:
                update = {"status": JobStatus.PENDING, "updated_at": now}
            released = job.model_copy(update=update)
            self._jobs[job_id] = released
            return released

    async def mark_completed(self, job_id: str, skip_reason: str | None = None) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return job
            now = self.now()
            completed = job.model_copy(
                update={
                    "status": JobStatus.COMPLETED,
                    "processed_at": now,
                    "updated_at": now,
                    "skip_reason": skip_reason,
                }
            )
            self._jobs[job_id] = completed
            return completed

    async def mark_failed(
        self, job_id: str, retry_delay: float, terminal: bool = False
    ) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return job
            now = self.now()
            if terminal or job.attempts >= job.max_attempts:
                update = {"status": JobStatus.FAILED, "processed_at": now, "updated_at": now}
            else:
                retry_at = now + timedelta(seconds=max(0.0, retry_delay))
                update = {
                    "status": JobStatus.PENDING,
                    "available_at": max(job.available_at, retry_at),
                    "updated_at": now,
                }
            failed = job.model_copy(update=update)
            self._jobs[job_id] = failed
            return failed

    async def count_active(self) -> int:
        return sum(
            1
            for job in self._jobs.values()
            if job.status in (JobStatus.PENDING, JobStatus.PROCESSING)
        )

    async def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    async def count_by_event_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for job in self._jobs.values():
            if job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
                counts[job.event_type] = counts.get(job.event_type, 0) + 1
        return counts

    async def evict_oldest(
        self,
        limit: int,
        protected_event_types: Iterable[str],
        below_priority: int,
    ) -> int:
        if limit <= 0:
            return 0
        protected = frozenset(protected_event_types)
        async with self._lock:
            candidates = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.status is JobStatus.PENDING
                    and job.event_type not in protected
                    and job.priority < below_priority
                ),
                key=lambda j: j.created_at,
            )
            for job in candidates[:limit]:
                del self._jobs[job.id]
            return min(limit, len(candidates))

    async def delete_all(self) -> int:
        async with self._lock:
            removed = len(self._jobs)
            self._jobs.clear()
            return removed

    async def delete_terminal(self, status: JobStatus, older_than: datetime) -> int:
        status = JobStatus(status)
        if not status.is_terminal:
            raise ValueError(f"Only terminal jobs can be purged, got {status.value}")
        async with self._lock:
            doomed = [
                job.id
                for job in self._jobs.values()
                if job.status is status and job.updated_at < older_than
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    async def reset_stuck(self, older_than: datetime) -> int:
        async with self._lock:
            now = self.now()
            reset = 0
            for job in list(self._jobs.values()):
                if job.status is not JobStatus.PROCESSING or job.updated_at >= older_than:
                    continue
                if job.attempts >= job.max_attempts:
                    update = {"status": JobStatus.FAILED, "processed_at": now, "updated_at": now}
                else:
                    update = {"status": JobStatus.PENDING, "available_at": now, "updated_at": now}
                self._jobs[job.id] = job.model_copy(update=update)
                reset += 1
            return reset

    async def append_log(self, record: ProcessingLogRecord) -> None:
        self._logs.append(record)

    async def recent_logs(
        self, limit: int = 100, event_type: str | None = None
    ) -> list[ProcessingLogRecord]:
        records = [
            record
            for record in reversed(self._logs)
            if event_type is None or record.event_type == event_type
        ]
        return records[:limit]

    async def logs_since(self, since: datetime) -> list[ProcessingLogRecord]:
        return [record for record in self._logs if record.processed_at >= since]

    async def delete_logs(self, older_than: datetime) -> int:
        kept = [record for record in self._logs if record.processed_at >= older_than]
        removed = len(self._logs) - len(kept)
        self._logs = deque(kept, maxlen=self._logs.maxlen)
        return removed

    async def close(self) -> None:
        async with self._lock:
            self._jobs.clear()
        self._logs.clear()
