"""Durable Redis job store.

Layout (``p`` is the key prefix):

- ``p:job:<id>``        hash with the job fields
- ``p:jobs``            sorted set, every job scored by created_at
- ``p:pending``         sorted set of pending jobs in claim order,
                        scored ``-priority * 1e10 + available_at``
- ``p:status:<status>`` sorted set per status, scored by updated_at
- ``p:logs``            list of JSON processing log records, oldest first

Every conditional transition (claim, release, completion, failure, stuck
reset, conditional delete) is a Lua script, so it executes atomically on
the server. ``try_claim`` is the conditional update the whole engine
relies on: it only succeeds while the job is still pending and eligible.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse, urlunparse

from livequeue.core.job import Job, JobStatus, ProcessingLogRecord, utcnow

logger = logging.getLogger("livequeue.redis")

# Spacing between priority bands in the pending score; larger than any epoch timestamp
_PRIORITY_SCALE = 1e10

# Jobs fetched per round trip when scanning an index
_SCAN_BATCH = 50

_CLAIM = """
if redis.call('HGET', KEYS[1], 'status') ~= 'pending' then
  return false
end
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts'))
local max_attempts = tonumber(redis.call('HGET', KEYS[1], 'max_attempts'))
local available_at = tonumber(redis.call('HGET', KEYS[1], 'available_at'))
if attempts >= max_attempts or available_at > tonumber(ARGV[2]) then
  return false
end
redis.call('HSET', KEYS[1], 'status', 'processing', 'attempts', tostring(attempts + 1),
           'updated_at', ARGV[2])
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('ZADD', KEYS[4], ARGV[2], ARGV[1])
return redis.call('HGETALL', KEYS[1])
"""

_RELEASE = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
  return false
end
if status == 'processing' then
  local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts'))
  local max_attempts = tonumber(redis.call('HGET', KEYS[1], 'max_attempts'))
  redis.call('ZREM', KEYS[4], ARGV[1])
  if attempts >= max_attempts then
    redis.call('HSET', KEYS[1], 'status', 'failed', 'processed_at', ARGV[2], 'updated_at', ARGV[2])
    redis.call('ZADD', KEYS[5], ARGV[2], ARGV[1])
  else
    local priority = tonumber(redis.call('HGET', KEYS[1], 'priority'))
    local available_at = tonumber(redis.call('HGET', KEYS[1], 'available_at'))
    redis.call('HSET', KEYS[1], 'status', 'pending', 'updated_at', ARGV[2])
    redis.call('ZADD', KEYS[2], -priority * tonumber(ARGV[3]) + available_at, ARGV[1])
    redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
  end
end
return redis.call('HGETALL', KEYS[1])
"""

_COMPLETE = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
  return false
end
if status ~= 'completed' and status ~= 'failed' then
  redis.call('HSET', KEYS[1], 'status', 'completed', 'processed_at', ARGV[2],
             'updated_at', ARGV[2], 'skip_reason', ARGV[3])
  redis.call('ZREM', KEYS[2], ARGV[1])
  redis.call('ZREM', KEYS[3], ARGV[1])
  redis.call('ZREM', KEYS[4], ARGV[1])
  redis.call('ZADD', KEYS[5], ARGV[2], ARGV[1])
end
return redis.call('HGETALL', KEYS[1])
"""

_FAIL = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
  return false
end
if status == 'completed' or status == 'failed' then
  return redis.call('HGETALL', KEYS[1])
end
local now = tonumber(ARGV[2])
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts'))
local max_attempts = tonumber(redis.call('HGET', KEYS[1], 'max_attempts'))
redis.call('ZREM', KEYS[4], ARGV[1])
if ARGV[4] == '1' or attempts >= max_attempts then
  redis.call('HSET', KEYS[1], 'status', 'failed', 'processed_at', ARGV[2], 'updated_at', ARGV[2])
  redis.call('ZREM', KEYS[2], ARGV[1])
  redis.call('ZREM', KEYS[3], ARGV[1])
  redis.call('ZADD', KEYS[5], ARGV[2], ARGV[1])
else
  local priority = tonumber(redis.call('HGET', KEYS[1], 'priority'))
  local available_at = tonumber(redis.call('HGET', KEYS[1], 'available_at'))
  local retry_at = now + tonumber(ARGV[3])
  if retry_at > available_at then
    available_at = retry_at
  end
  redis.call('HSET', KEYS[1], 'status', 'pending', 'available_at', string.format('%.6f', available_at),
             'updated_at', ARGV[2])
  redis.call('ZADD', KEYS[2], -priority * tonumber(ARGV[5]) + available_at, ARGV[1])
  redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
end
return redis.call('HGETALL', KEYS[1])
"""

_RESET_STUCK = """
if redis.call('HGET', KEYS[1], 'status') ~= 'processing' then
  return 0
end
if tonumber(redis.call('HGET', KEYS[1], 'updated_at')) >= tonumber(ARGV[3]) then
  return 0
end
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts'))
local max_attempts = tonumber(redis.call('HGET', KEYS[1], 'max_attempts'))
redis.call('ZREM', KEYS[4], ARGV[1])
if attempts >= max_attempts then
  redis.call('HSET', KEYS[1], 'status', 'failed', 'processed_at', ARGV[2], 'updated_at', ARGV[2])
  redis.call('ZADD', KEYS[5], ARGV[2], ARGV[1])
else
  local priority = tonumber(redis.call('HGET', KEYS[1], 'priority'))
  redis.call('HSET', KEYS[1], 'status', 'pending', 'available_at', ARGV[2], 'updated_at', ARGV[2])
  redis.call('ZADD', KEYS[2], -priority * tonumber(ARGV[4]) + tonumber(ARGV[2]), ARGV[1])
  redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
end
return 1
"""

_DELETE_IF_STATUS = """
if redis.call('HGET', KEYS[1], 'status') ~= ARGV[2] then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('ZREM', KEYS[4], ARGV[1])
return 1
"""


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username or ''}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


def _ts(value: datetime | None) -> str:
    return "" if value is None else f"{value.timestamp():.6f}"


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), UTC)


def _pending_score(priority: int, available_at: datetime) -> float:
    return -priority * _PRIORITY_SCALE + available_at.timestamp()


def _serialize(job: Job) -> dict[str, str]:
    return {
        "id": job.id,
        "event_type": job.event_type,
        "payload": json.dumps(job.payload),
        "priority": str(job.priority),
        "status": job.status.value,
        "attempts": str(job.attempts),
        "max_attempts": str(job.max_attempts),
        "available_at": _ts(job.available_at),
        "processed_at": _ts(job.processed_at),
        "created_at": _ts(job.created_at),
        "updated_at": _ts(job.updated_at),
        "consumer_id": job.consumer_id or "",
        "skip_reason": job.skip_reason or "",
    }


def _deserialize(data: dict[str, str] | list[str] | None) -> Job | None:
    if not data:
        return None
    if isinstance(data, list):
        data = dict(zip(data[::2], data[1::2]))
    return Job(
        id=data["id"],
        event_type=data["event_type"],
        payload=json.loads(data["payload"]),
        priority=int(data["priority"]),
        status=JobStatus(data["status"]),
        attempts=int(data["attempts"]),
        max_attempts=int(data["max_attempts"]),
        available_at=_dt(data["available_at"]),
        processed_at=_dt(data.get("processed_at")),
        created_at=_dt(data["created_at"]),
        updated_at=_dt(data["updated_at"]),
        consumer_id=data.get("consumer_id") or None,
        skip_reason=data.get("skip_reason") or None,
    )


@dataclass
class StoreHealth:
    """Health check result."""

    healthy: bool
    latency_ms: float
    details: dict[str, Any]


class RedisJobStore:
    """Durable job store on Redis."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "livequeue",
        pool_size: int = 10,
        max_log_entries: int = 10_000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the Redis job store.

        Args:
            redis_url: Redis connection URL.
            key_prefix: Prefix for every key this store owns.
            pool_size: Connection pool size.
            max_log_entries: Processing log list is trimmed to this length.
            clock: Callable returning the current UTC time.
        """
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.key_prefix = key_prefix
        self._pool_size = pool_size
        self._max_log_entries = max_log_entries
        self._clock = clock or utcnow

        self._redis: Any = None
        self._scripts: dict[str, Any] = {}
        self._conn_lock = asyncio.Lock()

    @property
    def redis_url(self) -> str:
        return self._url

    def now(self) -> datetime:
        return self._clock()

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def _job_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:job:{job_id}"

    @property
    def _jobs_key(self) -> str:
        return f"{self.key_prefix}:jobs"

    @property
    def _pending_key(self) -> str:
        return f"{self.key_prefix}:pending"

    @property
    def _logs_key(self) -> str:
        return f"{self.key_prefix}:logs"

    def _status_key(self, status: JobStatus | str) -> str:
        return f"{self.key_prefix}:status:{JobStatus(status).value}"

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def _get_client(self) -> Any:
        """Get Redis client with connection pooling, registering scripts on first use."""
        try:
            from redis.asyncio import ConnectionPool, Redis
        except ImportError as e:
            raise ImportError("Install redis: pip install livequeue[redis]") from e

        if self._redis is not None:
            return self._redis

        async with self._conn_lock:
            if self._redis is not None:
                return self._redis

            pool = ConnectionPool.from_url(
                self._url, max_connections=self._pool_size, decode_responses=True
            )
            client = Redis(connection_pool=pool)
            try:
                await client.ping()
            except Exception:
                await client.aclose()
                raise

            self._scripts = {
                "claim": client.register_script(_CLAIM),
                "release": client.register_script(_RELEASE),
                "complete": client.register_script(_COMPLETE),
                "fail": client.register_script(_FAIL),
                "reset_stuck": client.register_script(_RESET_STUCK),
                "delete_if_status": client.register_script(_DELETE_IF_STATUS),
            }
            self._redis = client
            logger.info(f"Connected to Redis at {self._url_safe}")
            return self._redis

    async def _fetch_jobs(self, client: Any, job_ids: list[str]) -> list[Job | None]:
        if not job_ids:
            return []
        async with client.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hgetall(self._job_key(job_id))
            rows = await pipe.execute()
        return [_deserialize(row) for row in rows]

    async def _delete_if_status(self, client: Any, job_id: str, status: JobStatus) -> bool:
        deleted = await self._scripts["delete_if_status"](
            keys=[
                self._job_key(job_id),
                self._jobs_key,
                self._pending_key,
                self._status_key(status),
            ],
            args=[job_id, status.value],
        )
        return bool(deleted)

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def insert(self, job: Job) -> Job:
        client = await self._get_client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.id), mapping=_serialize(job))
            pipe.zadd(self._jobs_key, {job.id: job.created_at.timestamp()})
            pipe.zadd(self._status_key(job.status), {job.id: job.updated_at.timestamp()})
            if job.status is JobStatus.PENDING:
                pipe.zadd(self._pending_key, {job.id: _pending_score(job.priority, job.available_at)})
            await pipe.execute()
        logger.debug(f"Inserted job {job.id}", extra={"job_id": job.id, "event_type": job.event_type})
        return job

    async def get(self, job_id: str) -> Job | None:
        client = await self._get_client()
        return _deserialize(await client.hgetall(self._job_key(job_id)))

    async def find_next_eligible(self) -> Job | None:
        client = await self._get_client()
        now = self.now()
        start = 0
        while True:
            job_ids = await client.zrange(self._pending_key, start, start + _SCAN_BATCH - 1)
            if not job_ids:
                return None
            for job in await self._fetch_jobs(client, job_ids):
                if job is not None and job.is_eligible(now):
                    return job
            start += _SCAN_BATCH

    async def try_claim(self, job_id: str) -> Job | None:
        await self._get_client()
        row = await self._scripts["claim"](
            keys=[
                self._job_key(job_id),
                self._pending_key,
                self._status_key(JobStatus.PENDING),
                self._status_key(JobStatus.PROCESSING),
            ],
            args=[job_id, _ts(self.now())],
        )
        return _deserialize(row)

    async def release(self, job_id: str) -> Job | None:
        await self._get_client()
        row = await self._scripts["release"](
            keys=[
                self._job_key(job_id),
                self._pending_key,
                self._status_key(JobStatus.PENDING),
                self._status_key(JobStatus.PROCESSING),
                self._status_key(JobStatus.FAILED),
            ],
            args=[job_id, _ts(self.now()), _PRIORITY_SCALE],
        )
        return _deserialize(row)

    async def mark_completed(self, job_id: str, skip_reason: str | None = None) -> Job | None:
        await self._get_client()
        row = await self._scripts["complete"](
            keys=[
                self._job_key(job_id),
                self._pending_key,
                self._status_key(JobStatus.PENDING),
                self._status_key(JobStatus.PROCESSING),
                self._status_key(JobStatus.COMPLETED),
            ],
            args=[job_id, _ts(self.now()), skip_reason or ""],
        )
        return _deserialize(row)

    async def mark_failed(
        self, job_id: str, retry_delay: float, terminal: bool = False
    ) -> Job | None:
        await self._get_client()
        row = await self._scripts["fail"](
            keys=[
                self._job_key(job_id),
                self._pending_key,
                self._status_key(JobStatus.PENDING),
                self._status_key(JobStatus.PROCESSING),
                self._status_key(JobStatus.FAILED),
            ],
            args=[
                job_id,
                _ts(self.now()),
                f"{max(0.0, retry_delay):.6f}",
                "1" if terminal else "0",
                _PRIORITY_SCALE,
            ],
        )
        return _deserialize(row)

    async def count_active(self) -> int:
        client = await self._get_client()
        async with client.pipeline(transaction=False) as pipe:
            pipe.zcard(self._status_key(JobStatus.PENDING))
            pipe.zcard(self._status_key(JobStatus.PROCESSING))
            pending, processing = await pipe.execute()
        return int(pending) + int(processing)

    async def count_by_status(self) -> dict[str, int]:
        client = await self._get_client()
        async with client.pipeline(transaction=False) as pipe:
            for status in JobStatus:
                pipe.zcard(self._status_key(status))
            counts = await pipe.execute()
        return {status.value: int(count) for status, count in zip(JobStatus, counts)}

    async def count_by_event_type(self) -> dict[str, int]:
        client = await self._get_client()
        job_ids: list[str] = []
        for status in (JobStatus.PENDING, JobStatus.PROCESSING):
            job_ids.extend(await client.zrange(self._status_key(status), 0, -1))
        if not job_ids:
            return {}
        async with client.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hget(self._job_key(job_id), "event_type")
            event_types = await pipe.execute()
        counts: dict[str, int] = {}
        for event_type in event_types:
            if event_type:
                counts[event_type] = counts.get(event_type, 0) + 1
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
        client = await self._get_client()
        evicted = 0
        start = 0
        while evicted < limit:
            job_ids = await client.zrange(self._jobs_key, start, start + _SCAN_BATCH - 1)
            if not job_ids:
                break
            async with client.pipeline(transaction=False) as pipe:
                for job_id in job_ids:
                    pipe.hmget(self._job_key(job_id), ["status", "event_type", "priority"])
                rows = await pipe.execute()

            for job_id, (status, event_type, priority) in zip(job_ids, rows):
                if evicted >= limit:
                    break
                if (
                    status != JobStatus.PENDING.value
                    or event_type in protected
                    or priority is None
                    or int(priority) >= below_priority
                ):
                    continue
                if await self._delete_if_status(client, job_id, JobStatus.PENDING):
                    evicted += 1
                    # Deleted members shift the index window back by one
                    start -= 1
            start += _SCAN_BATCH
        return evicted

    async def delete_all(self) -> int:
        client = await self._get_client()
        job_ids = await client.zrange(self._jobs_key, 0, -1)
        for offset in range(0, len(job_ids), _SCAN_BATCH):
            chunk = job_ids[offset : offset + _SCAN_BATCH]
            await client.delete(*(self._job_key(job_id) for job_id in chunk))
        await client.delete(
            self._jobs_key,
            self._pending_key,
            *(self._status_key(status) for status in JobStatus),
        )
        return len(job_ids)

    async def delete_terminal(self, status: JobStatus, older_than: datetime) -> int:
        status = JobStatus(status)
        if not status.is_terminal:
            raise ValueError(f"Only terminal jobs can be purged, got {status.value}")
        client = await self._get_client()
        job_ids = await client.zrangebyscore(
            self._status_key(status), "-inf", f"({older_than.timestamp():.6f}"
        )
        deleted = 0
        for job_id in job_ids:
            if await self._delete_if_status(client, job_id, status):
                deleted += 1
        return deleted

    async def reset_stuck(self, older_than: datetime) -> int:
        client = await self._get_client()
        cutoff = _ts(older_than)
        job_ids = await client.zrangebyscore(
            self._status_key(JobStatus.PROCESSING), "-inf", f"({cutoff}"
        )
        reset = 0
        for job_id in job_ids:
            reset += int(
                await self._scripts["reset_stuck"](
                    keys=[
                        self._job_key(job_id),
                        self._pending_key,
                        self._status_key(JobStatus.PENDING),
                        self._status_key(JobStatus.PROCESSING),
                        self._status_key(JobStatus.FAILED),
                    ],
                    args=[job_id, _ts(self.now()), cutoff, _PRIORITY_SCALE],
                )
            )
        return reset

    # -------------------------------------------------------------------------
    # Processing log
    # -------------------------------------------------------------------------

    async def append_log(self, record: ProcessingLogRecord) -> None:
        client = await self._get_client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.rpush(self._logs_key, record.model_dump_json())
            pipe.ltrim(self._logs_key, -self._max_log_entries, -1)
            await pipe.execute()

    async def _all_logs(self) -> list[ProcessingLogRecord]:
        client = await self._get_client()
        rows = await client.lrange(self._logs_key, 0, -1)
        return [ProcessingLogRecord.model_validate_json(row) for row in rows]

    async def recent_logs(
        self, limit: int = 100, event_type: str | None = None
    ) -> list[ProcessingLogRecord]:
        records = [
            record
            for record in reversed(await self._all_logs())
            if event_type is None or record.event_type == event_type
        ]
        return records[:limit]

    async def logs_since(self, since: datetime) -> list[ProcessingLogRecord]:
        return [record for record in await self._all_logs() if record.processed_at >= since]

    async def delete_logs(self, older_than: datetime) -> int:
        records = await self._all_logs()
        stale = 0
        for record in records:
            if record.processed_at >= older_than:
                break
            stale += 1
        if stale:
            client = await self._get_client()
            await client.ltrim(self._logs_key, stale, -1)
        return stale

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def health(self) -> StoreHealth:
        """Check store health."""
        start = time.monotonic()
        try:
            client = await self._get_client()
            await client.ping()
            counts = await self.count_by_status()
            return StoreHealth(
                healthy=True,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"key_prefix": self.key_prefix, "jobs": counts},
            )
        except Exception as e:
            return StoreHealth(
                healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"error": str(e)},
            )

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._scripts = {}
            logger.info("Closed Redis connection")

    async def drop(self) -> None:
        """Delete every key owned by this store (for testing)."""
        client = await self._get_client()
        await self.delete_all()
        await client.delete(self._logs_key)
