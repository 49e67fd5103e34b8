"""Job store implementations."""

from livequeue.stores.base import DEFAULT_MAX_CLAIM_RACES, JobStore, claim_next_job
from livequeue.stores.memory import InMemoryJobStore
from livequeue.stores.redis_store import RedisJobStore, StoreHealth

__all__ = [
    "JobStore",
    "claim_next_job",
    "DEFAULT_MAX_CLAIM_RACES",
    "InMemoryJobStore",
    "RedisJobStore",
    "StoreHealth",
]
