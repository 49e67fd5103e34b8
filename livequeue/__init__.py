"""livequeue - Priority event queue engine for live-stream events."""

from livequeue.core import (
    AdmissionController,
    Consumer,
    HandlerSet,
    HealthReport,
    HealthState,
    Job,
    JobNotAvailableError,
    JobProcessor,
    JobStatus,
    LogStatus,
    MaintenanceTask,
    NoHandlerError,
    NotificationChannel,
    PriorityProfile,
    PriorityResolver,
    ProcessingLogRecord,
    ProcessorPool,
    ProcessorState,
    QueueFullError,
    QueueManager,
    QueueSettings,
    QueueStatus,
    SkipJob,
    StoreUnavailableError,
)
from livequeue.stores import InMemoryJobStore, JobStore, RedisJobStore, claim_next_job

__version__ = "0.1.0"

__all__ = [
    # Core
    "Job",
    "JobStatus",
    "LogStatus",
    "ProcessingLogRecord",
    "PriorityResolver",
    "PriorityProfile",
    "AdmissionController",
    "QueueManager",
    "QueueStatus",
    "HealthReport",
    "HealthState",
    "JobProcessor",
    "ProcessorPool",
    "ProcessorState",
    "HandlerSet",
    "Consumer",
    "NotificationChannel",
    "MaintenanceTask",
    "QueueSettings",
    # Errors
    "QueueFullError",
    "SkipJob",
    "NoHandlerError",
    "JobNotAvailableError",
    "StoreUnavailableError",
    # Stores
    "JobStore",
    "claim_next_job",
    "InMemoryJobStore",
    "RedisJobStore",
    # Meta
    "__version__",
]
