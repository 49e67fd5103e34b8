"""Core components of the livequeue engine.

This module exposes the primary types, constants, and utilities:

Types:
    Job: Immutable snapshot of a persisted unit of work.
    ProcessingLogRecord: Append-only record of one processing outcome.
    PriorityResolver: Maps (event type, consumer, payload) to a priority.
    AdmissionController: Bounded queue size with gift-protecting eviction.
    QueueManager: Producer-facing enqueue plus operational introspection.
    JobProcessor: Claim-and-process loop with backoff and graceful drain.
    ProcessorPool: Named collection of processors.
    HandlerSet / Consumer: The handlers a processor dispatches to.
    NotificationChannel: Wake primitive for idle processors.
    MaintenanceTask: Periodic optimize_queue and log retention.

Errors:
    QueueFullError: Event rejected at admission.
    SkipJob: Raised by a handler or predicate to take the skip path.
    NoHandlerError: Claimed job has no handler; fails fast.
    JobNotAvailableError: A specific job could not be claimed.
    StoreUnavailableError: Store failed beyond the configured threshold.

Constants:
    DEFAULT_PRIORITIES: Global default priority per event type.
    DEFAULT_GIFT_EVENT_TYPES: Event types protected by admission control.
"""

from livequeue.core.admission import AdmissionController, AdmissionDecision
from livequeue.core.config import QueueSettings, load_settings
from livequeue.core.consumer import Consumer, HandlerSet
from livequeue.core.errors import (
    JobNotAvailableError,
    NoHandlerError,
    QueueFullError,
    SkipJob,
    StoreUnavailableError,
)
from livequeue.core.job import (
    MAX_PAYLOAD_SIZE,
    Job,
    JobStatus,
    LogStatus,
    LogSummary,
    ProcessingLogRecord,
    summarize_logs,
)
from livequeue.core.maintenance import MaintenanceTask
from livequeue.core.manager import HealthReport, HealthState, QueueManager, QueueStatus
from livequeue.core.notify import NotificationChannel
from livequeue.core.priority import (
    DEFAULT_GIFT_EVENT_TYPES,
    DEFAULT_PRIORITIES,
    CostRange,
    GiftOverrides,
    PriorityProfile,
    PriorityResolver,
)
from livequeue.core.processor import (
    JobProcessor,
    ProcessorPool,
    ProcessorState,
    ProcessorStats,
    calculate_retry_delay,
)

__all__ = [
    "Job",
    "JobStatus",
    "LogStatus",
    "LogSummary",
    "ProcessingLogRecord",
    "summarize_logs",
    "MAX_PAYLOAD_SIZE",
    "PriorityResolver",
    "PriorityProfile",
    "GiftOverrides",
    "CostRange",
    "DEFAULT_PRIORITIES",
    "DEFAULT_GIFT_EVENT_TYPES",
    "AdmissionController",
    "AdmissionDecision",
    "QueueManager",
    "QueueStatus",
    "HealthReport",
    "HealthState",
    "JobProcessor",
    "ProcessorPool",
    "ProcessorState",
    "ProcessorStats",
    "calculate_retry_delay",
    "HandlerSet",
    "Consumer",
    "NotificationChannel",
    "MaintenanceTask",
    "QueueSettings",
    "load_settings",
    "QueueFullError",
    "SkipJob",
    "NoHandlerError",
    "JobNotAvailableError",
    "StoreUnavailableError",
]
