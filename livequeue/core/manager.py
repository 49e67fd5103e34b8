"""QueueManager: the producer-facing and operational surface of the queue.

The manager is stateless apart from its collaborators. Every enqueue runs
the same pipeline:

1. Resolve the priority through the PriorityResolver
2. Ask the AdmissionController whether the event fits (evicting if needed)
3. Insert the job into the store
4. Wake idle processors through their NotificationChannels
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from livequeue.core.admission import AdmissionController
from livequeue.core.errors import QueueFullError
from livequeue.core.job import Job, JobStatus, LogSummary, ProcessingLogRecord, summarize_logs
from livequeue.core.logging import configure_logging, get_logger, job_fields
from livequeue.core.priority import GiftOverrides, PriorityProfile, PriorityResolver

if TYPE_CHECKING:
    from livequeue.core.config import QueueSettings
    from livequeue.core.notify import NotificationChannel
    from livequeue.core.processor import JobProcessor
    from livequeue.stores.base import JobStore

# Health thresholds, in percent
UTILIZATION_WARNING = 90.0
UTILIZATION_CRITICAL = 95.0
SUCCESS_RATE_WARNING = 95.0
SUCCESS_RATE_CRITICAL = 90.0


class HealthState(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    ERROR = "error"


@dataclass
class QueueStatus:
    """Point-in-time view of the queue.

    ``current_size`` counts pending plus processing jobs, the same figure
    admission control compares against ``max_size``.
    """

    current_size: int = 0
    max_size: int = 0
    utilization_percent: float = 0.0
    status_counts: dict[str, int] = field(default_factory=dict)
    event_type_counts: dict[str, int] = field(default_factory=dict)


@dataclass
class HealthReport:
    status: HealthState = HealthState.HEALTHY
    issues: list[str] = field(default_factory=list)
    queue_size: int = 0
    utilization: float = 0.0
    success_rate: float = 100.0
    error: str | None = None

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthState.HEALTHY


@dataclass
class EventTypeInfo:
    count: int = 0
    priority: int = 0
    is_gift_event: bool = False


class QueueManager:
    """Entry point for producers and operators.

    Args:
        store: The shared JobStore.
        resolver: Priority resolver; a default one is created if omitted.
        admission: Admission controller; built from ``max_size`` and the
            resolver's gift event types if omitted.
        max_size: Capacity used when ``admission`` is not given.
        default_max_attempts: ``max_attempts`` for jobs enqueued without one.
    """

    def __init__(
        self,
        store: "JobStore",
        resolver: PriorityResolver | None = None,
        admission: AdmissionController | None = None,
        max_size: int = 1000,
        default_max_attempts: int = 3,
        stuck_job_timeout_minutes: float = 10,
        completed_retention_hours: float = 24,
        failed_retention_hours: float = 168,
        log_retention_days: float = 30,
        health_window_hours: float = 1,
    ) -> None:
        self.store = store
        self.resolver = resolver or PriorityResolver()
        self.admission = admission or AdmissionController(
            store,
            max_size=max_size,
            gift_event_types=self.resolver.gift_event_types,
        )
        self.default_max_attempts = default_max_attempts
        self.stuck_job_timeout_minutes = stuck_job_timeout_minutes
        self.completed_retention_hours = completed_retention_hours
        self.failed_retention_hours = failed_retention_hours
        self.log_retention_days = log_retention_days
        self.health_window_hours = health_window_hours
        self._processors: list[JobProcessor] = []
        self._channels: list[NotificationChannel] = []
        self._admission_lock = asyncio.Lock()
        self._log = get_logger("livequeue.manager")

    @classmethod
    def from_settings(
        cls,
        store: "JobStore",
        settings: "QueueSettings",
        resolver: PriorityResolver | None = None,
    ) -> "QueueManager":
        configure_logging(settings.log_level)
        resolver = resolver or PriorityResolver(gift_event_types=settings.gift_event_types)
        return cls(
            store,
            resolver=resolver,
            admission=AdmissionController.from_settings(store, settings),
            default_max_attempts=settings.max_attempts,
            stuck_job_timeout_minutes=settings.stuck_job_timeout_minutes,
            completed_retention_hours=settings.completed_retention_hours,
            failed_retention_hours=settings.failed_retention_hours,
            log_retention_days=settings.log_retention_days,
            health_window_hours=settings.health_window_hours,
        )

    @property
    def max_size(self) -> int:
        return self.admission.max_size

    # -------------------------------------------------------------------------
    # Wake fan-out
    # -------------------------------------------------------------------------

    def register_processor(self, processor: "JobProcessor") -> None:
        """Wake ``processor`` on every successful enqueue."""
        if processor not in self._processors:
            self._processors.append(processor)
        self.add_channel(processor.channel)

    def unregister_processor(self, processor: "JobProcessor") -> None:
        if processor in self._processors:
            self._processors.remove(processor)
        self.remove_channel(processor.channel)

    def add_channel(self, channel: "NotificationChannel") -> None:
        if channel not in self._channels:
            self._channels.append(channel)

    def remove_channel(self, channel: "NotificationChannel") -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def notify(self) -> int:
        """Signal every registered channel; returns how many had a waiter."""
        return sum(1 for channel in self._channels if channel.signal())

    def _default_consumer_id(self) -> str | None:
        for processor in self._processors:
            if processor.active_consumer_id is not None:
                return processor.active_consumer_id
        return None

    # -------------------------------------------------------------------------
    # Producer API
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        event_type: str,
        payload: Mapping[str, Any] | None = None,
        consumer_id: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """Resolve, admit and persist one event.

        ``consumer_id`` selects the priority profile; it defaults to the
        active consumer of the first registered processor. The job is
        validated before admission runs, so an invalid event never evicts
        anything. Admission and insert run under one lock, so concurrent
        enqueues on this manager cannot overshoot ``max_size``; managers in
        other processes sharing the store are not serialized.

        Returns:
            The new job id.

        Raises:
            QueueFullError: The queue is full and the event's priority is
                below the admission threshold.
            pydantic.ValidationError: The event type, payload or
                ``max_attempts`` is invalid. Nothing is evicted.
        """
        payload = dict(payload or {})
        if consumer_id is None:
            consumer_id = self._default_consumer_id()

        priority = self.resolver.resolve(event_type, consumer_id, payload)
        now = self.store.now()
        job = Job(
            event_type=event_type,
            payload=payload,
            priority=priority,
            max_attempts=self.default_max_attempts if max_attempts is None else max_attempts,
            available_at=now,
            created_at=now,
            updated_at=now,
            consumer_id=consumer_id,
        )

        async with self._admission_lock:
            decision = await self.admission.admit(event_type, priority)
            if not decision.accepted:
                self._log.warning(
                    f"Rejected {event_type} event: queue full",
                    extra={
                        "event_type": event_type,
                        "priority": priority,
                        "consumer_id": consumer_id,
                        "current_size": decision.current_size,
                        "max_size": self.max_size,
                    },
                )
                raise QueueFullError(event_type, priority, decision.current_size, self.max_size)
            await self.store.insert(job)

        self._log.info(
            f"Enqueued {job.event_type} event with priority {job.priority}",
            extra=job_fields(job, evicted=decision.evicted),
        )
        self.notify()
        return job.id

    # -------------------------------------------------------------------------
    # Priority profiles
    # -------------------------------------------------------------------------

    def register_priority_profile(
        self,
        consumer_id: str,
        default_overrides: PriorityProfile | Mapping[str, int] | None = None,
        gift_overrides: GiftOverrides | Mapping[str, Any] | None = None,
    ) -> PriorityProfile:
        return self.resolver.register_profile(consumer_id, default_overrides, gift_overrides)

    def clear_priority_profile(self, consumer_id: str) -> bool:
        return self.resolver.clear_profile(consumer_id)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def get_queue_status(self) -> QueueStatus:
        current_size = await self.store.count_active()
        return QueueStatus(
            current_size=current_size,
            max_size=self.max_size,
            utilization_percent=round(current_size / self.max_size * 100, 2),
            status_counts=await self.store.count_by_status(),
            event_type_counts=await self.store.count_by_event_type(),
        )

    async def get_processing_stats(self, hours: float = 24) -> LogSummary:
        """Summarize the processing log over the last ``hours``."""
        since = self.store.now() - timedelta(hours=hours)
        return summarize_logs(await self.store.logs_since(since))

    async def get_health_status(self, window_hours: float | None = None) -> HealthReport:
        """Classify queue health from utilization and the recent success rate.

        Store failures are reported as ``HealthState.ERROR`` rather than raised.
        """
        window = self.health_window_hours if window_hours is None else window_hours
        try:
            status = await self.get_queue_status()
            stats = await self.get_processing_stats(window)
        except Exception as e:
            self._log.error(f"Failed to get health status: {e}", extra={"error": str(e)})
            return HealthReport(status=HealthState.ERROR, error=str(e))

        report = HealthReport(
            queue_size=status.current_size,
            utilization=status.utilization_percent,
            success_rate=stats.success_rate,
        )
        if report.utilization > UTILIZATION_WARNING:
            report.status = HealthState.WARNING
            report.issues.append(f"Queue utilization is high (>{UTILIZATION_WARNING:g}%)")
        if report.success_rate < SUCCESS_RATE_WARNING:
            report.status = HealthState.WARNING
            report.issues.append(f"Success rate is below {SUCCESS_RATE_WARNING:g}%")
        if report.utilization > UTILIZATION_CRITICAL or report.success_rate < SUCCESS_RATE_CRITICAL:
            report.status = HealthState.CRITICAL
        return report

    async def get_event_type_distribution(self) -> dict[str, EventTypeInfo]:
        """Active job count, default priority and gift flag per event type."""
        counts = await self.store.count_by_event_type()
        event_types = list(self.resolver.default_priorities)
        event_types.extend(sorted(t for t in counts if t not in self.resolver.default_priorities))
        return {
            event_type: EventTypeInfo(
                count=counts.get(event_type, 0),
                priority=self.resolver.global_priority(event_type),
                is_gift_event=self.resolver.is_gift_event(event_type),
            )
            for event_type in event_types
        }

    async def recent_logs(
        self, limit: int = 100, event_type: str | None = None
    ) -> list[ProcessingLogRecord]:
        return await self.store.recent_logs(limit, event_type)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def clear_queue(self) -> int:
        removed = await self.store.delete_all()
        self._log.info(f"Cleared {removed} jobs from queue", extra={"removed": removed})
        return removed

    async def clear_completed(self, older_than_hours: float | None = None) -> int:
        hours = self.completed_retention_hours if older_than_hours is None else older_than_hours
        cutoff = self.store.now() - timedelta(hours=hours)
        removed = await self.store.delete_terminal(JobStatus.COMPLETED, cutoff)
        self._log.info(
            f"Cleared {removed} completed jobs older than {hours:g} hours",
            extra={"removed": removed, "older_than_hours": hours},
        )
        return removed

    async def clear_failed(self, older_than_hours: float | None = None) -> int:
        hours = self.failed_retention_hours if older_than_hours is None else older_than_hours
        cutoff = self.store.now() - timedelta(hours=hours)
        removed = await self.store.delete_terminal(JobStatus.FAILED, cutoff)
        self._log.info(
            f"Cleared {removed} failed jobs older than {hours:g} hours",
            extra={"removed": removed, "older_than_hours": hours},
        )
        return removed

    async def reset_stuck_jobs(self, timeout_minutes: float | None = None) -> int:
        """Return processing jobs untouched for ``timeout_minutes`` to pending."""
        minutes = self.stuck_job_timeout_minutes if timeout_minutes is None else timeout_minutes
        cutoff = self.store.now() - timedelta(minutes=minutes)
        reset = await self.store.reset_stuck(cutoff)
        if reset > 0:
            self._log.warning(
                f"Reset {reset} stuck jobs that were processing for more than {minutes:g} minutes",
                extra={"reset": reset, "timeout_minutes": minutes},
            )
            self.notify()
        return reset

    async def clear_logs(self, older_than_days: float | None = None) -> int:
        days = self.log_retention_days if older_than_days is None else older_than_days
        cutoff = self.store.now() - timedelta(days=days)
        removed = await self.store.delete_logs(cutoff)
        self._log.info(
            f"Cleared {removed} processing log records older than {days:g} days",
            extra={"removed": removed, "older_than_days": days},
        )
        return removed

    async def optimize_queue(self) -> list[str]:
        """Run the routine cleanup pass and describe what it changed."""
        actions: list[str] = []

        reset = await self.reset_stuck_jobs()
        if reset > 0:
            actions.append(f"Reset {reset} stuck jobs")

        completed = await self.clear_completed()
        if completed > 0:
            actions.append(f"Cleared {completed} completed jobs")

        failed = await self.clear_failed()
        if failed > 0:
            actions.append(f"Cleared {failed} old failed jobs")

        current_size = await self.store.count_active()
        if current_size > self.max_size * UTILIZATION_WARNING / 100:
            removed = await self.admission.evict_low_priority(self.admission.gift_eviction_count)
            if removed > 0:
                actions.append(f"Removed {removed} low-priority events to prevent overflow")

        self._log.info("Queue optimization completed", extra={"actions": actions})
        return actions
