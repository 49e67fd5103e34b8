"""JobProcessor: the claim-and-process loop.

Each processor:
- Claims one eligible job at a time from the shared store
- Dispatches it to the handler registered for its event type
- Records the outcome as a store transition plus a processing log record
- Sleeps on its NotificationChannel when nothing is eligible

IMPORTANT: processors hold no queue of their own. The store's conditional
claim is the only coordination between processors, so any number of them
may run against the same store.
"""

import asyncio
import inspect
import time
from collections import defaultdict
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from livequeue.core.consumer import Consumer, Handler, HandlerSet
from livequeue.core.errors import (
    JobNotAvailableError,
    NoHandlerError,
    SkipJob,
    StoreUnavailableError,
)
from livequeue.core.job import Job, JobStatus, LogStatus, ProcessingLogRecord
from livequeue.core.logging import configure_logging, configure_processor_logger, job_fields
from livequeue.core.notify import NotificationChannel
from livequeue.core.priority import PriorityProfile, PriorityResolver
from livequeue.stores.base import claim_next_job

if TYPE_CHECKING:
    from livequeue.core.config import QueueSettings
    from livequeue.core.manager import QueueManager
    from livequeue.stores.base import JobStore


class ProcessorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    IDLE = "idle"
    CLAIMING = "claiming"
    PROCESSING = "processing"
    DRAINING = "draining"


@dataclass
class ProcessorStats:
    """Statistics from a processor run."""

    jobs_processed: int = 0
    jobs_succeeded: int = 0
    jobs_skipped: int = 0
    jobs_failed: int = 0
    jobs_terminal: int = 0
    store_errors: int = 0
    handler_errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))


def calculate_retry_delay(
    attempts: int, base_delay: float = 5.0, max_delay: float = 300.0
) -> float:
    """Exponential backoff: ``base * 2^(attempts-1)``, capped at ``max_delay``.

    ``attempts`` counts the attempt that just failed, so the first failure
    waits ``base_delay``.
    """
    exponent = max(attempts, 1) - 1
    return min(base_delay * (2**exponent), max_delay)


class JobProcessor:
    """Single-job-in-flight worker bound to one consumer at a time.

    Args:
        store: The shared JobStore.
        handlers: The active consumer, as a ``Consumer`` or a ``HandlerSet``.
        resolver: Resolver that receives the consumer's priority profile.
        channel: Wake channel; pass the same one to the QueueManager, or
            register the processor with the manager.
        name: Identifies the processor in logs and status output.
        base_retry_delay: Backoff base in seconds.
        max_retry_delay: Backoff cap in seconds.
        idle_timeout: Upper bound on an idle wait, the fallback for a lost wake.
        handler_timeout: Seconds before a handler call counts as failed.
        shutdown_timeout: Seconds to wait for the in-flight job on shutdown.
        shutdown_grace_seconds: Processing jobs untouched for longer than this
            are reset to pending at the end of shutdown.
        store_retry_delay: Base pause after a store failure.
        max_consecutive_store_failures: Stop with StoreUnavailableError after
            this many consecutive store failures. None retries forever.
        log_level: Level for the livequeue.processor logger. None keeps the
            package level set by ``configure_logging``.
    """

    def __init__(
        self,
        store: "JobStore",
        handlers: HandlerSet | Consumer | None = None,
        resolver: PriorityResolver | None = None,
        channel: NotificationChannel | None = None,
        name: str | None = None,
        base_retry_delay: float = 5.0,
        max_retry_delay: float = 300.0,
        idle_timeout: float = 5.0,
        handler_timeout: float = 30.0,
        shutdown_timeout: float = 30.0,
        shutdown_grace_seconds: float = 60.0,
        store_retry_delay: float = 1.0,
        max_consecutive_store_failures: int | None = None,
        log_level: int | str | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.channel = channel or NotificationChannel()
        self.name = name or f"processor-{uuid4().hex[:8]}"
        self.base_retry_delay = base_retry_delay
        self.max_retry_delay = max_retry_delay
        self.idle_timeout = idle_timeout
        self.handler_timeout = handler_timeout
        self.shutdown_timeout = shutdown_timeout
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.store_retry_delay = store_retry_delay
        self.max_consecutive_store_failures = max_consecutive_store_failures
        self._log = configure_processor_logger(log_level)

        self._handler_set = HandlerSet()
        self._state = ProcessorState.STOPPED
        self._running = False
        self._task: asyncio.Task[ProcessorStats] | None = None
        self._job_lock = asyncio.Lock()
        self._current_job: Job | None = None
        self._stats = ProcessorStats()
        self._consecutive_store_failures = 0
        self._last_store_error: str | None = None

        if handlers is not None:
            self.swap_active_consumer(handlers)

    @classmethod
    def from_settings(
        cls,
        store: "JobStore",
        settings: "QueueSettings",
        handlers: HandlerSet | Consumer | None = None,
        resolver: PriorityResolver | None = None,
        channel: NotificationChannel | None = None,
        name: str | None = None,
    ) -> "JobProcessor":
        configure_logging(settings.log_level)
        return cls(
            store,
            handlers=handlers,
            resolver=resolver,
            channel=channel,
            name=name,
            base_retry_delay=settings.base_retry_delay,
            max_retry_delay=settings.max_retry_delay,
            idle_timeout=settings.idle_timeout,
            handler_timeout=settings.handler_timeout,
            shutdown_timeout=settings.shutdown_timeout,
            shutdown_grace_seconds=settings.shutdown_grace_seconds,
            store_retry_delay=settings.store_retry_delay,
            max_consecutive_store_failures=settings.max_consecutive_store_failures,
            log_level=settings.log_level,
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ProcessorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def handler_set(self) -> HandlerSet:
        return self._handler_set

    @property
    def active_consumer_id(self) -> str | None:
        return self._handler_set.consumer_id

    @property
    def current_job(self) -> Job | None:
        return self._current_job

    def get_stats(self) -> ProcessorStats:
        """Return a copy of current statistics."""
        return ProcessorStats(
            jobs_processed=self._stats.jobs_processed,
            jobs_succeeded=self._stats.jobs_succeeded,
            jobs_skipped=self._stats.jobs_skipped,
            jobs_failed=self._stats.jobs_failed,
            jobs_terminal=self._stats.jobs_terminal,
            store_errors=self._stats.store_errors,
            handler_errors=defaultdict(int, self._stats.handler_errors),
        )

    def get_status(self) -> dict[str, Any]:
        stats = asdict(self.get_stats())
        stats["handler_errors"] = dict(stats["handler_errors"])
        return {
            "name": self.name,
            "state": self._state.value,
            "running": self._running,
            "consumer_id": self.active_consumer_id,
            "handlers": self.registered_handlers(),
            "current_job": self._current_job.id if self._current_job else None,
            "settings": {
                "base_retry_delay": self.base_retry_delay,
                "max_retry_delay": self.max_retry_delay,
                "idle_timeout": self.idle_timeout,
                "handler_timeout": self.handler_timeout,
                "shutdown_timeout": self.shutdown_timeout,
            },
            "stats": stats,
        }

    # -------------------------------------------------------------------------
    # Consumer binding
    # -------------------------------------------------------------------------

    def swap_active_consumer(
        self,
        handlers: HandlerSet | Consumer,
        profile: PriorityProfile | None = None,
    ) -> HandlerSet:
        """Replace the handler set and priority profile in one assignment.

        A job already claimed keeps the handler set captured at claim time;
        jobs claimed afterwards see the new one.

        Returns:
            The previous handler set.
        """
        new = handlers.handler_set() if isinstance(handlers, Consumer) else handlers
        if profile is not None:
            new = replace(new, profile=profile)

        if self.resolver is not None and new.consumer_id is not None and new.profile is not None:
            self.resolver.register_profile(new.consumer_id, new.profile)

        previous = self._handler_set
        self._handler_set = new

        if (
            self.resolver is not None
            and previous.consumer_id is not None
            and previous.consumer_id != new.consumer_id
        ):
            self.resolver.clear_profile(previous.consumer_id)

        self._log.info(
            f"Active consumer changed from {previous.consumer_id} to {new.consumer_id}",
            extra={
                "processor": self.name,
                "consumer_id": new.consumer_id,
                "previous_consumer_id": previous.consumer_id,
                "handlers": new.event_types,
            },
        )
        return previous

    def register_handler(self, event_type: str, handler: Handler) -> None:
        self._handler_set = self._handler_set.with_handler(event_type, handler)
        self._log.info(
            f"Registered handler for {event_type}",
            extra={"processor": self.name, "event_type": event_type},
        )

    def unregister_handler(self, event_type: str) -> bool:
        if event_type not in self._handler_set.handlers:
            return False
        self._handler_set = self._handler_set.without_handler(event_type)
        self._log.info(
            f"Unregistered handler for {event_type}",
            extra={"processor": self.name, "event_type": event_type},
        )
        return True

    def registered_handlers(self) -> list[str]:
        return self._handler_set.event_types

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def calculate_retry_delay(self, attempts: int) -> float:
        return calculate_retry_delay(attempts, self.base_retry_delay, self.max_retry_delay)

    async def _call(self, func: Any, *args: Any) -> Any:
        """Run a handler or predicate under ``handler_timeout``.

        Coroutine functions are awaited; plain callables run in a worker
        thread so a blocking consumer cannot stall the event loop.
        """
        if inspect.iscoroutinefunction(func):
            call = func(*args)
        else:
            call = asyncio.to_thread(func, *args)
        try:
            result = await asyncio.wait_for(call, timeout=self.handler_timeout)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.handler_timeout)
        except TimeoutError:
            raise TimeoutError(f"Handler timed out after {self.handler_timeout}s") from None
        return result

    async def _check_admission(self, binding: HandlerSet, job: Job) -> None:
        if binding.should_process is None:
            return
        accepted = await self._call(binding.should_process, job.event_type, dict(job.payload))
        if accepted is False:
            raise SkipJob(f"{job.event_type} event declined by {binding.consumer_id}")

    async def process_job(self, job: Job, binding: HandlerSet | None = None) -> LogStatus:
        """Run one claimed job to a recorded outcome.

        Returning normally is success. Raising or returning a SkipJob is a
        skip; raising or returning any other exception is a failure.
        Store errors propagate to the caller.
        """
        binding = binding or self._handler_set
        handler = binding.get_handler(job.event_type)
        started = time.perf_counter()

        try:
            if handler is None:
                raise NoHandlerError(job.event_type)
            await self._check_admission(binding, job)
            result = await self._call(handler, dict(job.payload))
            if isinstance(result, Exception):
                raise result
        except SkipJob as skip:
            await self._record_skip(job, binding, skip.reason, self._elapsed_ms(started))
            return LogStatus.SKIPPED
        except NoHandlerError as e:
            await self._record_failure(job, binding, e, self._elapsed_ms(started), terminal=True)
            return LogStatus.FAILED
        except Exception as e:
            await self._record_failure(job, binding, e, self._elapsed_ms(started))
            return LogStatus.FAILED

        await self._record_success(job, binding, self._elapsed_ms(started))
        return LogStatus.SUCCESS

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return max(0, round((time.perf_counter() - started) * 1000))

    async def _record_success(self, job: Job, binding: HandlerSet, duration_ms: int) -> None:
        await self.store.mark_completed(job.id)
        await self.store.append_log(
            ProcessingLogRecord(
                job_id=job.id,
                event_type=job.event_type,
                payload=job.payload,
                status=LogStatus.SUCCESS,
                duration_ms=duration_ms,
                consumer_id=binding.consumer_id,
                processed_at=self.store.now(),
            )
        )
        self._stats.jobs_processed += 1
        self._stats.jobs_succeeded += 1
        self._log.info(
            f"Job {job.id} completed in {duration_ms}ms",
            extra=job_fields(job, processor=self.name, duration_ms=duration_ms),
        )

    async def _record_skip(
        self, job: Job, binding: HandlerSet, reason: str, duration_ms: int
    ) -> None:
        await self.store.mark_completed(job.id, skip_reason=reason)
        await self.store.append_log(
            ProcessingLogRecord(
                job_id=job.id,
                event_type=job.event_type,
                payload=job.payload,
                status=LogStatus.SKIPPED,
                error_message=reason,
                duration_ms=duration_ms,
                consumer_id=binding.consumer_id,
                processed_at=self.store.now(),
            )
        )
        self._stats.jobs_processed += 1
        self._stats.jobs_skipped += 1
        self._log.info(
            f"Job {job.id} skipped: {reason}",
            extra=job_fields(job, processor=self.name, skip_reason=reason),
        )

    async def _record_failure(
        self,
        job: Job,
        binding: HandlerSet,
        error: Exception,
        duration_ms: int,
        terminal: bool = False,
    ) -> None:
        retry_delay = 0.0 if terminal else self.calculate_retry_delay(job.attempts)
        updated = await self.store.mark_failed(job.id, retry_delay, terminal=terminal)
        retired = updated is not None and updated.status is JobStatus.FAILED
        message = str(error) or type(error).__name__

        await self.store.append_log(
            ProcessingLogRecord(
                job_id=job.id,
                event_type=job.event_type,
                payload=job.payload,
                status=LogStatus.FAILED,
                error_message=message,
                duration_ms=duration_ms,
                consumer_id=binding.consumer_id,
                terminal=retired,
                processed_at=self.store.now(),
            )
        )
        self._stats.jobs_processed += 1
        self._stats.jobs_failed += 1
        self._stats.handler_errors[job.event_type] += 1

        if retired:
            self._stats.jobs_terminal += 1
            self._log.error(
                f"Job {job.id} permanently failed after {job.attempts} attempts: {message}",
                extra=job_fields(job, processor=self.name, error=message, terminal=True),
            )
        else:
            self._log.warning(
                f"Job {job.id} failed, retrying in {retry_delay:g}s: {message}",
                extra=job_fields(
                    job, processor=self.name, error=message, retry_delay=retry_delay
                ),
            )

    async def process_job_by_id(self, job_id: str) -> LogStatus:
        """Claim one specific pending job and process it now.

        Raises:
            JobNotAvailableError: The job is missing, not pending, not yet
                available or was claimed by another processor.
        """
        async with self._job_lock:
            job = await self.store.get(job_id)
            if job is None:
                raise JobNotAvailableError(job_id, "not found")
            if job.status is not JobStatus.PENDING:
                raise JobNotAvailableError(job_id, f"status is {job.status.value}")

            claimed = await self.store.try_claim(job_id)
            if claimed is None:
                raise JobNotAvailableError(job_id, "not eligible or claimed by another processor")
            return await self._process_claimed(claimed)

    async def _process_claimed(self, job: Job) -> LogStatus:
        # Binding captured at claim time survives a concurrent consumer swap
        binding = self._handler_set
        self._current_job = job
        self._state = ProcessorState.PROCESSING
        self._log.debug(
            f"Claimed job {job.id} (attempt {job.attempts}/{job.max_attempts})",
            extra=job_fields(job, processor=self.name),
        )
        try:
            return await self.process_job(job, binding)
        finally:
            self._current_job = None

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def _store_failure(self, error: Exception) -> None:
        self._consecutive_store_failures += 1
        self._stats.store_errors += 1
        self._last_store_error = str(error)
        failures = self._consecutive_store_failures

        limit = self.max_consecutive_store_failures
        self._log.error(
            f"Store operation failed ({failures}/{limit or 'unlimited'}): {error}",
            extra={"processor": self.name, "error": str(error), "consecutive_failures": failures},
        )
        if limit is not None and failures >= limit:
            raise StoreUnavailableError(
                f"Store unavailable after {failures} failures",
                failure_count=failures,
                last_error=self._last_store_error,
            )

        pause = min(self.store_retry_delay * (2 ** (failures - 1)), self.max_retry_delay)
        await self._idle_wait(pause)

    async def _idle_wait(self, timeout: float) -> None:
        if not self.channel.closed:
            await self.channel.wait(timeout)
        elif self._running:
            # Closed by a sibling sharing this channel; fall back to polling.
            await asyncio.sleep(timeout)

    def _arm(self) -> None:
        self.channel.reopen()
        self._running = True
        self._state = ProcessorState.RUNNING

    async def run(self) -> ProcessorStats:
        """Run the loop until ``stop()`` or ``shutdown()``.

        May be called again after ``stop()``; the wake channel is reopened.

        Raises:
            StoreUnavailableError: The store failed more than
                ``max_consecutive_store_failures`` times in a row.
        """
        self._arm()
        return await self._loop()

    async def _loop(self) -> ProcessorStats:
        self._consecutive_store_failures = 0
        self._log.info(
            f"Processor {self.name} started",
            extra={"processor": self.name, "consumer_id": self.active_consumer_id},
        )

        try:
            while self._running:
                job: Job | None = None
                store_error: Exception | None = None
                async with self._job_lock:
                    self._state = ProcessorState.CLAIMING
                    try:
                        job = await claim_next_job(self.store)
                        if job is not None:
                            await self._process_claimed(job)
                    except Exception as e:
                        store_error = e

                if store_error is not None:
                    await self._store_failure(store_error)
                    continue
                self._consecutive_store_failures = 0
                self._last_store_error = None

                if job is None and self._running:
                    self._state = ProcessorState.IDLE
                    await self._idle_wait(self.idle_timeout)
                elif self._running:
                    self._state = ProcessorState.RUNNING
        finally:
            self._running = False
            self._state = ProcessorState.STOPPED

        return self._stats

    def start(self) -> "asyncio.Task[ProcessorStats]":
        """Run the loop as a background task; returns the running task."""
        if self._task is not None and not self._task.done():
            return self._task
        self._stats = ProcessorStats()
        self._arm()
        self._task = asyncio.create_task(self._loop(), name=f"livequeue-{self.name}")
        return self._task

    def stop(self) -> None:
        """Stop claiming and wake an idle wait. Does not wait for the in-flight job."""
        self._running = False
        self.channel.close()

    async def shutdown(self, timeout: float | None = None) -> ProcessorStats:
        """Drain gracefully.

        Stops claiming, waits up to ``timeout`` (default ``shutdown_timeout``)
        for the in-flight job, cancels it past the deadline, then resets
        processing jobs older than ``shutdown_grace_seconds`` to pending.
        """
        timeout = self.shutdown_timeout if timeout is None else timeout
        task = self._task
        self.stop()
        if task is None:
            return self.get_stats()

        self._state = ProcessorState.DRAINING
        in_flight = self._current_job
        self._log.info(
            f"Processor {self.name} draining",
            extra={"processor": self.name, "job_id": in_flight.id if in_flight else None},
        )

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except TimeoutError:
            stuck = self._current_job
            self._log.warning(
                f"Processor {self.name} did not drain within {timeout}s, cancelling",
                extra={"processor": self.name, "job_id": stuck.id if stuck else None},
            )
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            if stuck is not None:
                await self.store.release(stuck.id)
        except StoreUnavailableError as e:
            self._log.error(
                f"Processor {self.name} stopped on store failure: {e}",
                extra={"processor": self.name, "error": str(e)},
            )
            self._task = None
            return self.get_stats()

        cutoff = self.store.now() - timedelta(seconds=self.shutdown_grace_seconds)
        reset = await self.store.reset_stuck(cutoff)
        if reset > 0:
            self._log.warning(
                f"Reset {reset} stuck jobs during shutdown",
                extra={"processor": self.name, "reset": reset},
            )

        self._task = None
        self._state = ProcessorState.STOPPED
        self._log.info(f"Processor {self.name} stopped", extra={"processor": self.name})
        return self.get_stats()


class ProcessorPool:
    """Named collection of processors sharing one store.

    When a manager is given, every added processor is registered with it so
    enqueues wake the processor's channel.
    """

    def __init__(self, manager: "QueueManager | None" = None) -> None:
        self.manager = manager
        self._processors: dict[str, JobProcessor] = {}
        self._log = configure_processor_logger()

    def __len__(self) -> int:
        return len(self._processors)

    def __iter__(self) -> Iterator[JobProcessor]:
        return iter(list(self._processors.values()))

    def __contains__(self, name: object) -> bool:
        return name in self._processors

    @property
    def names(self) -> list[str]:
        return list(self._processors)

    def add(self, processor: JobProcessor) -> JobProcessor:
        if processor.name in self._processors:
            raise ValueError(f"Processor {processor.name!r} already exists")
        self._processors[processor.name] = processor
        if self.manager is not None:
            self.manager.register_processor(processor)
        self._log.info(f"Added processor {processor.name}", extra={"processor": processor.name})
        return processor

    def get(self, name: str) -> JobProcessor | None:
        return self._processors.get(name)

    async def remove(self, name: str) -> JobProcessor | None:
        """Shut the processor down and drop it from the pool."""
        processor = self._processors.pop(name, None)
        if processor is None:
            return None
        await processor.shutdown()
        if self.manager is not None:
            self.manager.unregister_processor(processor)
        self._log.info(f"Removed processor {name}", extra={"processor": name})
        return processor

    def start_all(self) -> list["asyncio.Task[ProcessorStats]"]:
        return [processor.start() for processor in self._processors.values()]

    async def shutdown_all(self, timeout: float | None = None) -> dict[str, ProcessorStats]:
        """Drain every processor concurrently."""
        processors = list(self._processors.values())
        results = await asyncio.gather(
            *(processor.shutdown(timeout) for processor in processors),
            return_exceptions=True,
        )
        stats: dict[str, ProcessorStats] = {}
        for processor, result in zip(processors, results, strict=True):
            if isinstance(result, BaseException):
                self._log.error(
                    f"Processor {processor.name} failed to shut down: {result}",
                    extra={"processor": processor.name, "error": str(result)},
                )
                continue
            stats[processor.name] = result
        return stats

    def get_status(self) -> dict[str, dict[str, Any]]:
        return {name: processor.get_status() for name, processor in self._processors.items()}
