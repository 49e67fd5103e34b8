"""Exception taxonomy for the livequeue engine."""


class QueueFullError(Exception):
    """Raised by enqueue when the queue is at capacity and the event is too low priority.

    Attributes:
        event_type: The rejected event type.
        priority: The priority the event resolved to.
        current_size: Active (pending + processing) jobs at rejection time.
        max_size: Configured queue capacity.
    """

    def __init__(self, event_type: str, priority: int, current_size: int, max_size: int) -> None:
        self.event_type = event_type
        self.priority = priority
        self.current_size = current_size
        self.max_size = max_size
        super().__init__(
            f"Queue is full ({current_size}/{max_size}) and priority {priority} "
            f"of {event_type!r} is too low"
        )


class SkipJob(Exception):
    """Raised by a handler or admission predicate to decline a job without retry."""

    def __init__(self, reason: str = "skipped") -> None:
        self.reason = reason
        super().__init__(reason)


class NoHandlerError(Exception):
    """Raised when a claimed job has no registered handler for its event type."""

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(f"No handler registered for event type: {event_type}")


class JobNotAvailableError(Exception):
    """Raised when a specific job cannot be claimed for processing."""

    def __init__(self, job_id: str, reason: str) -> None:
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} not available for processing: {reason}")


class StoreUnavailableError(Exception):
    """Raised when the job store fails consecutively beyond threshold.

    Attributes:
        failure_count: Number of consecutive failures that triggered this error.
        last_error: The last exception message from the store.
    """

    def __init__(self, message: str, failure_count: int = 0, last_error: str | None = None):
        self.failure_count = failure_count
        self.last_error = last_error
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_error:
            return f"{base} (last error: {self.last_error})"
        return base
