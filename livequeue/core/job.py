"""Job and processing-log models for livequeue."""

import json
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

# UUID v4 regex pattern for validation
_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# Maximum payload size (1MB)
MAX_PAYLOAD_SIZE = 1_000_000

MIN_PRIORITY = 0
MAX_PRIORITY = 1000


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Lifecycle state of a queued job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class LogStatus(str, Enum):
    """Outcome recorded in a processing log row."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


def _validate_payload(v: dict[str, Any]) -> dict[str, Any]:
    try:
        serialized = json.dumps(v)
    except (TypeError, ValueError) as e:
        raise ValueError(f"payload must be JSON-serializable: {e}") from e

    byte_length = len(serialized.encode("utf-8"))
    if byte_length > MAX_PAYLOAD_SIZE:
        raise ValueError(
            f"payload exceeds maximum size of {MAX_PAYLOAD_SIZE} bytes "
            f"(got {byte_length} bytes)"
        )
    return v


class Job(BaseModel):
    """Immutable snapshot of a persisted unit of work.

    Stores never mutate a Job in place; every transition returns a new
    snapshot built with ``model_copy(update=...)``.

    Attributes:
        id: UUID v4 string, assigned at insertion.
        event_type: Tag selecting the handler (``gift``, ``chat``, ...).
        payload: JSON-serializable document passed verbatim to the handler.
        priority: Higher is served first. Fixed at enqueue time.
        status: Position in the pending/processing/completed/failed machine.
        attempts: Claims performed so far.
        max_attempts: Ceiling after which a failure is terminal.
        available_at: Not claimable before this instant (retry backoff).
        processed_at: Set when the job reaches a terminal state.
        consumer_id: Consumer whose priority profile resolved ``priority``.
        skip_reason: Set when the job completed through the skip path.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=0, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    status: JobStatus = JobStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1, le=20)
    available_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    consumer_id: str | None = None
    skip_reason: str | None = None

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not _UUID_PATTERN.match(v):
            raise ValueError(f"id must be a valid UUID v4 string, got: {v!r}")
        return v.lower()

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("event_type must not be empty")
        return v

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, v: dict[str, Any]) -> dict[str, Any]:
        return _validate_payload(v)

    @model_validator(mode="after")
    def validate_attempts(self) -> "Job":
        if self.attempts > self.max_attempts:
            raise ValueError(
                f"attempts ({self.attempts}) must not exceed max_attempts ({self.max_attempts})"
            )
        return self

    @property
    def is_retryable(self) -> bool:
        return self.attempts < self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def is_eligible(self, now: datetime) -> bool:
        """Whether the job may be claimed at ``now``."""
        return (
            self.status is JobStatus.PENDING
            and self.available_at <= now
            and self.attempts < self.max_attempts
        )


class ProcessingLogRecord(BaseModel):
    """Append-only record of one processing outcome."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    job_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: LogStatus
    error_message: str | None = None
    duration_ms: int = Field(default=0, ge=0)
    consumer_id: str | None = None
    terminal: bool = False
    processed_at: datetime = Field(default_factory=utcnow)

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }


@dataclass
class DurationStats:
    count: int = 0
    avg_ms: float = 0.0
    min_ms: int = 0
    max_ms: int = 0


@dataclass
class LogSummary:
    """Aggregate view over a window of processing log records."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    by_type: dict[tuple[str, str], DurationStats] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        """Percentage of successful records; 100 when the window is empty."""
        if self.total == 0:
            return 100.0
        return round(self.successful / self.total * 100, 2)


def summarize_logs(records: list[ProcessingLogRecord]) -> LogSummary:
    """Aggregate log records per outcome and per (event_type, status)."""
    summary = LogSummary(total=len(records))
    durations: dict[tuple[str, str], list[int]] = defaultdict(list)

    for record in records:
        if record.status is LogStatus.SUCCESS:
            summary.successful += 1
        elif record.status is LogStatus.FAILED:
            summary.failed += 1
        else:
            summary.skipped += 1
        durations[(record.event_type, record.status.value)].append(record.duration_ms)

    for key in sorted(durations):
        values = durations[key]
        summary.by_type[key] = DurationStats(
            count=len(values),
            avg_ms=round(sum(values) / len(values), 2),
            min_ms=min(values),
            max_ms=max(values),
        )
    return summary
