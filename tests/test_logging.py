"""Smoke tests for structured logging output shape.

Every state transition the processor makes logs the job's structured
fields; the JSON formatter puts them in the rendered line.
"""

import json
import logging
import sys

import pytest

from livequeue.core.consumer import HandlerSet
from livequeue.core.job import Job
from livequeue.core.logging import JSONFormatter, configure_logging, get_logger, job_fields
from livequeue.core.processor import JobProcessor
from livequeue.stores.base import claim_next_job


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def log_capture():
    """Capture records from the livequeue.processor logger."""
    logger = logging.getLogger("livequeue.processor")
    handler = LogCapture()
    handler.setLevel(logging.DEBUG)
    original_level = logger.level

    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield handler

    logger.removeHandler(handler)
    logger.setLevel(original_level)


async def test_completion_log_contains_job_fields(log_capture, store, make_job):
    processor = JobProcessor(
        store, HandlerSet(consumer_id="game", handlers={"gift": lambda p: None}), name="p1"
    )
    job = await store.insert(make_job("gift", priority=100))

    await processor.process_job(await claim_next_job(store))

    completed = [r for r in log_capture.records if "completed" in r.getMessage()]
    assert len(completed) == 1
    record = completed[0]
    assert record.job_id == job.id
    assert record.event_type == "gift"
    assert record.priority == 100
    assert record.processor == "p1"
    assert record.attempts == 1


async def test_failure_logs_warning_then_error(log_capture, store, make_job):
    def fails(payload):
        raise RuntimeError("boom")

    processor = JobProcessor(store, HandlerSet(handlers={"chat": fails}), base_retry_delay=0)
    await store.insert(make_job("chat", max_attempts=2))

    await processor.process_job(await claim_next_job(store))
    await processor.process_job(await claim_next_job(store))

    levels = [r.levelno for r in log_capture.records if "boom" in r.getMessage()]
    assert levels == [logging.WARNING, logging.ERROR]
    assert log_capture.records[-1].terminal is True


def test_json_formatter_output():
    job = Job(event_type="gift", priority=100, consumer_id="overlay")
    record = logging.LogRecord(
        name="livequeue.processor",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Job completed",
        args=(),
        exc_info=None,
    )
    for key, value in job_fields(job, processor="p1", duration_ms=12).items():
        setattr(record, key, value)

    data = json.loads(JSONFormatter().format(record))

    assert data["message"] == "Job completed"
    assert data["level"] == "INFO"
    assert data["logger"] == "livequeue.processor"
    assert data["job_id"] == job.id
    assert data["consumer_id"] == "overlay"
    assert data["priority"] == 100
    assert data["processor"] == "p1"
    assert data["duration_ms"] == 12
    assert data["timestamp"].endswith("+00:00")
    assert list(data)[4:9] == ["job_id", "event_type", "consumer_id", "priority", "processor"]


def test_json_formatter_includes_exception():
    try:
        raise ValueError("bad")
    except ValueError:
        exc_info = sys.exc_info()
    record = logging.LogRecord("livequeue", logging.ERROR, __file__, 1, "failed", (), exc_info)
    data = json.loads(JSONFormatter().format(record))
    assert "ValueError: bad" in data["exc_info"]


def test_get_logger_installs_single_handler():
    first = get_logger("livequeue.test-single")
    second = get_logger("livequeue.test-single")
    assert first is second
    assert len(first.handlers) == 1
    assert isinstance(first.handlers[0].formatter, JSONFormatter)
    assert first.propagate is False


def test_get_logger_accepts_level_names():
    assert get_logger("livequeue.test-level", "DEBUG").level == logging.DEBUG
    assert get_logger("livequeue.test-bogus", "NOPE").level == logging.INFO


def test_configure_logging_sets_existing_and_new_loggers():
    existing = get_logger("livequeue.test-existing")

    assert configure_logging("error") == logging.ERROR

    assert existing.level == logging.ERROR
    assert logging.getLogger("livequeue").level == logging.ERROR
    assert get_logger("livequeue.test-created-later").level == logging.ERROR
    assert get_logger("livequeue.test-explicit", "DEBUG").level == logging.DEBUG


def test_processor_without_level_keeps_package_level(store):
    configure_logging(logging.WARNING)
    processor = JobProcessor(store)
    assert processor._log.level == logging.WARNING
