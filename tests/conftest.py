"""Pytest configuration, Hypothesis profiles and shared fixtures."""

import logging
from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import settings

from livequeue.core.job import Job
from livequeue.core.logging import configure_logging
from livequeue.core.priority import PriorityResolver
from livequeue.stores.memory import InMemoryJobStore

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


class FakeClock:
    """Controllable UTC clock injected into stores."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio."""
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryJobStore:
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def resolver() -> PriorityResolver:
    return PriorityResolver()


@pytest.fixture
def make_job(clock: FakeClock):
    """Factory for jobs stamped with the fake clock."""

    def _make(event_type: str = "chat", **fields) -> Job:
        now = clock()
        fields.setdefault("available_at", now)
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        return Job(event_type=event_type, **fields)

    return _make


@pytest.fixture(autouse=True)
def reset_log_level():
    """Restore the package log level after tests that configure it."""
    yield
    configure_logging(logging.INFO)
