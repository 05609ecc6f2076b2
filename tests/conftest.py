"""Shared test fixtures for Document Job Orchestrator."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from djo.config.models import (
    AIRateLimitConfig,
    DJOConfig,
    JobTypeConfig,
    JobTypesConfig,
    QueueConfig,
    WorkerConfig,
)
from djo.db.connection import ConnectionPool, get_connection
from djo.db.schema import initialize_database
from djo.db.types import ErrorClass, JobType
from djo.jobs.engine import Engine, create_engine
from djo.jobs.handlers import HandlerRegistry, TaskError, simulated_handlers
from djo.jobs.store import JobStore


class FakeClock:
    """Controllable UTC clock for the store."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)


class FixedRandom:
    """Jitter source that always returns the same fraction."""

    def __init__(self, value: float = 1.0) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


class ScriptedHandler:
    """Task handler that plays back a list of outcomes, one per attempt.

    Each outcome is either a result dict or an exception instance to raise.
    Stages are reported before the outcome is applied.
    """

    def __init__(
        self,
        outcomes: list[Any],
        stages: tuple[tuple[str, int], ...] = (("working", 50),),
    ) -> None:
        self._outcomes = list(outcomes)
        self._stages = stages
        self.calls = 0
        self.payloads: list[dict[str, Any]] = []

    def execute(self, payload: dict[str, Any], reporter: Any) -> dict[str, Any]:
        self.calls += 1
        self.payloads.append(payload)
        for stage, progress in self._stages:
            reporter.report(stage, progress)
        outcome = self._outcomes.pop(0) if self._outcomes else {"ok": True}
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def transient(message: str = "storage unavailable") -> TaskError:
    return TaskError(ErrorClass.TRANSIENT_STORAGE, message)


def fast_job_type(**overrides: Any) -> JobTypeConfig:
    values = {
        "max_attempts": 3,
        "backoff_base_seconds": 0.01,
        "backoff_cap_seconds": 0.02,
        "timeout_seconds": 5.0,
        "workers": 1,
    }
    values.update(overrides)
    return JobTypeConfig(**values)


@pytest.fixture
def clock() -> FakeClock:
    """Store clock that only moves when a test advances it."""
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Path of a fresh job database."""
    return tmp_path / "jobs.db"


@pytest.fixture
def config(db_path: Path) -> DJOConfig:
    """Configuration with short delays suited to tests."""
    return DJOConfig(
        jobs=JobTypesConfig(
            convert=fast_job_type(max_per_resource=1),
            export=fast_job_type(max_per_resource=2),
            ai=fast_job_type(max_attempts=2),
        ),
        queue=QueueConfig(high_watermark=100, low_watermark=50, sustained_seconds=5),
        ai_rate_limit=AIRateLimitConfig(max_requests=20, window_seconds=60),
        worker=WorkerConfig(
            liveness_timeout_seconds=30.0,
            heartbeat_interval_seconds=0.05,
            poll_interval_seconds=0.01,
            maintenance_interval_seconds=0.05,
            backoff_seed=7,
        ),
        database_path=db_path,
        handlers="simulated",
    )


@pytest.fixture
def pool(db_path: Path) -> Iterator[ConnectionPool]:
    """Connection pool over an initialized database."""
    with get_connection(db_path) as conn:
        initialize_database(conn)
    pool = ConnectionPool(db_path)
    yield pool
    pool.close()


@pytest.fixture
def store(pool: ConnectionPool, clock: FakeClock) -> JobStore:
    """JobStore driven by the fake clock."""
    return JobStore(pool, clock=clock)


@pytest.fixture
def registry() -> HandlerRegistry:
    """Simulated handlers with no pauses between stages."""
    return simulated_handlers(step_delay=0)


@pytest.fixture
def make_engine(
    config: DJOConfig, clock: FakeClock
) -> Iterator[Callable[..., Engine]]:
    """Factory building engines over the test database.

    Keyword arguments replace config sections, e.g.
    ``make_engine(queue=QueueConfig(...), registry=...)``.
    """
    engines: list[Engine] = []

    def _make(registry: HandlerRegistry | None = None, **overrides: Any) -> Engine:
        engine = create_engine(
            replace(config, **overrides),
            registry=registry or simulated_handlers(step_delay=0),
            clock=clock,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture
def engine(make_engine: Callable[..., Engine]) -> Engine:
    """Engine with simulated handlers."""
    return make_engine()


@pytest.fixture
def convert_payload() -> dict[str, Any]:
    return {"objectKey": "uploads/deck.pptx", "sourceType": "pptx"}


@pytest.fixture
def export_payload() -> dict[str, Any]:
    return {"documentId": "doc_123", "format": "pdf"}


@pytest.fixture
def ai_payload() -> dict[str, Any]:
    return {"messages": [{"role": "user", "content": "hello there"}]}


@pytest.fixture
def scripted_registry() -> Callable[..., tuple[HandlerRegistry, ScriptedHandler]]:
    """Factory for a registry whose handler for one type is scripted."""

    def _make(
        outcomes: list[Any],
        job_type: JobType = JobType.CONVERT,
        **kwargs: Any,
    ) -> tuple[HandlerRegistry, ScriptedHandler]:
        handler = ScriptedHandler(outcomes, **kwargs)
        return HandlerRegistry({job_type: handler}), handler

    return _make


@pytest.fixture
def transient_error() -> Callable[..., TaskError]:
    return transient


@pytest.fixture
def fixed_random() -> type[FixedRandom]:
    return FixedRandom
