"""Wiring of the orchestration engine from configuration."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from djo.config.models import DJOConfig
from djo.core.datetime_utils import utc_now
from djo.db.connection import (
    ConnectionPool,
    ensure_db_directory,
    get_connection,
    get_default_db_path,
)
from djo.db.schema import initialize_database
from djo.jobs.coordinator import LifecycleCoordinator
from djo.jobs.events import EventLog
from djo.jobs.handlers import HandlerRegistry, build_registry
from djo.jobs.idempotency import IdempotencyIndex
from djo.jobs.queue import Dispatcher
from djo.jobs.retry import RetryController
from djo.jobs.store import JobStore
from djo.jobs.worker import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """A wired engine: storage, coordinator and task handlers."""

    config: DJOConfig
    pool: ConnectionPool
    store: JobStore
    coordinator: LifecycleCoordinator
    registry: HandlerRegistry

    def worker_pool(self) -> WorkerPool:
        """Build a worker pool over this engine's coordinator and handlers."""
        return WorkerPool(self.coordinator, self.registry, self.config)

    def close(self) -> None:
        self.pool.close()


def create_engine(
    config: DJOConfig,
    *,
    registry: HandlerRegistry | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Engine:
    """Open (and if needed initialize) the database and wire the engine.

    Args:
        config: Orchestrator configuration.
        registry: Task handlers; defaults to the configured handler set.
        clock: UTC clock used for every persisted timestamp.

    Returns:
        The wired engine. Call ``close()`` when done.
    """
    db_path = config.database_path or get_default_db_path()
    ensure_db_directory(db_path)
    with get_connection(db_path) as conn:
        initialize_database(conn)

    pool = ConnectionPool(db_path)
    store = JobStore(
        pool,
        clock=clock,
        idempotency_ttl=timedelta(hours=config.retention.idempotency_ttl_hours),
    )
    coordinator = LifecycleCoordinator(
        store,
        config,
        dispatcher=Dispatcher(store, config),
        retry=RetryController(
            config.jobs,
            dead_letter_enabled=config.dead_letter.enabled,
            seed=config.worker.backoff_seed,
        ),
        events=EventLog(store, poll_interval=config.worker.poll_interval_seconds),
        idempotency=IdempotencyIndex(store),
    )
    if registry is None:
        registry = build_registry(config.handlers)

    logger.debug(
        "Engine ready: database=%s handlers=%s",
        db_path,
        ",".join(t.value for t in registry.job_types) or "none",
    )
    return Engine(
        config=config,
        pool=pool,
        store=store,
        coordinator=coordinator,
        registry=registry,
    )
