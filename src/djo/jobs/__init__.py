"""Job orchestration engine for Document Job Orchestrator.

This module provides the job lifecycle machinery:
- store: Job persistence with compare-and-swap transitions and event append
- state: Status edges and state invariants
- events: Ordered, replayable event log
- idempotency: Submission deduplication by idempotency key
- queue: Admission control and FIFO claiming
- retry: Retry/backoff decisions
- coordinator: Engine API and owner of every transition
- executor: Runs one claimed job through its attempts
- worker: Worker thread pool with maintenance loop
- handlers: Task handler contract, registry and simulated handlers
- engine: Wiring from configuration
"""

from djo.jobs.coordinator import LifecycleCoordinator
from djo.jobs.engine import Engine, create_engine
from djo.jobs.events import EventLog
from djo.jobs.exceptions import (
    ConcurrencyLimitError,
    ConcurrentModificationError,
    DeadLetterAlreadyReprocessedError,
    DeadLetterNotFoundError,
    HandlerNotFoundError,
    IdempotencyConflictError,
    InvalidTransitionError,
    InvariantViolationError,
    JobNotFoundError,
    OrchestratorError,
    PayloadValidationError,
    QueueOverloadedError,
    RateLimitedError,
)
from djo.jobs.executor import JobCanceled, ProgressReporter, WorkerExecutor
from djo.jobs.handlers import (
    HandlerRegistry,
    Reporter,
    TaskError,
    TaskHandler,
    build_registry,
    simulated_handlers,
)
from djo.jobs.idempotency import IdempotencyIndex, fingerprint
from djo.jobs.queue import AdmissionController, Dispatcher
from djo.jobs.retry import Retry, RetryController, RetryDecision, Terminal
from djo.jobs.store import JobStore
from djo.jobs.worker import WorkerPool

__all__ = [
    # Engine
    "Engine",
    "create_engine",
    "LifecycleCoordinator",
    "JobStore",
    "EventLog",
    "IdempotencyIndex",
    "fingerprint",
    "AdmissionController",
    "Dispatcher",
    "Retry",
    "RetryController",
    "RetryDecision",
    "Terminal",
    # Execution
    "JobCanceled",
    "ProgressReporter",
    "WorkerExecutor",
    "WorkerPool",
    "HandlerRegistry",
    "Reporter",
    "TaskError",
    "TaskHandler",
    "build_registry",
    "simulated_handlers",
    # Exceptions
    "ConcurrencyLimitError",
    "ConcurrentModificationError",
    "DeadLetterAlreadyReprocessedError",
    "DeadLetterNotFoundError",
    "HandlerNotFoundError",
    "IdempotencyConflictError",
    "InvalidTransitionError",
    "InvariantViolationError",
    "JobNotFoundError",
    "OrchestratorError",
    "PayloadValidationError",
    "QueueOverloadedError",
    "RateLimitedError",
]
