"""Database module for Document Job Orchestrator.

Module organization:
- types.py: Enums and dataclasses for jobs, events and dead letters
- connection.py: Writer/reader ConnectionPool and lock retry
- schema/: Schema DDL and initialization
- queries/: SQL operations grouped by table

Usage:
    from djo.db import ConnectionPool, Job, JobStatus, initialize_database
"""

from .connection import (
    ConnectionPool,
    DatabaseLockedError,
    execute_with_retry,
    get_connection,
    get_default_db_path,
)
from .schema import SCHEMA_VERSION, initialize_database
from .types import (
    ACTIVE_STATUSES,
    RETRYABLE_ERROR_CLASSES,
    TERMINAL_STATUSES,
    DeadLetterRecord,
    ErrorCategory,
    ErrorClass,
    IdempotencyRecord,
    Job,
    JobError,
    JobEvent,
    JobStatus,
    JobType,
)

__all__ = [
    # Connection
    "ConnectionPool",
    "DatabaseLockedError",
    "execute_with_retry",
    "get_connection",
    "get_default_db_path",
    # Schema
    "SCHEMA_VERSION",
    "initialize_database",
    # Types
    "ACTIVE_STATUSES",
    "RETRYABLE_ERROR_CLASSES",
    "TERMINAL_STATUSES",
    "DeadLetterRecord",
    "ErrorCategory",
    "ErrorClass",
    "IdempotencyRecord",
    "Job",
    "JobError",
    "JobEvent",
    "JobStatus",
    "JobType",
]
