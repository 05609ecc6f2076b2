"""Type definitions for Document Job Orchestrator database records.

Enums and dataclasses shared by the job store, event log, idempotency
index and dead-letter store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobType(Enum):
    """Type of job in the queue."""

    CONVERT = "convert"  # Source document -> internal document
    EXPORT = "export"  # Internal document -> pptx/pdf artifact
    AI = "ai"  # AI-assisted chat/edit operation


class JobStatus(Enum):
    """Status of a job in the lifecycle state machine."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        """True for succeeded, failed and canceled."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED}
)

ACTIVE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.RUNNING}
)


class ErrorCategory(Enum):
    """Top-level error taxonomy used for recovery decisions."""

    VALIDATION = "validation"  # Bad input, never retried
    RESOURCE = "resource"  # Not found / permission, never retried
    TRANSIENT = "transient"  # Storage, network, provider overload
    WORKER_LOST = "worker_lost"  # Heartbeat expiry, retried as transient
    INTERNAL_BUG = "internal_bug"  # Escalated, never retried


class ErrorClass(Enum):
    """Fine-grained error class reported by task handlers."""

    # Retryable
    TRANSIENT_STORAGE = "transient_storage"
    NETWORK_TIMEOUT = "network_timeout"
    MODEL_OVERLOADED = "model_overloaded"
    AI_RATE_LIMIT = "ai_rate_limit"
    JOB_TIMEOUT = "job_timeout"
    WORKER_LOST = "worker_lost"

    # Non-retryable
    VALIDATION_ERROR = "validation_error"
    UNSUPPORTED_FORMAT = "unsupported_format"
    QUOTA_EXCEEDED = "quota_exceeded"
    CORRUPTION_DETECTED = "corruption_detected"
    RESOURCE_NOT_FOUND = "resource_not_found"
    PERMISSION_DENIED = "permission_denied"
    INTERNAL_BUG = "internal_bug"

    @property
    def retryable(self) -> bool:
        """Whether failures of this class may be retried."""
        return self in RETRYABLE_ERROR_CLASSES

    @property
    def category(self) -> ErrorCategory:
        """Taxonomy category this class belongs to."""
        return _ERROR_CATEGORIES[self]


RETRYABLE_ERROR_CLASSES: frozenset[ErrorClass] = frozenset(
    {
        ErrorClass.TRANSIENT_STORAGE,
        ErrorClass.NETWORK_TIMEOUT,
        ErrorClass.MODEL_OVERLOADED,
        ErrorClass.AI_RATE_LIMIT,
        ErrorClass.JOB_TIMEOUT,
        ErrorClass.WORKER_LOST,
    }
)

_ERROR_CATEGORIES: dict[ErrorClass, ErrorCategory] = {
    ErrorClass.TRANSIENT_STORAGE: ErrorCategory.TRANSIENT,
    ErrorClass.NETWORK_TIMEOUT: ErrorCategory.TRANSIENT,
    ErrorClass.MODEL_OVERLOADED: ErrorCategory.TRANSIENT,
    ErrorClass.AI_RATE_LIMIT: ErrorCategory.TRANSIENT,
    ErrorClass.JOB_TIMEOUT: ErrorCategory.TRANSIENT,
    ErrorClass.WORKER_LOST: ErrorCategory.WORKER_LOST,
    ErrorClass.VALIDATION_ERROR: ErrorCategory.VALIDATION,
    ErrorClass.UNSUPPORTED_FORMAT: ErrorCategory.VALIDATION,
    ErrorClass.QUOTA_EXCEEDED: ErrorCategory.RESOURCE,
    ErrorClass.CORRUPTION_DETECTED: ErrorCategory.VALIDATION,
    ErrorClass.RESOURCE_NOT_FOUND: ErrorCategory.RESOURCE,
    ErrorClass.PERMISSION_DENIED: ErrorCategory.RESOURCE,
    ErrorClass.INTERNAL_BUG: ErrorCategory.INTERNAL_BUG,
}


@dataclass(frozen=True)
class JobError:
    """Last error descriptor attached to a job."""

    code: str  # Machine-readable code, e.g. "TRANSIENT_STORAGE"
    message: str
    error_class: ErrorClass
    retryable: bool

    @classmethod
    def from_class(
        cls, error_class: ErrorClass, message: str, code: str | None = None
    ) -> JobError:
        """Build a descriptor whose retryability follows the error class."""
        return cls(
            code=code or error_class.value.upper(),
            message=message,
            error_class=error_class,
            retryable=error_class.retryable,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "class": self.error_class.value,
            "retryable": self.retryable,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobError:
        """Rebuild a descriptor from its serialized form."""
        return cls(
            code=data["code"],
            message=data.get("message", ""),
            error_class=ErrorClass(data["class"]),
            retryable=bool(data.get("retryable", False)),
        )


@dataclass(frozen=True)
class Job:
    """Database record for jobs table."""

    id: str  # UUID v4
    job_type: JobType
    status: JobStatus
    payload: dict[str, Any]  # Caller-owned, immutable after creation
    requested_by: str  # Principal identifier, immutable
    max_attempts: int

    # Timing (all ISO-8601 UTC, server clock)
    created_at: str
    updated_at: str
    started_at: str | None = None
    completed_at: str | None = None

    # Progress tracking
    stage: str = "queued"
    progress: int = 0  # 0 - 100, monotonic
    attempts: int = 0

    # Outcome
    result: dict[str, Any] | None = None  # Set only on success
    error: JobError | None = None

    # Submission metadata
    idempotency_key: str | None = None
    parent_job_id: str | None = None  # Set when reprocessed from a dead letter
    resource_key: str | None = None  # Per-resource concurrency slot

    # Worker tracking
    worker_id: str | None = None
    heartbeat_at: str | None = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        """True once the job can no longer change state."""
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase shape returned to API callers."""
        return {
            "id": self.id,
            "type": self.job_type.value,
            "status": self.status.value,
            "stage": self.stage,
            "progress": self.progress,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "payload": self.payload,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
            "requestedBy": self.requested_by,
            "idempotencyKey": self.idempotency_key,
            "parentJobId": self.parent_job_id,
            "cancelRequested": self.cancel_requested,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }


@dataclass(frozen=True)
class JobEvent:
    """Immutable progress record in the append-only event log."""

    id: str
    job_id: str
    seq: int  # Store logical clock; strictly increasing per job
    timestamp: str
    status: JobStatus
    stage: str
    progress: int
    attempt: int
    message: str | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "jobId": self.job_id,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "stage": self.stage,
            "progress": self.progress,
            "attempt": self.attempt,
            "message": self.message,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class IdempotencyRecord:
    """Maps a caller's idempotency key to the job it created."""

    requested_by: str
    key: str
    payload_fingerprint: str
    job_id: str
    created_at: str


@dataclass(frozen=True)
class DeadLetterRecord:
    """Snapshot of a terminally failed job kept for inspection."""

    id: str
    job_id: str
    job_type: JobType
    payload: dict[str, Any]
    attempts: int
    last_error: JobError | None
    requested_by: str
    created_at: str  # Of the original job
    failed_at: str
    started_at: str | None = None
    reprocessed_job_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "jobId": self.job_id,
            "type": self.job_type.value,
            "payload": self.payload,
            "attempts": self.attempts,
            "lastError": self.last_error.to_dict() if self.last_error else None,
            "requestedBy": self.requested_by,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "failedAt": self.failed_at,
            "reprocessedJobId": self.reprocessed_job_id,
        }
