"""Custom exceptions for the job lifecycle engine.

Every error surfaced through the engine API carries a machine-readable
``code`` and the HTTP ``status`` the gateway answers with, so callers and
the server layer can map them without inspecting messages.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base exception for engine API errors.

    All engine exceptions inherit from this class, allowing callers
    to catch all of them with a single except clause if desired.
    """

    code = "INTERNAL_ERROR"
    status = 500


class JobNotFoundError(OrchestratorError):
    """Raised when a job doesn't exist in the store.

    Attributes:
        job_id: The ID of the job that was not found.
        operation: The operation that was attempted (e.g., "get", "cancel").
    """

    code = "JOB_NOT_FOUND"
    status = 404

    def __init__(self, job_id: str, operation: str) -> None:
        self.job_id = job_id
        self.operation = operation
        super().__init__(f"Cannot {operation} job {job_id}: not found")


class ConcurrentModificationError(OrchestratorError):
    """Raised when a compare-and-swap finds a different status than expected.

    Attributes:
        job_id: The ID of the job that was concurrently modified.
        actual_status: Status value found in the store, if known.
    """

    code = "CONFLICT"
    status = 409

    def __init__(
        self,
        job_id: str,
        message: str | None = None,
        actual_status: str | None = None,
    ) -> None:
        self.job_id = job_id
        self.actual_status = actual_status
        default_msg = f"Job {job_id} was modified by another process"
        super().__init__(message or default_msg)


class InvalidTransitionError(OrchestratorError):
    """Raised when a mutation would move a job along an edge that doesn't exist."""

    code = "INVALID_TRANSITION"
    status = 409

    def __init__(self, job_id: str, from_status: str, to_status: str) -> None:
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Job {job_id} cannot move from {from_status} to {to_status}"
        )


class InvariantViolationError(OrchestratorError):
    """Raised when a mutation would break a job invariant (e.g. attempts)."""

    code = "INVARIANT_VIOLATION"

    def __init__(self, job_id: str, message: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id}: {message}")


class QueueOverloadedError(OrchestratorError):
    """Raised when admission control is shedding load for a job type."""

    code = "QUEUE_OVERLOADED"
    status = 503

    def __init__(self, job_type: str, depth: int) -> None:
        self.job_type = job_type
        self.depth = depth
        super().__init__(
            f"Queue for {job_type} jobs is overloaded ({depth} pending); "
            "retry later"
        )


class IdempotencyConflictError(OrchestratorError):
    """Raised when an idempotency key is reused with a different payload."""

    code = "IDEMPOTENCY_CONFLICT"
    status = 409

    def __init__(self, key: str, job_id: str) -> None:
        self.key = key
        self.job_id = job_id
        super().__init__(
            f"Idempotency key {key!r} was already used for job {job_id} "
            "with a different payload"
        )


class ConcurrencyLimitError(OrchestratorError):
    """Raised when a resource already has its maximum number of active jobs."""

    code = "CONCURRENCY_LIMIT"
    status = 409

    def __init__(self, resource_key: str, limit: int) -> None:
        self.resource_key = resource_key
        self.limit = limit
        super().__init__(
            f"Resource {resource_key} already has {limit} active job(s)"
        )


class RateLimitedError(OrchestratorError):
    """Raised when a caller exceeds its AI request rate."""

    code = "RATE_LIMITED"
    status = 429

    def __init__(self, requested_by: str, retry_after: float) -> None:
        self.requested_by = requested_by
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {requested_by}; retry in {retry_after:.1f}s"
        )


class PayloadValidationError(OrchestratorError):
    """Raised when a submitted payload fails validation.

    Attributes:
        details: List of field-level error descriptions.
    """

    code = "VALIDATION_FAILED"
    status = 400

    def __init__(self, message: str, details: list[dict] | None = None) -> None:
        self.details = details or []
        super().__init__(message)


class DeadLetterNotFoundError(OrchestratorError):
    """Raised when a dead-letter record doesn't exist."""

    code = "DEAD_LETTER_NOT_FOUND"
    status = 404

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Dead letter {record_id} not found")


class DeadLetterAlreadyReprocessedError(OrchestratorError):
    """Raised when a dead-letter record was already turned into a new job."""

    code = "ALREADY_REPROCESSED"
    status = 409

    def __init__(self, record_id: str, job_id: str | None) -> None:
        self.record_id = record_id
        self.job_id = job_id
        super().__init__(
            f"Dead letter {record_id} was already reprocessed as job {job_id}"
        )


class HandlerNotFoundError(OrchestratorError):
    """Raised when no task handler is registered for a job type."""

    code = "HANDLER_NOT_FOUND"

    def __init__(self, job_type: str) -> None:
        self.job_type = job_type
        super().__init__(f"No task handler registered for {job_type} jobs")
