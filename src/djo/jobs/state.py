"""Job lifecycle state machine.

Defines the allowed status edges and the pure functions that build the
desired next state of a job. The store applies ``enforce_invariants`` to
every desired state before persisting it, so the rules here hold no matter
which component requested the change.

    pending  --start-->            running
    pending  --cancel-->           canceled
    running  --progress/retry-->   running
    running  --worker lost-->      pending
    running  --success-->          succeeded
    running  --failure-->          failed
    running  --cancel-->           canceled
"""

from __future__ import annotations

from dataclasses import replace

from djo.db.types import Job, JobError, JobStatus
from djo.jobs.exceptions import InvalidTransitionError, InvariantViolationError

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.RUNNING,
            JobStatus.PENDING,
            JobStatus.SUCCEEDED,
            JobStatus.FAILED,
            JobStatus.CANCELED,
        }
    ),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}

# Stage names written by the engine itself; handlers choose their own.
STAGE_QUEUED = "queued"
STAGE_STARTED = "started"
STAGE_RETRYING = "retrying"
STAGE_REQUEUED = "requeued"
STAGE_COMPLETED = "completed"
STAGE_FAILED = "failed"
STAGE_CANCELED = "canceled"


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    """Return True if the state machine has an edge between two statuses."""
    return to_status in TRANSITIONS[from_status]


def _clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))


def enforce_invariants(current: Job, desired: Job, now: str) -> Job:
    """Validate a desired job state and normalize it against the current one.

    Args:
        current: Job as currently persisted.
        desired: Job as requested by the caller.
        now: Current ISO-8601 UTC timestamp.

    Returns:
        The job state to persist.

    Raises:
        InvalidTransitionError: If the status edge is not allowed.
        InvariantViolationError: If attempts would exceed max_attempts.
    """
    if not can_transition(current.status, desired.status):
        raise InvalidTransitionError(
            current.id, current.status.value, desired.status.value
        )
    if desired.attempts > current.max_attempts:
        raise InvariantViolationError(
            current.id,
            f"attempts {desired.attempts} would exceed "
            f"max_attempts {current.max_attempts}",
        )
    if desired.attempts < current.attempts:
        raise InvariantViolationError(current.id, "attempts cannot decrease")

    status = desired.status
    if status == JobStatus.SUCCEEDED:
        progress = 100
    elif status.is_terminal:
        # Frozen at the last reported value
        progress = current.progress
    else:
        # Decreases are clamped, never rejected
        progress = max(current.progress, _clamp_progress(desired.progress))

    started_at = current.started_at
    if status != JobStatus.PENDING and started_at is None:
        started_at = now

    completed_at = now if status.is_terminal else None

    return replace(
        desired,
        # Immutable after creation
        id=current.id,
        job_type=current.job_type,
        payload=current.payload,
        requested_by=current.requested_by,
        max_attempts=current.max_attempts,
        created_at=current.created_at,
        idempotency_key=current.idempotency_key,
        parent_job_id=current.parent_job_id,
        resource_key=current.resource_key,
        # Derived
        progress=progress,
        started_at=started_at,
        completed_at=completed_at,
        updated_at=now,
        result=desired.result if status == JobStatus.SUCCEEDED else None,
    )


def mark_started(job: Job, worker_id: str, now: str) -> Job:
    """Claim a pending job for a worker."""
    return replace(
        job,
        status=JobStatus.RUNNING,
        stage=STAGE_STARTED,
        attempts=max(job.attempts, 1),
        worker_id=worker_id,
        heartbeat_at=now,
    )


def apply_progress(job: Job, stage: str, progress: int, now: str) -> Job:
    """Record a progress report from the running attempt."""
    return replace(job, stage=stage, progress=progress, heartbeat_at=now)


def mark_retrying(job: Job, error: JobError) -> Job:
    """Start the next in-worker attempt after a retryable failure."""
    return replace(job, stage=STAGE_RETRYING, attempts=job.attempts + 1, error=error)


def mark_requeued(job: Job, error: JobError | None, *, count_attempt: bool) -> Job:
    """Return a running job to the queue.

    Args:
        job: Running job.
        error: Error that caused the requeue, if any.
        count_attempt: Whether the interrupted attempt consumes an attempt.
    """
    return replace(
        job,
        status=JobStatus.PENDING,
        stage=STAGE_REQUEUED,
        attempts=job.attempts + 1 if count_attempt else job.attempts,
        error=error or job.error,
        worker_id=None,
        heartbeat_at=None,
    )


def mark_succeeded(job: Job, result: dict) -> Job:
    """Finish a job successfully."""
    return replace(
        job,
        status=JobStatus.SUCCEEDED,
        stage=STAGE_COMPLETED,
        result=result,
        error=None,
    )


def mark_failed(job: Job, error: JobError) -> Job:
    """Finish a job with a terminal failure."""
    return replace(job, status=JobStatus.FAILED, stage=STAGE_FAILED, error=error)


def mark_canceled(job: Job) -> Job:
    """Finish a job as canceled."""
    return replace(job, status=JobStatus.CANCELED, stage=STAGE_CANCELED)


def request_cancel(job: Job) -> Job:
    """Flag a running job so the worker stops at the next stage boundary."""
    return replace(job, cancel_requested=True)
