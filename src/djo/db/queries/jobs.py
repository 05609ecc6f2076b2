"""Job CRUD operations for Document Job Orchestrator database.

This module contains database query functions for job management:
- Job insert, get and compare-and-swap update
- FIFO pending lookups, filtering and counting
- Per-resource concurrency slots

None of these functions commit. Callers manage transactions.
"""

import sqlite3

from djo.core.json_utils import dumps_or_none
from djo.db.types import TERMINAL_STATUSES, Job, JobStatus, JobType

from .helpers import JOB_COLUMNS, _row_to_job, _validate_limit


def insert_job(conn: sqlite3.Connection, job: Job, seq: int = 0) -> str:
    """Insert a new job record.

    Args:
        conn: Database connection.
        job: Job to insert.
        seq: Logical clock value of the job's latest event.

    Returns:
        The ID of the inserted job.
    """
    conn.execute(
        f"""
        INSERT INTO jobs ({JOB_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job.id,
            job.job_type.value,
            job.status.value,
            job.stage,
            job.progress,
            job.attempts,
            job.max_attempts,
            dumps_or_none(job.payload),
            dumps_or_none(job.result),
            dumps_or_none(job.error.to_dict() if job.error else None),
            job.requested_by,
            job.idempotency_key,
            job.parent_job_id,
            job.resource_key,
            job.worker_id,
            job.heartbeat_at,
            1 if job.cancel_requested else 0,
            job.created_at,
            job.updated_at,
            job.started_at,
            job.completed_at,
            seq,
        ),
    )
    return job.id


def get_job(conn: sqlite3.Connection, job_id: str) -> Job | None:
    """Get a job by ID.

    Args:
        conn: Database connection.
        job_id: Job UUID.

    Returns:
        Job if found, None otherwise.
    """
    cursor = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    if row is None:
        return None
    return _row_to_job(row)


def get_job_seq(conn: sqlite3.Connection, job_id: str) -> int | None:
    """Get the logical clock value of a job's latest event."""
    row = conn.execute("SELECT seq FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return row[0] if row else None


def update_job_if_status(
    conn: sqlite3.Connection,
    job: Job,
    expected_status: JobStatus,
    seq: int,
    *,
    expected_worker_id: str | None = None,
    expected_attempts: int | None = None,
) -> bool:
    """Overwrite the mutable columns of a job if it still has a given status.

    Args:
        conn: Database connection.
        job: Desired job state.
        expected_status: Status the row must currently have.
        seq: New logical clock value for the row.
        expected_worker_id: If set, the worker the row must be claimed by.
        expected_attempts: If set, the attempt count the row must have.

    Returns:
        True if the row was updated, False if the guard no longer matched.
    """
    guard = "WHERE id = ? AND status = ?"
    guard_params: list[str | int] = [job.id, expected_status.value]
    if expected_worker_id is not None:
        guard += " AND worker_id = ?"
        guard_params.append(expected_worker_id)
    if expected_attempts is not None:
        guard += " AND attempts = ?"
        guard_params.append(expected_attempts)

    cursor = conn.execute(
        f"""
        UPDATE jobs SET
            status = ?, stage = ?, progress = ?, attempts = ?,
            result_json = ?, error_json = ?, worker_id = ?, heartbeat_at = ?,
            cancel_requested = ?, updated_at = ?, started_at = ?,
            completed_at = ?, seq = ?
        {guard}
        """,
        (
            job.status.value,
            job.stage,
            job.progress,
            job.attempts,
            dumps_or_none(job.result),
            dumps_or_none(job.error.to_dict() if job.error else None),
            job.worker_id,
            job.heartbeat_at,
            1 if job.cancel_requested else 0,
            job.updated_at,
            job.started_at,
            job.completed_at,
            seq,
            *guard_params,
        ),
    )
    return cursor.rowcount > 0


def update_job_heartbeat(
    conn: sqlite3.Connection, job_id: str, worker_id: str, heartbeat_at: str
) -> bool:
    """Refresh a running job's heartbeat if the worker still owns it.

    Returns:
        True if updated, False if the job is no longer running on this worker.
    """
    cursor = conn.execute(
        """
        UPDATE jobs SET heartbeat_at = ?
        WHERE id = ? AND worker_id = ? AND status = 'running'
        """,
        (heartbeat_at, job_id, worker_id),
    )
    return cursor.rowcount > 0


def get_pending_jobs(
    conn: sqlite3.Connection, job_type: JobType, limit: int | None = None
) -> list[Job]:
    """Get pending jobs of one type in FIFO order.

    Args:
        conn: Database connection.
        job_type: Type of job to return.
        limit: Maximum number of jobs to return.

    Returns:
        List of Job objects, oldest first.
    """
    _validate_limit(limit)
    query = f"""
        SELECT {JOB_COLUMNS} FROM jobs
        WHERE job_type = ? AND status = 'pending'
        ORDER BY created_at ASC, rowid ASC
    """
    params: tuple = (job_type.value,)
    if limit is not None:
        query += " LIMIT ?"
        params = (job_type.value, limit)
    return [_row_to_job(row) for row in conn.execute(query, params).fetchall()]


def get_jobs_filtered(
    conn: sqlite3.Connection,
    *,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    requested_by: str | None = None,
    limit: int | None = None,
) -> list[Job]:
    """Get jobs with optional filters, newest first.

    Args:
        conn: Database connection.
        status: Filter by job status (None = all statuses).
        job_type: Filter by job type (None = all types).
        requested_by: Filter by submitting principal.
        limit: Maximum number of jobs to return.

    Returns:
        List of Job objects ordered by created_at DESC.
    """
    _validate_limit(limit)
    conditions = []
    params: list[str | int] = []

    if status is not None:
        conditions.append("status = ?")
        params.append(status.value)
    if job_type is not None:
        conditions.append("job_type = ?")
        params.append(job_type.value)
    if requested_by is not None:
        conditions.append("requested_by = ?")
        params.append(requested_by)

    query = f"SELECT {JOB_COLUMNS} FROM jobs"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY created_at DESC, rowid DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    return [_row_to_job(row) for row in conn.execute(query, params).fetchall()]


def count_jobs_by_type_and_status(
    conn: sqlite3.Connection,
) -> dict[str, dict[str, int]]:
    """Count jobs grouped by type and status.

    Returns:
        Mapping of job type value to a mapping of status value to count.
        Every type and status is present, with zero counts filled in.
    """
    counts = {t.value: {s.value: 0 for s in JobStatus} for t in JobType}
    cursor = conn.execute(
        "SELECT job_type, status, COUNT(*) FROM jobs GROUP BY job_type, status"
    )
    for job_type, status, count in cursor.fetchall():
        counts[job_type][status] = count
    return counts


def count_pending_jobs(conn: sqlite3.Connection, job_type: JobType) -> int:
    """Count pending jobs of one type."""
    row = conn.execute(
        "SELECT COUNT(*) FROM jobs WHERE job_type = ? AND status = 'pending'",
        (job_type.value,),
    ).fetchone()
    return row[0]


def get_stale_running_jobs(conn: sqlite3.Connection, cutoff: str) -> list[Job]:
    """Get running jobs whose heartbeat is older than a cutoff.

    Args:
        conn: Database connection.
        cutoff: ISO-8601 UTC timestamp. Jobs with heartbeat_at (or
            started_at when no heartbeat was recorded) before this are stale.

    Returns:
        List of stale Job objects, oldest heartbeat first.
    """
    cursor = conn.execute(
        f"""
        SELECT {JOB_COLUMNS} FROM jobs
        WHERE status = 'running'
          AND COALESCE(heartbeat_at, started_at, updated_at) < ?
        ORDER BY COALESCE(heartbeat_at, started_at, updated_at) ASC
        """,
        (cutoff,),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def delete_completed_jobs(conn: sqlite3.Connection, older_than: str) -> int:
    """Delete terminal jobs completed before a cutoff.

    Events of deleted jobs are removed by the foreign key cascade.

    Args:
        conn: Database connection.
        older_than: ISO-8601 UTC timestamp.

    Returns:
        Number of jobs deleted.
    """
    statuses = sorted(s.value for s in TERMINAL_STATUSES)
    placeholders = ",".join("?" * len(statuses))
    cursor = conn.execute(
        f"""
        DELETE FROM jobs
        WHERE completed_at IS NOT NULL AND completed_at < ?
          AND status IN ({placeholders})
        """,
        (older_than, *statuses),
    )
    return cursor.rowcount


def acquire_resource_slot(
    conn: sqlite3.Connection, resource_key: str, limit: int
) -> bool:
    """Take one active slot for a resource if fewer than limit are held.

    Args:
        conn: Database connection.
        resource_key: Resource identifier (e.g. "document:abc").
        limit: Maximum concurrently active jobs for the resource.

    Returns:
        True if a slot was acquired, False if the resource is at its limit.
    """
    conn.execute(
        "INSERT OR IGNORE INTO resource_slots (resource_key, active) VALUES (?, 0)",
        (resource_key,),
    )
    cursor = conn.execute(
        """
        UPDATE resource_slots SET active = active + 1
        WHERE resource_key = ? AND active < ?
        """,
        (resource_key, limit),
    )
    return cursor.rowcount > 0


def release_resource_slot(conn: sqlite3.Connection, resource_key: str) -> None:
    """Release one active slot for a resource, dropping empty counters."""
    conn.execute(
        """
        UPDATE resource_slots SET active = active - 1
        WHERE resource_key = ? AND active > 0
        """,
        (resource_key,),
    )
    conn.execute(
        "DELETE FROM resource_slots WHERE resource_key = ? AND active = 0",
        (resource_key,),
    )

