"""Durable job store with compare-and-swap status updates.

The store is the single source of truth for job state. Every successful
mutation appends a JobEvent in the same transaction as the job row, so the
row and the event log can never disagree. Writers wait on the pool's
write lock and ``BEGIN IMMEDIATE``; the CAS itself is the
``WHERE status = ?`` guard on the UPDATE, optionally narrowed to the
worker and attempt that claimed the job.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from djo.core.datetime_utils import to_iso, utc_now
from djo.db.connection import ConnectionPool, execute_with_retry
from djo.db.queries import (
    acquire_resource_slot,
    count_dead_letters,
    count_jobs_by_type_and_status,
    count_pending_jobs,
    delete_completed_jobs,
    get_dead_letter,
    get_dead_letters,
    get_job,
    get_job_seq,
    get_jobs_filtered,
    get_pending_jobs,
    get_stale_running_jobs,
    insert_dead_letter,
    insert_event,
    insert_idempotency_record,
    insert_job,
    mark_dead_letter_reprocessed,
    release_resource_slot,
    update_job_heartbeat,
    update_job_if_status,
)
from djo.db.types import (
    DeadLetterRecord,
    IdempotencyRecord,
    Job,
    JobEvent,
    JobStatus,
    JobType,
)
from djo.jobs.exceptions import (
    ConcurrencyLimitError,
    ConcurrentModificationError,
    DeadLetterAlreadyReprocessedError,
    DeadLetterNotFoundError,
    JobNotFoundError,
)
from djo.jobs.state import enforce_invariants

logger = logging.getLogger(__name__)

DEFAULT_IDEMPOTENCY_TTL = timedelta(hours=24)

Mutation = Callable[[Job], Job]


class IdempotencyKeyTakenError(Exception):
    """Raised inside create() when a live record already holds the key.

    Internal to the store and the idempotency index; never reaches callers.
    """

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Idempotency key {key!r} is already reserved")


class JobStore:
    """Job persistence with atomic status transitions and event append.

    Args:
        pool: Connection pool for the job database.
        clock: Returns the current UTC datetime. Injectable for tests.
        idempotency_ttl: Lifetime of idempotency records written by create().
    """

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        clock: Callable[[], datetime] = utc_now,
        idempotency_ttl: timedelta = DEFAULT_IDEMPOTENCY_TTL,
    ) -> None:
        self._pool = pool
        self._clock = clock
        self._idempotency_ttl = idempotency_ttl
        # Notified after every committed mutation; event subscribers wait here
        self.changed = threading.Condition()

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def now(self) -> datetime:
        """Current time according to the store's clock."""
        return self._clock()

    def now_iso(self) -> str:
        return to_iso(self._clock())

    def _notify(self) -> None:
        with self.changed:
            self.changed.notify_all()

    # --- Writes ---

    def create(
        self,
        job: Job,
        *,
        resource_limit: int | None = None,
        idempotency_fingerprint: str | None = None,
        reprocessed_dead_letter_id: str | None = None,
    ) -> Job:
        """Insert a new pending job and its first event.

        Args:
            job: Job to insert. Must be pending with zero attempts.
            resource_limit: Maximum active jobs for ``job.resource_key``.
                A slot is taken in the same transaction as the insert.
            idempotency_fingerprint: When set together with
                ``job.idempotency_key``, an idempotency record is written
                in the same transaction.
            reprocessed_dead_letter_id: Dead-letter record this job
                replaces; the record is linked in the same transaction.

        Returns:
            The persisted job.

        Raises:
            ConcurrencyLimitError: If the resource has no free slot.
            IdempotencyKeyTakenError: If a live record already holds the key.
            DeadLetterNotFoundError: If the dead-letter record is missing.
            DeadLetterAlreadyReprocessedError: If it was already reprocessed.
        """
        if job.status != JobStatus.PENDING or job.attempts != 0:
            raise ValueError("New jobs must be pending with zero attempts")

        now = self._clock()
        now_iso = to_iso(now)
        job = replace(job, created_at=now_iso, updated_at=now_iso)

        def _do() -> Job:
            with self._pool.transaction() as conn:
                if job.resource_key and resource_limit is not None:
                    acquired = acquire_resource_slot(
                        conn, job.resource_key, resource_limit
                    )
                    if not acquired:
                        raise ConcurrencyLimitError(job.resource_key, resource_limit)

                insert_job(conn, job, seq=1)

                if job.idempotency_key and idempotency_fingerprint:
                    record = IdempotencyRecord(
                        requested_by=job.requested_by,
                        key=job.idempotency_key,
                        payload_fingerprint=idempotency_fingerprint,
                        job_id=job.id,
                        created_at=now_iso,
                    )
                    try:
                        insert_idempotency_record(
                            conn, record, to_iso(now + self._idempotency_ttl)
                        )
                    except sqlite3.IntegrityError as e:
                        raise IdempotencyKeyTakenError(job.idempotency_key) from e

                if reprocessed_dead_letter_id is not None:
                    self._link_dead_letter(conn, reprocessed_dead_letter_id, job.id)

                insert_event(
                    conn,
                    self._build_event(
                        job, seq=1, timestamp=now_iso, message="Job submitted"
                    ),
                )
            return job

        created = execute_with_retry(_do)
        self._notify()
        logger.debug(
            "Created %s job %s for %s", job.job_type.value, job.id, job.requested_by
        )
        return created

    @staticmethod
    def _link_dead_letter(
        conn: sqlite3.Connection, record_id: str, new_job_id: str
    ) -> None:
        if not mark_dead_letter_reprocessed(conn, record_id, new_job_id):
            record = get_dead_letter(conn, record_id)
            if record is None:
                raise DeadLetterNotFoundError(record_id)
            raise DeadLetterAlreadyReprocessedError(
                record_id, record.reprocessed_job_id
            )

    def compare_and_swap_status(
        self,
        job_id: str,
        expected_status: JobStatus,
        mutation: Mutation,
        *,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
        dead_letter: bool = False,
        expected_worker_id: str | None = None,
        expected_attempts: int | None = None,
    ) -> Job:
        """Atomically apply a mutation if the job still has the expected status.

        The mutation receives the job as currently persisted and returns the
        desired job. The result is validated against the state machine and
        normalized (progress clamping, timestamps) before it is written.

        Args:
            job_id: Job UUID.
            expected_status: Status the job must have for the swap to succeed.
            mutation: Callable building the desired job from the current one.
            message: Optional message for the appended event.
            metadata: Optional metadata for the appended event.
            dead_letter: Write a dead-letter record in the same transaction
                when the resulting status is failed.
            expected_worker_id: If set, the worker that must own the job.
                Writes from an attempt that lost its claim are rejected.
            expected_attempts: If set, the attempt count the job must have.

        Returns:
            The job as persisted after the mutation.

        Raises:
            JobNotFoundError: If the job doesn't exist.
            ConcurrentModificationError: If the job's status or owner differs.
            InvalidTransitionError: If the mutation's edge is not allowed.
            InvariantViolationError: If the mutation breaks an invariant.
        """

        def _do() -> Job:
            now_iso = to_iso(self._clock())
            with self._pool.transaction() as conn:
                current = get_job(conn, job_id)
                if current is None:
                    raise JobNotFoundError(job_id, "update")
                if current.status != expected_status:
                    raise ConcurrentModificationError(
                        job_id,
                        f"Job {job_id} is {current.status.value}, "
                        f"expected {expected_status.value}",
                        actual_status=current.status.value,
                    )
                if not _owned_by(current, expected_worker_id, expected_attempts):
                    raise ConcurrentModificationError(
                        job_id,
                        f"Job {job_id} attempt {current.attempts} is claimed by "
                        f"{current.worker_id or 'no worker'}, expected "
                        f"{expected_worker_id} attempt {expected_attempts}",
                        actual_status=current.status.value,
                    )

                desired = enforce_invariants(current, mutation(current), now_iso)
                seq = (get_job_seq(conn, job_id) or 0) + 1
                if not update_job_if_status(
                    conn,
                    desired,
                    expected_status,
                    seq,
                    expected_worker_id=expected_worker_id,
                    expected_attempts=expected_attempts,
                ):
                    raise ConcurrentModificationError(job_id)

                if desired.is_terminal and desired.resource_key:
                    release_resource_slot(conn, desired.resource_key)

                insert_event(
                    conn,
                    self._build_event(
                        desired,
                        seq=seq,
                        timestamp=now_iso,
                        message=message,
                        metadata=metadata,
                    ),
                )

                if dead_letter and desired.status == JobStatus.FAILED:
                    insert_dead_letter(conn, self._build_dead_letter(desired))
            return desired

        updated = execute_with_retry(_do)
        self._notify()
        return updated

    def touch_heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Refresh the heartbeat of a running job without appending an event.

        Returns:
            False if the job is no longer running on ``worker_id``.
        """
        now_iso = self.now_iso()

        def _do() -> bool:
            with self._pool.transaction() as conn:
                return update_job_heartbeat(conn, job_id, worker_id, now_iso)

        return execute_with_retry(_do)

    def purge_completed(self, older_than: datetime) -> int:
        """Delete terminal jobs (and their events) completed before a cutoff."""

        def _do() -> int:
            with self._pool.transaction() as conn:
                return delete_completed_jobs(conn, to_iso(older_than))

        deleted = execute_with_retry(_do)
        if deleted:
            logger.info("Purged %d completed job(s)", deleted)
        return deleted

    # --- Reads ---

    def get(self, job_id: str) -> Job:
        """Get a job by ID.

        Raises:
            JobNotFoundError: If the job doesn't exist.
        """
        with self._pool.read_connection() as conn:
            job = get_job(conn, job_id)
        if job is None:
            raise JobNotFoundError(job_id, "get")
        return job

    def list_pending_for_type(self, job_type: JobType, limit: int) -> list[Job]:
        """Return up to ``limit`` pending jobs of one type, oldest first."""
        with self._pool.read_connection() as conn:
            return get_pending_jobs(conn, job_type, limit)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        requested_by: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """Return jobs matching the filters, newest first."""
        with self._pool.read_connection() as conn:
            return get_jobs_filtered(
                conn,
                status=status,
                job_type=job_type,
                requested_by=requested_by,
                limit=limit,
            )

    def count_by_status(self) -> dict[str, dict[str, int]]:
        """Return job counts keyed by type then status."""
        with self._pool.read_connection() as conn:
            return count_jobs_by_type_and_status(conn)

    def count_pending(self, job_type: JobType) -> int:
        """Return the number of pending jobs of one type."""
        with self._pool.read_connection() as conn:
            return count_pending_jobs(conn, job_type)

    def find_stale_running(self, cutoff: datetime) -> list[Job]:
        """Return running jobs whose heartbeat is older than ``cutoff``."""
        with self._pool.read_connection() as conn:
            return get_stale_running_jobs(conn, to_iso(cutoff))

    def get_dead_letter(self, record_id: str) -> DeadLetterRecord:
        """Get a dead-letter record by ID.

        Raises:
            DeadLetterNotFoundError: If the record doesn't exist.
        """
        with self._pool.read_connection() as conn:
            record = get_dead_letter(conn, record_id)
        if record is None:
            raise DeadLetterNotFoundError(record_id)
        return record

    def list_dead_letters(
        self,
        *,
        job_type: JobType | None = None,
        include_reprocessed: bool = True,
        limit: int = 100,
    ) -> list[DeadLetterRecord]:
        """Return dead-letter records, most recent failure first."""
        with self._pool.read_connection() as conn:
            return get_dead_letters(
                conn,
                job_type=job_type,
                include_reprocessed=include_reprocessed,
                limit=limit,
            )

    def count_dead_letters(self) -> int:
        """Return the number of dead letters not yet reprocessed."""
        with self._pool.read_connection() as conn:
            return count_dead_letters(conn)

    # --- Builders ---

    @staticmethod
    def _build_event(
        job: Job,
        *,
        seq: int,
        timestamp: str,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> JobEvent:
        return JobEvent(
            id=str(uuid.uuid4()),
            job_id=job.id,
            seq=seq,
            timestamp=timestamp,
            status=job.status,
            stage=job.stage,
            progress=job.progress,
            attempt=job.attempts,
            message=message,
            metadata=metadata,
        )

    @staticmethod
    def _build_dead_letter(job: Job) -> DeadLetterRecord:
        return DeadLetterRecord(
            id=str(uuid.uuid4()),
            job_id=job.id,
            job_type=job.job_type,
            payload=job.payload,
            attempts=job.attempts,
            last_error=job.error,
            requested_by=job.requested_by,
            created_at=job.created_at,
            started_at=job.started_at,
            failed_at=job.completed_at or job.updated_at,
        )


def _owned_by(job: Job, worker_id: str | None, attempts: int | None) -> bool:
    if worker_id is not None and job.worker_id != worker_id:
        return False
    return attempts is None or job.attempts == attempts
