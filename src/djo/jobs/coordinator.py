"""Lifecycle coordinator: the engine API and the owner of every transition.

Callers submit, inspect, cancel and subscribe through this class; workers
report starts, progress, retries and outcomes through it. Every state
change goes through the store's compare-and-swap, so the edges in
djo.jobs.state are the only ones a job can ever take.

Signals aimed at a job that is already terminal (a late completion from a
worker presumed lost, a second cancel) are dropped with a warning and the
current job is returned.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterator
from datetime import timedelta
from typing import Any

from djo.config.models import DJOConfig
from djo.core.datetime_utils import parse_iso_timestamp
from djo.db.types import (
    DeadLetterRecord,
    ErrorClass,
    Job,
    JobError,
    JobEvent,
    JobStatus,
    JobType,
)
from djo.jobs import state
from djo.jobs.events import EventLog
from djo.jobs.exceptions import (
    ConcurrentModificationError,
    DeadLetterAlreadyReprocessedError,
)
from djo.jobs.idempotency import IdempotencyIndex, fingerprint
from djo.jobs.queue import Dispatcher
from djo.jobs.retry import RetryController
from djo.jobs.store import JobStore

logger = logging.getLogger(__name__)


class _HeartbeatRefreshed(Exception):
    """Aborts a lost-worker recovery when the heartbeat moved meanwhile."""


class LifecycleCoordinator:
    """Engine API over the store, dispatcher, retry controller and event log."""

    def __init__(
        self,
        store: JobStore,
        config: DJOConfig,
        *,
        dispatcher: Dispatcher | None = None,
        retry: RetryController | None = None,
        events: EventLog | None = None,
        idempotency: IdempotencyIndex | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.dispatcher = dispatcher or Dispatcher(store, config)
        self.retry = retry or RetryController(
            config.jobs,
            dead_letter_enabled=config.dead_letter.enabled,
            seed=config.worker.backoff_seed,
        )
        self.events = events or EventLog(store)
        self.idempotency = idempotency or IdempotencyIndex(store)

    # --- Engine API ---

    def submit(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        requested_by: str,
        idempotency_key: str | None = None,
    ) -> Job:
        """Create a pending job, or return the job an idempotency key created.

        Args:
            job_type: Type of work.
            payload: Opaque, caller-owned payload.
            requested_by: Already-authorized caller principal.
            idempotency_key: Optional key deduplicating retried submissions.

        Returns:
            The new or existing job.

        Raises:
            IdempotencyConflictError: Key reused with a different payload.
            QueueOverloadedError: The type is shedding load.
            ConcurrencyLimitError: The job's resource is at its cap.
            RateLimitedError: The caller exceeded its ai request rate.
        """
        job = self._new_job(job_type, payload, requested_by, idempotency_key)
        if idempotency_key is None:
            return self.dispatcher.enqueue(job)

        payload_fingerprint = fingerprint(job_type, payload)
        reservation = self.idempotency.reserve(
            requested_by,
            idempotency_key,
            payload_fingerprint,
            lambda: self.dispatcher.enqueue(
                job, idempotency_fingerprint=payload_fingerprint
            ),
        )
        return reservation.job

    def _new_job(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        requested_by: str,
        idempotency_key: str | None = None,
        parent_job_id: str | None = None,
    ) -> Job:
        now_iso = self.store.now_iso()
        return Job(
            id=str(uuid.uuid4()),
            job_type=job_type,
            status=JobStatus.PENDING,
            payload=payload,
            requested_by=requested_by,
            max_attempts=self.config.jobs.for_type(job_type.value).max_attempts,
            created_at=now_iso,
            updated_at=now_iso,
            stage=state.STAGE_QUEUED,
            idempotency_key=idempotency_key,
            parent_job_id=parent_job_id,
        )

    def get(self, job_id: str) -> Job:
        """Return the current job snapshot (raises JobNotFoundError)."""
        return self.store.get(job_id)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        requested_by: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        return self.store.list_jobs(
            status=status, job_type=job_type, requested_by=requested_by, limit=limit
        )

    def cancel(self, job_id: str) -> Job:
        """Cancel a job.

        Pending jobs are canceled immediately. Running jobs are flagged and
        stop at the next stage boundary. Terminal jobs are returned unchanged.
        """
        # A pending job may be claimed between the read and the swap; one
        # more pass then takes the running branch.
        for _ in range(2):
            job = self.store.get(job_id)
            if job.is_terminal:
                logger.warning(
                    "Ignoring cancel of job %s: already %s", job_id, job.status.value
                )
                return job
            try:
                if job.status == JobStatus.PENDING:
                    canceled = self.store.compare_and_swap_status(
                        job_id,
                        JobStatus.PENDING,
                        state.mark_canceled,
                        message="Canceled before start",
                    )
                    logger.info("Canceled pending job %s", job_id)
                    return canceled
                if job.cancel_requested:
                    return job
                flagged = self.store.compare_and_swap_status(
                    job_id,
                    JobStatus.RUNNING,
                    state.request_cancel,
                    message="Cancellation requested",
                )
                logger.info("Requested cancellation of running job %s", job_id)
                return flagged
            except ConcurrentModificationError:
                logger.debug("Job %s changed during cancel, re-reading", job_id)
        return self.store.get(job_id)

    def history(self, job_id: str, after_seq: int | None = None) -> list[JobEvent]:
        """Return recorded events for a job (raises JobNotFoundError)."""
        self.store.get(job_id)
        return self.events.read(job_id, after_seq)

    def subscribe(
        self,
        job_id: str,
        after_seq: int | None = None,
        stop: threading.Event | None = None,
    ) -> Iterator[JobEvent]:
        """Replay events after ``after_seq`` and follow live ones to the end."""
        return self.events.subscribe(job_id, after_seq=after_seq, stop=stop)

    # --- Worker-facing transitions ---
    # Workers pass their ``worker_id`` and current ``attempt``; the swap then
    # only succeeds while that attempt still owns the job. The claim itself
    # (the pending to running edge) is taken by Dispatcher.dequeue.

    def _transition(
        self,
        job_id: str,
        expected: JobStatus,
        mutation: Callable[[Job], Job],
        operation: str,
        *,
        worker_id: str | None = None,
        attempt: int | None = None,
        **kwargs: Any,
    ) -> Job:
        try:
            return self.store.compare_and_swap_status(
                job_id,
                expected,
                mutation,
                expected_worker_id=worker_id,
                expected_attempts=attempt,
                **kwargs,
            )
        except ConcurrentModificationError:
            current = self.store.get(job_id)
            if current.is_terminal:
                logger.warning(
                    "Ignoring %s for job %s: already %s",
                    operation,
                    job_id,
                    current.status.value,
                )
                return current
            if worker_id is not None and current.worker_id != worker_id:
                logger.warning(
                    "Rejecting %s for job %s from %s: claimed by %s",
                    operation,
                    job_id,
                    worker_id,
                    current.worker_id or "no worker",
                )
            raise

    def report_progress(
        self,
        job_id: str,
        stage: str,
        progress: int,
        *,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> Job:
        """Record a progress report. Decreasing progress is clamped."""
        now_iso = self.store.now_iso()
        return self._transition(
            job_id,
            JobStatus.RUNNING,
            lambda j: state.apply_progress(j, stage, progress, now_iso),
            "progress report",
            worker_id=worker_id,
            attempt=attempt,
            message=message,
            metadata=metadata,
        )

    def record_retry(
        self,
        job_id: str,
        error: JobError,
        delay: float,
        *,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> Job:
        """Count the next in-worker attempt after a retryable failure."""
        return self._transition(
            job_id,
            JobStatus.RUNNING,
            lambda j: state.mark_retrying(j, error),
            "retry",
            worker_id=worker_id,
            attempt=attempt,
            message=f"Retrying in {delay:.2f}s after {error.error_class.value}",
            metadata={"delaySeconds": round(delay, 3), "error": error.to_dict()},
        )

    def complete(
        self,
        job_id: str,
        result: dict[str, Any],
        *,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> Job:
        """Finish a job successfully.

        A cancellation requested before this point wins: the result is
        discarded and the job becomes canceled.

        Raises:
            ConcurrentModificationError: If ``worker_id`` no longer owns the
                running job (it was recovered and claimed again).
        """

        def _finish(job: Job) -> Job:
            if job.cancel_requested:
                return state.mark_canceled(job)
            return state.mark_succeeded(job, result)

        job = self._transition(
            job_id,
            JobStatus.RUNNING,
            _finish,
            "completion",
            worker_id=worker_id,
            attempt=attempt,
        )
        if job.status == JobStatus.CANCELED:
            logger.info("Job %s canceled before completion, result discarded", job_id)
        elif job.status == JobStatus.SUCCEEDED:
            logger.info("Job %s succeeded after %d attempt(s)", job_id, job.attempts)
        return job

    def fail(
        self,
        job_id: str,
        error: JobError,
        *,
        dead_letter: bool,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> Job:
        """Finish a job with a terminal failure, optionally dead-lettering it."""
        job = self._transition(
            job_id,
            JobStatus.RUNNING,
            lambda j: state.mark_failed(j, error),
            "failure",
            worker_id=worker_id,
            attempt=attempt,
            message=error.message,
            metadata={"error": error.to_dict()},
            dead_letter=dead_letter,
        )
        if job.status == JobStatus.FAILED:
            logger.error(
                "Job %s failed after %d attempt(s): %s (%s)%s",
                job_id,
                job.attempts,
                error.message,
                error.error_class.value,
                ", dead-lettered" if dead_letter else "",
            )
        return job

    def finish_canceled(
        self,
        job_id: str,
        *,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> Job:
        """Acknowledge a cancellation at a stage boundary."""
        job = self._transition(
            job_id,
            JobStatus.RUNNING,
            state.mark_canceled,
            "cancellation",
            worker_id=worker_id,
            attempt=attempt,
            message="Canceled",
        )
        logger.info("Job %s canceled at stage %s", job_id, job.stage)
        return job

    def release(
        self,
        job_id: str,
        reason: str,
        *,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> Job:
        """Return a running job to the queue without consuming an attempt.

        Used when a worker shuts down before finishing the current attempt.
        """
        job = self._transition(
            job_id,
            JobStatus.RUNNING,
            lambda j: state.mark_requeued(j, None, count_attempt=False),
            "release",
            worker_id=worker_id,
            attempt=attempt,
            message=reason,
        )
        logger.info("Released job %s back to the queue: %s", job_id, reason)
        return job

    # --- Maintenance ---

    def recover_lost_workers(self) -> list[Job]:
        """Requeue or fail running jobs whose worker stopped heartbeating.

        A lost attempt counts as a worker_lost failure. Jobs with attempts
        left go back to pending; exhausted jobs fail and are dead-lettered.
        Jobs whose cancellation was requested are canceled instead.

        Returns:
            The recovered jobs in their new state.
        """
        liveness = timedelta(seconds=self.config.worker.liveness_timeout_seconds)
        cutoff = self.store.now() - liveness
        recovered: list[Job] = []

        for stale in self.store.find_stale_running(cutoff):
            error = JobError.from_class(
                ErrorClass.WORKER_LOST,
                f"Worker {stale.worker_id or 'unknown'} stopped heartbeating",
            )

            def _recover(job: Job, error: JobError = error) -> Job:
                last_seen = job.heartbeat_at or job.started_at or job.updated_at
                if parse_iso_timestamp(last_seen) >= cutoff:
                    raise _HeartbeatRefreshed
                if job.cancel_requested:
                    return state.mark_canceled(job)
                if job.attempts < job.max_attempts:
                    return state.mark_requeued(job, error, count_attempt=True)
                return state.mark_failed(job, error)

            try:
                job = self.store.compare_and_swap_status(
                    stale.id,
                    JobStatus.RUNNING,
                    _recover,
                    message=error.message,
                    metadata={"error": error.to_dict(), "workerId": stale.worker_id},
                    dead_letter=self.config.dead_letter.enabled,
                    expected_worker_id=stale.worker_id,
                )
            except (ConcurrentModificationError, _HeartbeatRefreshed):
                logger.debug("Job %s no longer stale, skipping recovery", stale.id)
                continue

            if job.status == JobStatus.CANCELED:
                logger.info(
                    "Canceled job %s from lost worker %s: cancellation requested",
                    job.id,
                    stale.worker_id,
                )
            elif job.status == JobStatus.PENDING:
                logger.warning(
                    "Requeued job %s from lost worker %s (attempt %d/%d)",
                    job.id,
                    stale.worker_id,
                    job.attempts,
                    job.max_attempts,
                )
            else:
                logger.error(
                    "Job %s failed: worker %s lost on final attempt",
                    job.id,
                    stale.worker_id,
                )
            recovered.append(job)

        return recovered

    def purge_expired(self) -> dict[str, int]:
        """Delete expired idempotency records, old events and old jobs."""
        now = self.store.now()
        retention = self.config.retention
        counts = {
            "idempotency_keys": self.idempotency.purge_expired(),
            "events": self.events.purge(
                now - timedelta(hours=retention.event_retention_hours)
            ),
            "jobs": 0,
        }
        if retention.job_retention_days > 0:
            counts["jobs"] = self.store.purge_completed(
                now - timedelta(days=retention.job_retention_days)
            )
        return counts

    def list_dead_letters(
        self,
        *,
        job_type: JobType | None = None,
        include_reprocessed: bool = True,
        limit: int = 100,
    ) -> list[DeadLetterRecord]:
        return self.store.list_dead_letters(
            job_type=job_type, include_reprocessed=include_reprocessed, limit=limit
        )

    def get_dead_letter(self, record_id: str) -> DeadLetterRecord:
        return self.store.get_dead_letter(record_id)

    def reprocess_dead_letter(
        self, record_id: str, requested_by: str | None = None
    ) -> Job:
        """Submit a new job from a dead-letter record.

        The new job's ``parent_job_id`` points at the failed job, which stays
        failed. A record can be reprocessed once.

        Raises:
            DeadLetterNotFoundError: If the record doesn't exist.
            DeadLetterAlreadyReprocessedError: If it was already reprocessed.
        """
        record = self.store.get_dead_letter(record_id)
        if record.reprocessed_job_id:
            raise DeadLetterAlreadyReprocessedError(
                record_id, record.reprocessed_job_id
            )
        job = self._new_job(
            record.job_type,
            record.payload,
            requested_by or record.requested_by,
            parent_job_id=record.job_id,
        )
        created = self.dispatcher.enqueue(job, reprocessed_dead_letter_id=record_id)
        logger.info(
            "Reprocessed dead letter %s (job %s) as job %s",
            record_id,
            record.job_id,
            created.id,
        )
        return created

    def queue_stats(self) -> dict[str, Any]:
        """Return per-type job counts, shedding state and dead-letter count."""
        counts = self.store.count_by_status()
        return {
            "jobs": {
                job_type.value: {
                    **counts[job_type.value],
                    "shedding": self.dispatcher.admission.is_shedding(job_type),
                }
                for job_type in JobType
            },
            "deadLetters": self.store.count_dead_letters(),
        }
