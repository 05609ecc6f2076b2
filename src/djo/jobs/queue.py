"""Queue/dispatcher for Document Job Orchestrator.

This module provides the admission side and the claim side of the queue:
- Admission control with high/low watermark hysteresis
- Per-resource concurrency caps and per-caller ai rate limits
- FIFO claiming of pending jobs through the store's compare-and-swap

There are no priorities; jobs of one type are served oldest first.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from djo.config.models import DJOConfig, QueueConfig
from djo.db.types import Job, JobStatus, JobType
from djo.jobs.exceptions import (
    ConcurrentModificationError,
    QueueOverloadedError,
    RateLimitedError,
)
from djo.jobs.rate_limit import CallerRateLimiter
from djo.jobs.state import mark_started
from djo.jobs.store import JobStore

logger = logging.getLogger(__name__)

# Pending candidates fetched per claim attempt; a lost CAS moves on to the next
CLAIM_BATCH_SIZE = 10


def resource_key_for(job_type: JobType, payload: dict[str, Any]) -> str | None:
    """Return the concurrency slot key a job holds while active.

    convert jobs are keyed by source object, export jobs by document.
    ai jobs are rate limited per caller instead.
    """
    if job_type == JobType.CONVERT and payload.get("objectKey"):
        return f"source:{payload['objectKey']}"
    if job_type == JobType.EXPORT and payload.get("documentId"):
        return f"document:{payload['documentId']}"
    return None


@dataclass
class _WatermarkState:
    above_since: float | None = None
    shedding: bool = False


class AdmissionController:
    """Load shedding on sustained queue depth.

    A job type starts shedding once its pending depth has stayed above
    ``high_watermark`` for ``sustained_seconds``, and stops once depth
    falls to ``low_watermark`` or below.
    """

    def __init__(
        self, config: QueueConfig, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._config = config
        self._clock = clock
        self._states: dict[JobType, _WatermarkState] = {
            t: _WatermarkState() for t in JobType
        }
        self._lock = threading.Lock()

    def admit(self, job_type: JobType, depth: int) -> bool:
        """Record the observed depth and decide whether to accept a job.

        Args:
            job_type: Type of the submitted job.
            depth: Current pending depth for the type.

        Returns:
            True if the job may be enqueued.
        """
        with self._lock:
            state = self._states[job_type]
            now = self._clock()

            if state.shedding:
                if depth <= self._config.low_watermark:
                    state.shedding = False
                    state.above_since = None
                    logger.info(
                        "Queue for %s drained to %d, accepting jobs again",
                        job_type.value,
                        depth,
                    )
                    return True
                return False

            if depth <= self._config.high_watermark:
                state.above_since = None
                return True

            if state.above_since is None:
                state.above_since = now
            if now - state.above_since >= self._config.sustained_seconds:
                state.shedding = True
                logger.warning(
                    "Queue for %s above high watermark (%d > %d) for %.1fs, "
                    "shedding load",
                    job_type.value,
                    depth,
                    self._config.high_watermark,
                    now - state.above_since,
                )
                return False
            return True

    def is_shedding(self, job_type: JobType) -> bool:
        with self._lock:
            return self._states[job_type].shedding


class Dispatcher:
    """Admits jobs into the store and hands pending jobs to workers."""

    def __init__(
        self,
        store: JobStore,
        config: DJOConfig,
        *,
        admission: AdmissionController | None = None,
        rate_limiter: CallerRateLimiter | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self.admission = admission or AdmissionController(config.queue)
        self._rate_limiter = rate_limiter or CallerRateLimiter(config.ai_rate_limit)

    def enqueue(
        self,
        job: Job,
        *,
        idempotency_fingerprint: str | None = None,
        reprocessed_dead_letter_id: str | None = None,
    ) -> Job:
        """Admit a new pending job.

        Args:
            job: Pending job to persist.
            idempotency_fingerprint: Passed to the store with the job's
                idempotency key.
            reprocessed_dead_letter_id: Dead-letter record this job replaces.

        Returns:
            The persisted job.

        Raises:
            QueueOverloadedError: If the type is shedding load.
            RateLimitedError: If an ai caller exceeded its rate.
            ConcurrencyLimitError: If the job's resource is at its cap.
        """
        depth = self._store.count_pending(job.job_type)
        if not self.admission.admit(job.job_type, depth):
            raise QueueOverloadedError(job.job_type.value, depth)

        if job.job_type == JobType.AI:
            allowed, retry_after = self._rate_limiter.check(job.requested_by)
            if not allowed:
                logger.warning(
                    "Rate limited ai submission from %s (retry in %.1fs)",
                    job.requested_by,
                    retry_after,
                )
                raise RateLimitedError(job.requested_by, retry_after)

        limit = self._config.jobs.for_type(job.job_type.value).max_per_resource
        resource_key = resource_key_for(job.job_type, job.payload) if limit else None
        job = replace(job, resource_key=resource_key)

        created = self._store.create(
            job,
            resource_limit=limit if resource_key else None,
            idempotency_fingerprint=idempotency_fingerprint,
            reprocessed_dead_letter_id=reprocessed_dead_letter_id,
        )
        logger.info(
            "Enqueued %s job %s (depth %d)", job.job_type.value, job.id, depth + 1
        )
        return created

    def dequeue(self, job_type: JobType, worker_id: str) -> Job | None:
        """Claim the oldest pending job of a type for a worker.

        Returns:
            The claimed job (now running), or None if nothing is pending.
        """
        for candidate in self._store.list_pending_for_type(job_type, CLAIM_BATCH_SIZE):
            now_iso = self._store.now_iso()
            try:
                job = self._store.compare_and_swap_status(
                    candidate.id,
                    JobStatus.PENDING,
                    lambda j: mark_started(j, worker_id, now_iso),
                    message="Job started",
                    metadata={"workerId": worker_id},
                )
            except ConcurrentModificationError:
                logger.debug("Job %s claimed elsewhere, trying next", candidate.id)
                continue
            logger.info(
                "Worker %s claimed %s job %s (attempt %d/%d)",
                worker_id,
                job.job_type.value,
                job.id,
                job.attempts,
                job.max_attempts,
            )
            return job
        return None
