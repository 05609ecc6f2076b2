"""Worker executor: runs one claimed job to a terminal state.

The executor drives the attempts of a job inside a single worker:
- Runs the task handler in a helper thread under a soft timeout
- Refreshes the job heartbeat while the handler runs
- Classifies failures and asks the retry controller what to do
- Waits out backoff delays, interruptible by cancellation and shutdown

A timed-out handler thread cannot be killed. Its reporter is invalidated,
so late reports from the abandoned attempt are rejected and never reach
the store. The same happens when the heartbeat can no longer be written:
recovery will hand the job to another worker, so this attempt stops.
Every write carries the worker id and attempt number, and the store
rejects writes from an attempt that no longer owns the job.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from djo.config.models import DJOConfig
from djo.db.types import ErrorClass, Job, JobError, JobStatus, JobType
from djo.jobs.coordinator import LifecycleCoordinator
from djo.jobs.exceptions import ConcurrentModificationError
from djo.jobs.handlers import TaskError, TaskHandler
from djo.jobs.retry import Terminal

logger = logging.getLogger(__name__)

# How often the executor re-checks a running handler, backoff or cancel flag
DEFAULT_CHECK_INTERVAL = 0.05

MAX_HEARTBEAT_FAILURES = 3


class JobCanceled(Exception):
    """Raised into a handler when its job was canceled at a stage boundary."""


class StaleAttemptError(Exception):
    """Raised into a handler whose attempt no longer owns the job."""


class ProgressReporter:
    """Reporter handed to a task handler for one attempt.

    Each report updates the job's stage, progress and heartbeat and appends
    an event. When the stage changes, the cancel flag is checked first and
    JobCanceled is raised if it is set.
    """

    def __init__(
        self,
        coordinator: LifecycleCoordinator,
        job: Job,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_id = job.id
        self.attempt = job.attempts
        self.worker_id = job.worker_id
        self._coordinator = coordinator
        self._clock = clock
        self._stage = job.stage
        self._lock = threading.Lock()
        self._valid = True
        self.cancel_seen = False
        self.last_report_at = clock()

    def invalidate(self) -> None:
        """Reject every later report from this attempt."""
        with self._lock:
            self._valid = False

    def report(
        self,
        stage: str,
        progress: int,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            if not self._valid:
                raise StaleAttemptError(
                    f"Attempt {self.attempt} of job {self.job_id} was abandoned"
                )
            if stage != self._stage:
                current = self._coordinator.get(self.job_id)
                if current.cancel_requested:
                    self.cancel_seen = True
                    raise JobCanceled(self.job_id)
            try:
                job = self._coordinator.report_progress(
                    self.job_id,
                    stage,
                    progress,
                    message=message,
                    metadata=metadata,
                    worker_id=self.worker_id,
                    attempt=self.attempt,
                )
            except ConcurrentModificationError as e:
                self._valid = False
                raise StaleAttemptError(str(e)) from e
            if job.status != JobStatus.RUNNING:
                self._valid = False
                raise StaleAttemptError(
                    f"Job {self.job_id} is {job.status.value}, attempt abandoned"
                )
            self._stage = stage
            self.last_report_at = self._clock()


@dataclass
class _AttemptOutcome:
    result: dict[str, Any] | None = None
    error: JobError | None = None
    canceled: bool = False
    abandoned: bool = False


class _Heartbeat:
    """Background heartbeat for one running job.

    ``lost`` is set when the job can no longer be kept alive, either because
    it is no longer running on this worker or because the heartbeat write
    failed too many times in a row.
    """

    def __init__(
        self,
        coordinator: LifecycleCoordinator,
        job_id: str,
        worker_id: str,
        interval: float,
    ) -> None:
        self._coordinator = coordinator
        self._job_id = job_id
        self._worker_id = worker_id
        self._interval = interval
        self._stop = threading.Event()
        self.lost = threading.Event()
        self._failures = 0
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name=f"heartbeat-{job_id[:8]}"
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=1.0)
        if self._thread.is_alive():
            logger.warning("Heartbeat thread %s did not stop", self._thread.name)

    def _loop(self) -> None:
        store = self._coordinator.store
        while not self._stop.wait(self._interval):
            try:
                if not store.touch_heartbeat(self._job_id, self._worker_id):
                    logger.debug("Job %s no longer ours, heartbeat ends", self._job_id)
                    self.lost.set()
                    return
                self._failures = 0
            except Exception as e:
                self._failures += 1
                logger.error(
                    "Heartbeat failed (%d/%d): %s",
                    self._failures,
                    MAX_HEARTBEAT_FAILURES,
                    e,
                )
                if self._failures >= MAX_HEARTBEAT_FAILURES:
                    logger.critical(
                        "Max heartbeat failures reached for job %s, "
                        "abandoning attempt",
                        self._job_id,
                    )
                    self.lost.set()
                    return


class WorkerExecutor:
    """Runs claimed jobs through their attempts.

    Args:
        coordinator: Lifecycle coordinator owning every transition.
        config: Orchestrator configuration (timeouts, heartbeat interval).
        worker_id: Identity written on claimed jobs and heartbeats.
        shutdown: Set when the worker should stop; interrupts backoff waits.
        check_interval: Polling period for handler completion and backoff.
    """

    def __init__(
        self,
        coordinator: LifecycleCoordinator,
        config: DJOConfig,
        worker_id: str,
        *,
        shutdown: threading.Event | None = None,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._coordinator = coordinator
        self._config = config
        self.worker_id = worker_id
        self._shutdown = shutdown or threading.Event()
        self._check_interval = check_interval
        self._clock = clock

    def run(self, job: Job, handler: TaskHandler) -> Job:
        """Execute a running job until it reaches a terminal state.

        Args:
            job: Job claimed by this worker (status running).
            handler: Task handler for the job's type.

        Returns:
            The job in its final state. If the worker shuts down during a
            backoff wait, the job is released back to pending instead. If
            this worker lost the job (heartbeat gone, recovered elsewhere),
            the job is returned as currently stored.
        """
        heartbeat = _Heartbeat(
            self._coordinator,
            job.id,
            self.worker_id,
            self._config.worker.heartbeat_interval_seconds,
        )
        heartbeat.start()
        try:
            return self._run_attempts(job, handler, heartbeat.lost)
        except ConcurrentModificationError as e:
            logger.warning("Worker %s lost job %s: %s", self.worker_id, job.id, e)
            return self._coordinator.get(job.id)
        finally:
            heartbeat.stop()

    def _run_attempts(
        self, job: Job, handler: TaskHandler, lost: threading.Event
    ) -> Job:
        coordinator = self._coordinator
        worker_id = self.worker_id
        while True:
            attempt = job.attempts
            outcome = self._run_attempt(job, handler, lost)

            if outcome.abandoned:
                return coordinator.get(job.id)
            if outcome.canceled:
                return coordinator.finish_canceled(
                    job.id, worker_id=worker_id, attempt=attempt
                )
            if outcome.error is None:
                return coordinator.complete(
                    job.id, outcome.result or {}, worker_id=worker_id, attempt=attempt
                )

            error = outcome.error
            current = coordinator.get(job.id)
            if current.status != JobStatus.RUNNING or current.worker_id != worker_id:
                logger.warning(
                    "Job %s is %s on %s, dropping failure of attempt %d",
                    job.id,
                    current.status.value,
                    current.worker_id or "no worker",
                    attempt,
                )
                return current
            if current.cancel_requested:
                return coordinator.finish_canceled(
                    job.id, worker_id=worker_id, attempt=attempt
                )

            decision = coordinator.retry.on_failure(current, error)
            if isinstance(decision, Terminal):
                return coordinator.fail(
                    job.id,
                    error,
                    dead_letter=decision.dead_letter,
                    worker_id=worker_id,
                    attempt=attempt,
                )

            job = coordinator.record_retry(
                job.id, error, decision.delay, worker_id=worker_id, attempt=attempt
            )
            if job.status != JobStatus.RUNNING:
                return job

            interrupted = self._wait_backoff(job.id, decision.delay, lost)
            if interrupted == "canceled":
                return coordinator.finish_canceled(
                    job.id, worker_id=worker_id, attempt=job.attempts
                )
            if interrupted == "shutdown":
                return coordinator.release(
                    job.id,
                    "Worker shutting down",
                    worker_id=worker_id,
                    attempt=job.attempts,
                )
            if interrupted == "lost":
                return coordinator.get(job.id)

    def _wait_backoff(
        self, job_id: str, delay: float, lost: threading.Event
    ) -> str | None:
        """Sleep for ``delay`` seconds unless the job is canceled or we stop."""
        deadline = self._clock() + delay
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            if self._shutdown.wait(min(remaining, self._check_interval)):
                return "shutdown"
            if lost.is_set():
                return "lost"
            if self._coordinator.get(job_id).cancel_requested:
                return "canceled"

    def _timeout_for(self, job_type: JobType) -> float:
        return self._config.jobs.for_type(job_type.value).timeout_seconds

    def _run_attempt(
        self, job: Job, handler: TaskHandler, lost: threading.Event
    ) -> _AttemptOutcome:
        reporter = ProgressReporter(self._coordinator, job, clock=self._clock)
        outcome = _AttemptOutcome()
        done = threading.Event()

        def _target() -> None:
            try:
                outcome.result = handler.execute(job.payload, reporter)
            except JobCanceled:
                outcome.canceled = True
            except StaleAttemptError as e:
                logger.info(
                    "Attempt %d of job %s abandoned: %s", job.attempts, job.id, e
                )
                outcome.abandoned = True
            except TaskError as e:
                outcome.error = JobError.from_class(e.error_class, str(e), code=e.code)
            except Exception as e:
                logger.critical(
                    "Unhandled exception in %s handler for job %s",
                    job.job_type.value,
                    job.id,
                    exc_info=True,
                )
                outcome.error = JobError.from_class(
                    ErrorClass.INTERNAL_BUG, f"{type(e).__name__}: {e}"
                )
            finally:
                if reporter.cancel_seen:
                    outcome.canceled = True
                done.set()

        thread = threading.Thread(
            target=_target,
            daemon=True,
            name=f"{job.job_type.value}-attempt-{job.id[:8]}-{job.attempts}",
        )
        logger.info(
            "Running %s job %s (attempt %d/%d)",
            job.job_type.value,
            job.id,
            job.attempts,
            job.max_attempts,
        )
        started = self._clock()
        thread.start()

        timeout = self._timeout_for(job.job_type)
        # ai jobs time out on stream inactivity, the rest on total duration
        idle_based = job.job_type == JobType.AI
        while not done.wait(self._check_interval):
            if lost.is_set():
                reporter.invalidate()
                logger.warning(
                    "Attempt %d of job %s abandoned: heartbeat lost",
                    job.attempts,
                    job.id,
                )
                return _AttemptOutcome(abandoned=True)
            since = reporter.last_report_at if idle_based else started
            if self._clock() - since < timeout:
                continue
            reporter.invalidate()
            if done.is_set():
                break
            logger.warning(
                "Job %s attempt %d timed out after %.1fs",
                job.id,
                job.attempts,
                self._clock() - since,
            )
            kind = "inactive" if idle_based else "running"
            return _AttemptOutcome(
                error=JobError.from_class(
                    ErrorClass.JOB_TIMEOUT,
                    f"Attempt {kind} for more than {timeout:g}s",
                )
            )
        return outcome
