"""Worker pool for processing queued jobs.

This module provides the pool that processes jobs from the queue:
- A fixed number of worker threads per job type
- A maintenance thread for lost-worker recovery and retention purges
- Graceful shutdown on SIGTERM/SIGINT
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import threading
import time
from collections.abc import Iterable

from djo.config.models import DJOConfig
from djo.db.types import Job, JobType
from djo.jobs.coordinator import LifecycleCoordinator
from djo.jobs.executor import WorkerExecutor
from djo.jobs.handlers import HandlerRegistry
from djo.logging import worker_context

logger = logging.getLogger(__name__)


def make_worker_id(job_type: JobType, index: int) -> str:
    """Build a worker identity unique across hosts and processes."""
    return f"{socket.gethostname()}-{os.getpid()}-{job_type.value}-{index}"


class WorkerPool:
    """Fixed-size worker threads per job type plus a maintenance loop.

    Args:
        coordinator: Lifecycle coordinator shared by every worker.
        registry: Task handlers; only job types with a handler get workers.
        config: Orchestrator configuration.
    """

    def __init__(
        self,
        coordinator: LifecycleCoordinator,
        registry: HandlerRegistry,
        config: DJOConfig,
    ) -> None:
        self._coordinator = coordinator
        self._registry = registry
        self._config = config
        self._shutdown = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def start(self) -> None:
        """Start worker threads and the maintenance thread."""
        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._shutdown.clear()

        for job_type in self._registry.job_types:
            count = self._config.jobs.for_type(job_type.value).workers
            for index in range(1, count + 1):
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(job_type, make_worker_id(job_type, index)),
                    daemon=True,
                    name=f"{job_type.value}-worker-{index}",
                )
                self._threads.append(thread)

        self._threads.append(
            threading.Thread(
                target=self._maintenance_loop, daemon=True, name="maintenance"
            )
        )
        for thread in self._threads:
            thread.start()

        logger.info(
            "Worker pool started: %s",
            ", ".join(
                f"{t.value}={self._config.jobs.for_type(t.value).workers}"
                for t in self._registry.job_types
            )
            or "no handlers",
        )

    def stop(self, timeout: float | None = None) -> bool:
        """Request shutdown and wait for the threads to exit.

        Workers finish their current attempt; jobs waiting out a backoff
        are released back to the queue.

        Returns:
            True if every thread exited within the timeout.
        """
        self._shutdown.set()
        if timeout is None:
            timeout = self._config.server.shutdown_timeout
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(timeout=max(deadline - time.monotonic(), 0.0))
        stragglers = [t.name for t in self._threads if t.is_alive()]
        if stragglers:
            logger.warning(
                "Worker threads still running after %.1fs: %s",
                timeout,
                ", ".join(stragglers),
            )
            return False
        self._threads = []
        logger.info("Worker pool stopped")
        return True

    def run_forever(self) -> None:
        """Start the pool and block until SIGINT/SIGTERM."""
        self._setup_signal_handlers()
        self.start()
        while not self._shutdown.wait(1.0):
            pass
        self.stop()

    def _setup_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

    def _signal_handler(self, signum: int, frame) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, requesting shutdown...", sig_name)
        self._shutdown.set()

    # --- Loops ---

    def _worker_loop(self, job_type: JobType, worker_id: str) -> None:
        poll_interval = self._config.worker.poll_interval_seconds
        executor = WorkerExecutor(
            self._coordinator, self._config, worker_id, shutdown=self._shutdown
        )
        with worker_context(worker_id):
            logger.debug("Worker started")
            while not self._shutdown.is_set():
                try:
                    job = self._coordinator.dispatcher.dequeue(job_type, worker_id)
                    if job is None:
                        self._shutdown.wait(poll_interval)
                        continue
                    self._execute(executor, job)
                except Exception:
                    logger.exception("Worker loop error, pausing before next claim")
                    self._shutdown.wait(poll_interval)
            logger.debug("Worker stopped")

    def _execute(self, executor: WorkerExecutor, job: Job) -> Job:
        with worker_context(executor.worker_id, job.id):
            handler = self._registry.get(job.job_type)
            final = executor.run(job, handler)
            logger.info("Job %s finished as %s", job.id, final.status.value)
            return final

    def _maintenance_loop(self) -> None:
        interval = self._config.worker.maintenance_interval_seconds
        with worker_context("maintenance"):
            while True:
                try:
                    self.run_maintenance()
                except Exception:
                    logger.exception("Maintenance pass failed")
                if self._shutdown.wait(interval):
                    return

    def run_maintenance(self) -> dict[str, int]:
        """Recover jobs of lost workers and purge expired records once."""
        recovered = self._coordinator.recover_lost_workers()
        purged = self._coordinator.purge_expired()
        if recovered:
            logger.info("Recovered %d job(s) from lost workers", len(recovered))
        return {"recovered": len(recovered), **purged}

    def drain(
        self,
        job_types: Iterable[JobType] | None = None,
        *,
        max_jobs: int | None = None,
        worker_id: str | None = None,
    ) -> list[Job]:
        """Process pending jobs in the calling thread until the queue is empty.

        Args:
            job_types: Types to process (default: every type with a handler).
            max_jobs: Stop after this many jobs.
            worker_id: Worker identity (default: derived from the host).

        Returns:
            The processed jobs in their final state.
        """
        types = [
            t for t in (job_types or self._registry.job_types) if self._registry.has(t)
        ]
        processed: list[Job] = []
        self._coordinator.recover_lost_workers()

        while not self._shutdown.is_set():
            claimed = False
            for job_type in types:
                if max_jobs is not None and len(processed) >= max_jobs:
                    return processed
                wid = worker_id or make_worker_id(job_type, 0)
                job = self._coordinator.dispatcher.dequeue(job_type, wid)
                if job is None:
                    continue
                claimed = True
                executor = WorkerExecutor(
                    self._coordinator, self._config, wid, shutdown=self._shutdown
                )
                processed.append(self._execute(executor, job))
            if not claimed:
                break
        return processed
