"""Append-only event log reader and live subscriptions.

Events are written by the JobStore in the same transaction as the job
row; this module only reads them. Subscribers replay from a known ``seq``
and then wait on the store's change condition, falling back to polling so
events written by other processes are still picked up.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from datetime import datetime

from djo.core.datetime_utils import to_iso
from djo.db.queries import delete_events_for_finished_jobs, get_events, get_job
from djo.db.types import JobEvent
from djo.jobs.exceptions import JobNotFoundError
from djo.jobs.store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0


class EventLog:
    """Ordered, replayable view over the job_events table."""

    def __init__(
        self, store: JobStore, *, poll_interval: float = DEFAULT_POLL_INTERVAL
    ) -> None:
        self._store = store
        self._poll_interval = poll_interval

    def read(
        self, job_id: str, after_seq: int | None = None, limit: int | None = None
    ) -> list[JobEvent]:
        """Return events for a job with seq greater than ``after_seq``."""
        with self._store.pool.read_connection() as conn:
            return get_events(conn, job_id, after_seq=after_seq, limit=limit)

    def wait_for_events(
        self, job_id: str, after_seq: int | None, timeout: float
    ) -> list[JobEvent]:
        """Block until events newer than ``after_seq`` exist or timeout elapses.

        Args:
            job_id: Job UUID.
            after_seq: Last seq the caller has seen.
            timeout: Maximum seconds to wait.

        Returns:
            New events, possibly empty if the timeout elapsed.
        """
        events = self.read(job_id, after_seq)
        if events:
            return events
        with self._store.changed:
            self._store.changed.wait(timeout=min(timeout, self._poll_interval))
        return self.read(job_id, after_seq)

    def is_finished(self, job_id: str) -> bool:
        """Return True if the job is terminal or no longer stored."""
        with self._store.pool.read_connection() as conn:
            job = get_job(conn, job_id)
        return job is None or job.is_terminal

    def subscribe(
        self,
        job_id: str,
        after_seq: int | None = None,
        stop: threading.Event | None = None,
    ) -> Iterator[JobEvent]:
        """Yield historical events after ``after_seq``, then live ones.

        The iterator ends after yielding an event with a terminal status,
        when the job is already finished and nothing after ``after_seq``
        remains (the caller saw the end, or the events were purged), or
        when ``stop`` is set.

        Raises:
            JobNotFoundError: If the job doesn't exist.
        """
        with self._store.pool.read_connection() as conn:
            if get_job(conn, job_id) is None:
                raise JobNotFoundError(job_id, "subscribe to")

        last_seq = after_seq or 0
        while stop is None or not stop.is_set():
            events = self.read(job_id, last_seq)
            if not events:
                if self.is_finished(job_id):
                    # The final event commits with the final state
                    events = self.read(job_id, last_seq)
                    if not events:
                        return
                else:
                    events = self.wait_for_events(job_id, last_seq, self._poll_interval)
            for event in events:
                last_seq = event.seq
                yield event
                if event.status.is_terminal:
                    return

    def purge(self, older_than: datetime) -> int:
        """Delete events of jobs that finished before ``older_than``."""
        with self._store.pool.transaction() as conn:
            deleted = delete_events_for_finished_jobs(conn, to_iso(older_than))
        if deleted:
            logger.info("Purged %d event(s) of finished jobs", deleted)
        return deleted
