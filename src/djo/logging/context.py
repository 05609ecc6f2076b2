"""Worker context for structured logging.

Worker threads bind their worker id and the job they are executing to
contextvars; WorkerContextFilter copies them onto every log record so
log lines can be correlated with job events.
"""

from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Generator

_worker_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "worker_id", default=None
)
_job_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "job_id", default=None
)


def set_worker_context(worker_id: str, job_id: str | None = None) -> None:
    """Bind the current worker (and optionally its job) to this context."""
    _worker_id.set(worker_id)
    _job_id.set(job_id)


def clear_worker_context() -> None:
    """Clear the current worker context."""
    _worker_id.set(None)
    _job_id.set(None)


@contextmanager
def worker_context(
    worker_id: str, job_id: str | None = None
) -> Generator[None, None, None]:
    """Set worker context for the duration of a block, restoring it after.

    Example:
        with worker_context("convert-1", job.id):
            logger.info("Starting attempt")
    """
    old_worker_id = _worker_id.get()
    old_job_id = _job_id.get()
    try:
        set_worker_context(worker_id, job_id)
        yield
    finally:
        _worker_id.set(old_worker_id)
        _job_id.set(old_job_id)


def get_worker_context() -> tuple[str | None, str | None]:
    """Return (worker_id, job_id); either may be None."""
    return _worker_id.get(), _job_id.get()


class WorkerContextFilter(logging.Filter):
    """Inject worker_id, job_id and a compact worker_tag into log records.

    The tag renders as ``[convert-1:1a2b3c4d] `` (job id shortened to
    eight characters), ``[convert-1] `` outside a job, or an empty string.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        worker_id, job_id = get_worker_context()
        record.worker_id = worker_id
        record.job_id = job_id

        if worker_id and job_id:
            record.worker_tag = f"[{worker_id}:{job_id[:8]}] "
        elif worker_id:
            record.worker_tag = f"[{worker_id}] "
        else:
            record.worker_tag = ""

        return True
