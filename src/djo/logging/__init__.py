"""Structured logging for Document Job Orchestrator.

Text or JSON output, optional file rotation, and worker/job context
injected into every record.
"""

from djo.logging.config import configure_logging
from djo.logging.context import (
    WorkerContextFilter,
    clear_worker_context,
    get_worker_context,
    set_worker_context,
    worker_context,
)
from djo.logging.handlers import JSONFormatter

__all__ = [
    "JSONFormatter",
    "WorkerContextFilter",
    "clear_worker_context",
    "configure_logging",
    "get_worker_context",
    "set_worker_context",
    "worker_context",
]
