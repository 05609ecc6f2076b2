"""Task handler contract, registry and simulated handlers.

A task handler performs the actual work of one job type (parsing,
rendering, calling an AI provider). The engine only sees this contract:

    result = handler.execute(payload, reporter)

Handlers report progress through the reporter and signal classified
failures by raising TaskError. Any other exception is treated as an
internal bug and never retried.

Handlers are discovered from the ``djo.handlers`` entry-point group. Each
entry point is named after a job type and resolves to a handler class or
factory taking no arguments. The ``simulated`` set reproduces the mock
pipelines used for demos and tests.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from importlib.metadata import entry_points
from typing import Any, Protocol, runtime_checkable

from djo.core.datetime_utils import to_iso, utc_now
from djo.db.types import ErrorClass, JobType
from djo.jobs.exceptions import HandlerNotFoundError

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "djo.handlers"


class TaskError(Exception):
    """Classified failure raised by a task handler.

    Attributes:
        error_class: Class deciding whether the failure is retried.
        code: Optional machine-readable code; defaults to the class name.
    """

    def __init__(
        self, error_class: ErrorClass, message: str, code: str | None = None
    ) -> None:
        self.error_class = error_class
        self.code = code
        super().__init__(message)


@runtime_checkable
class Reporter(Protocol):
    """What a handler may call while it runs."""

    job_id: str
    attempt: int

    def report(
        self,
        stage: str,
        progress: int,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


@runtime_checkable
class TaskHandler(Protocol):
    """Performs the work of one job type."""

    def execute(self, payload: dict[str, Any], reporter: Reporter) -> dict[str, Any]:
        """Run one attempt and return the result document.

        Raises:
            TaskError: For classified failures.
        """
        ...


class HandlerRegistry:
    """Maps job types to task handlers."""

    def __init__(self, handlers: dict[JobType, TaskHandler] | None = None) -> None:
        self._handlers: dict[JobType, TaskHandler] = dict(handlers or {})

    def register(self, job_type: JobType, handler: TaskHandler) -> None:
        if job_type in self._handlers:
            logger.warning("Replacing %s handler", job_type.value)
        self._handlers[job_type] = handler

    def get(self, job_type: JobType) -> TaskHandler:
        """Return the handler for a job type.

        Raises:
            HandlerNotFoundError: If none is registered.
        """
        try:
            return self._handlers[job_type]
        except KeyError:
            raise HandlerNotFoundError(job_type.value) from None

    def has(self, job_type: JobType) -> bool:
        return job_type in self._handlers

    @property
    def job_types(self) -> list[JobType]:
        return [t for t in JobType if t in self._handlers]


def load_entry_point_handlers(group: str = ENTRY_POINT_GROUP) -> HandlerRegistry:
    """Build a registry from installed entry points.

    Entry points whose name is not a job type, or that fail to load, are
    logged and skipped.
    """
    registry = HandlerRegistry()
    for ep in entry_points(group=group):
        try:
            job_type = JobType(ep.name)
        except ValueError:
            logger.warning("Ignoring handler entry point %r: unknown job type", ep.name)
            continue
        try:
            factory = ep.load()
            handler = factory()
        except Exception as e:
            logger.error("Failed to load %s handler from %s: %s", ep.name, ep.value, e)
            continue
        if not isinstance(handler, TaskHandler):
            logger.error("Handler %s does not implement execute()", ep.value)
            continue
        registry.register(job_type, handler)
        logger.debug("Loaded %s handler from %s", ep.name, ep.value)
    return registry


# --- Simulated handlers ---


class SimulatedConvertHandler:
    """Walks the mock conversion pipeline (5, 25, 60, 90, 100 percent)."""

    STAGES: tuple[tuple[str, int], ...] = (
        ("fetching", 5),
        ("parsing", 25),
        ("extracting", 60),
        ("assembling", 90),
    )

    def __init__(
        self, step_delay: float = 0.3, sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self._step_delay = step_delay
        self._sleep = sleep

    def execute(self, payload: dict[str, Any], reporter: Reporter) -> dict[str, Any]:
        if not payload.get("objectKey"):
            raise TaskError(ErrorClass.VALIDATION_ERROR, "objectKey is required")
        for stage, progress in self.STAGES:
            reporter.report(stage, progress)
            self._sleep(self._step_delay)
        return {"documentId": "doc_" + reporter.job_id[:8]}


class SimulatedExportHandler:
    """Walks the mock export pipeline and returns the artifact location.

    The artifact is a placeholder file; its download link expires after
    ``DOWNLOAD_TTL``.
    """

    STAGES: tuple[tuple[str, int, str], ...] = (
        ("loading", 20, "Loading document..."),
        ("processing", 40, "Processing slides..."),
        ("generating", 60, "Generating export..."),
        ("uploading", 80, "Uploading file..."),
    )
    FORMATS = frozenset({"pptx", "pdf"})
    DOWNLOAD_TTL = timedelta(hours=24)

    def __init__(
        self,
        step_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._step_delay = step_delay
        self._sleep = sleep
        self._clock = clock

    def execute(self, payload: dict[str, Any], reporter: Reporter) -> dict[str, Any]:
        document_id = payload.get("documentId")
        export_format = payload.get("format")
        if not document_id:
            raise TaskError(ErrorClass.VALIDATION_ERROR, "documentId is required")
        if export_format not in self.FORMATS:
            raise TaskError(
                ErrorClass.UNSUPPORTED_FORMAT, f"Unsupported format: {export_format}"
            )
        for stage, progress, message in self.STAGES:
            reporter.report(stage, progress, message)
            self._sleep(self._step_delay)
        content = f"Dummy {export_format.upper()} export for {document_id}"
        return {
            "format": export_format,
            "filePath": f"exports/{document_id}/{reporter.job_id}.{export_format}",
            "downloadUrl": f"/api/v1/exports/{reporter.job_id}/download",
            "expiresAt": to_iso(self._clock() + self.DOWNLOAD_TTL),
            "fileSize": len(content.encode("utf-8")),
        }


class SimulatedAIHandler:
    """Echo provider: streams the reversed last message back in chunks."""

    PROVIDER = "echo"

    def __init__(
        self,
        chunk_size: int = 16,
        chunk_delay: float = 0.005,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay
        self._sleep = sleep

    def execute(self, payload: dict[str, Any], reporter: Reporter) -> dict[str, Any]:
        messages = payload.get("messages") or []
        if not messages:
            raise TaskError(ErrorClass.VALIDATION_ERROR, "messages must not be empty")
        content = str(messages[-1].get("content", ""))[::-1]

        chunks = [
            content[i : i + self._chunk_size]
            for i in range(0, len(content), self._chunk_size)
        ] or [""]
        for index, chunk in enumerate(chunks, start=1):
            self._sleep(self._chunk_delay)
            reporter.report(
                "streaming",
                int(index * 99 / len(chunks)),
                metadata={"delta": chunk},
            )
        return {
            "provider": self.PROVIDER,
            "model": payload.get("model") or self.PROVIDER,
            "content": content,
        }


def simulated_handlers(step_delay: float | None = None) -> HandlerRegistry:
    """Registry with simulated handlers for every job type.

    Args:
        step_delay: Override the pause between stages (0 for tests).
    """
    if step_delay is None:
        return HandlerRegistry(
            {
                JobType.CONVERT: SimulatedConvertHandler(),
                JobType.EXPORT: SimulatedExportHandler(),
                JobType.AI: SimulatedAIHandler(),
            }
        )
    return HandlerRegistry(
        {
            JobType.CONVERT: SimulatedConvertHandler(step_delay=step_delay),
            JobType.EXPORT: SimulatedExportHandler(step_delay=step_delay),
            JobType.AI: SimulatedAIHandler(chunk_delay=step_delay),
        }
    )


def build_registry(handler_set: str) -> HandlerRegistry:
    """Return the registry for a configured handler set name."""
    if handler_set == "simulated":
        return simulated_handlers()
    return load_entry_point_handlers()
