"""Server lifecycle state.

Tracks startup time and graceful shutdown so request handlers and
long-lived streams can refuse new work while the server drains.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


@dataclass
class ServerLifecycle:
    """Startup and shutdown state of the HTTP gateway."""

    shutdown_timeout: float = 30.0
    """Seconds to wait for graceful shutdown before cancelling tasks."""

    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    """UTC timestamp when the server started."""

    shutdown_initiated: datetime | None = None
    """UTC timestamp when shutdown was initiated, None while running."""

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()

    @property
    def is_shutting_down(self) -> bool:
        return self.shutdown_initiated is not None

    def initiate_shutdown(self) -> None:
        """Mark shutdown as started. Repeated calls are ignored."""
        if self.shutdown_initiated is not None:
            return
        self.shutdown_initiated = datetime.now(timezone.utc)
        logger.info(
            "Shutdown initiated, draining for up to %.1fs", self.shutdown_timeout
        )
