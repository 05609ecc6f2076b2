"""Per-caller rate limiting for ai submissions.

Limiter state is in-memory and per-process. Separate server and worker
processes each keep their own counters.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass, field

from djo.config.models import AIRateLimitConfig

logger = logging.getLogger(__name__)


@dataclass
class SlidingWindowCounter:
    """Sliding window counter over monotonic timestamps.

    Timestamps are appended in order, so the oldest is always at the left.
    """

    requests: deque[float] = field(default_factory=deque)

    def record_and_check(
        self, now: float, max_requests: int, window_seconds: float
    ) -> bool:
        """Record a request if the window has room.

        Returns:
            True if the request is allowed, False if rate limited.
        """
        cutoff = now - window_seconds
        while self.requests and self.requests[0] < cutoff:
            self.requests.popleft()
        if len(self.requests) >= max_requests:
            return False
        self.requests.append(now)
        return True

    def seconds_until_available(self, now: float, window_seconds: float) -> float:
        """Seconds until the oldest request leaves the window.

        Must be called after record_and_check(), which prunes expired entries.
        """
        if not self.requests:
            return 0.0
        return max(0.0, window_seconds - (now - self.requests[0]))


class CallerRateLimiter:
    """Sliding window limit per caller principal."""

    _CLEANUP_INTERVAL = 300  # seconds between stale counter cleanup

    def __init__(
        self,
        config: AIRateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._clock = clock
        self._counters: dict[str, SlidingWindowCounter] = defaultdict(
            SlidingWindowCounter
        )
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def check(self, caller: str) -> tuple[bool, float]:
        """Record a request by ``caller`` and check the limit.

        Returns:
            Tuple of (allowed, retry_after_seconds).
        """
        if not self._config.enabled:
            return (True, 0.0)

        with self._lock:
            now = self._clock()
            self._maybe_cleanup(now)
            counter = self._counters[caller]
            window = self._config.window_seconds
            if counter.record_and_check(now, self._config.max_requests, window):
                return (True, 0.0)
            return (False, counter.seconds_until_available(now, window))

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < self._CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        window = self._config.window_seconds
        stale = [
            caller
            for caller, counter in self._counters.items()
            if not counter.requests or (now - counter.requests[-1]) >= window
        ]
        for caller in stale:
            del self._counters[caller]
