"""Retry/backoff decisions for failed attempts.

Retryable failures are retried in the same worker after a full-jitter
exponential backoff::

    delay = uniform(0, min(cap, base * 2**n))

where ``n`` is the zero-based index of the attempt that failed. Anything
non-retryable, or a retryable failure on the last attempt, is terminal.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass

from djo.config.models import JobTypesConfig
from djo.db.types import Job, JobError, JobType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Retry:
    """Retry the job in-worker after ``delay`` seconds."""

    delay: float


@dataclass(frozen=True)
class Terminal:
    """Fail the job; write a dead-letter record if ``dead_letter``."""

    dead_letter: bool


RetryDecision = Retry | Terminal


class RetryController:
    """Decides between retry and terminal failure.

    Args:
        policies: Per-type retry configuration.
        dead_letter_enabled: Whether terminal failures are dead-lettered.
        seed: Seed for the jitter source, for deterministic delays.
        rng: Explicit random source; takes precedence over ``seed``.
    """

    def __init__(
        self,
        policies: JobTypesConfig,
        *,
        dead_letter_enabled: bool = True,
        seed: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._policies = policies
        self._dead_letter_enabled = dead_letter_enabled
        self._rng = rng or random.Random(seed)  # nosec B311 - jitter only

    def max_delay(self, job_type: JobType, failed_attempt_index: int) -> float:
        """Upper bound of the backoff after the given failed attempt."""
        policy = self._policies.for_type(job_type.value)
        return min(
            policy.backoff_cap_seconds,
            policy.backoff_base_seconds * (2**failed_attempt_index),
        )

    def backoff_delay(self, job_type: JobType, failed_attempt_index: int) -> float:
        """Full-jitter delay in seconds after the given failed attempt."""
        return self.max_delay(job_type, failed_attempt_index) * self._rng.random()

    def on_failure(self, job: Job, error: JobError) -> RetryDecision:
        """Decide what happens to a running job whose attempt just failed.

        Args:
            job: The job as persisted, with ``attempts`` counting the
                attempt that failed.
            error: Classified error of the failed attempt.

        Returns:
            Retry with a delay, or Terminal.
        """
        if error.retryable and job.attempts < job.max_attempts:
            delay = self.backoff_delay(job.job_type, job.attempts - 1)
            logger.info(
                "Job %s attempt %d/%d failed (%s), retrying in %.2fs",
                job.id,
                job.attempts,
                job.max_attempts,
                error.error_class.value,
                delay,
            )
            return Retry(delay=delay)

        if error.retryable:
            logger.warning(
                "Job %s exhausted %d attempt(s), last error %s",
                job.id,
                job.max_attempts,
                error.error_class.value,
            )
        else:
            logger.warning(
                "Job %s failed with non-retryable %s: %s",
                job.id,
                error.error_class.value,
                error.message,
            )
        return Terminal(dead_letter=self._dead_letter_enabled)
