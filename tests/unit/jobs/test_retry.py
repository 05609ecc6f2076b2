"""Unit tests for the retry/backoff controller."""

import pytest

from djo.config.models import JobTypeConfig, JobTypesConfig
from djo.db.types import ErrorClass, Job, JobError, JobStatus, JobType
from djo.jobs.retry import Retry, RetryController, Terminal


def running(attempts: int, max_attempts: int = 3, job_type=JobType.CONVERT) -> Job:
    return Job(
        id="job-1",
        job_type=job_type,
        status=JobStatus.RUNNING,
        payload={},
        requested_by="alice",
        max_attempts=max_attempts,
        created_at="2024-01-15T10:30:00.000000+00:00",
        updated_at="2024-01-15T10:30:00.000000+00:00",
        attempts=attempts,
    )


def error(error_class: ErrorClass) -> JobError:
    return JobError.from_class(error_class, "boom")


@pytest.fixture
def policies() -> JobTypesConfig:
    return JobTypesConfig(
        convert=JobTypeConfig(
            max_attempts=3, backoff_base_seconds=2.0, backoff_cap_seconds=30.0
        ),
        ai=JobTypeConfig(
            max_attempts=10, backoff_base_seconds=1.0, backoff_cap_seconds=5.0
        ),
    )


class TestOnFailure:
    """Tests for RetryController.on_failure."""

    @pytest.mark.parametrize(
        "error_class",
        [
            ErrorClass.TRANSIENT_STORAGE,
            ErrorClass.NETWORK_TIMEOUT,
            ErrorClass.MODEL_OVERLOADED,
            ErrorClass.AI_RATE_LIMIT,
            ErrorClass.JOB_TIMEOUT,
            ErrorClass.WORKER_LOST,
        ],
    )
    def test_retryable_with_attempts_left(self, policies, error_class):
        """Retryable failures before the last attempt are retried."""
        controller = RetryController(policies, seed=1)
        decision = controller.on_failure(running(1), error(error_class))
        assert isinstance(decision, Retry)

    @pytest.mark.parametrize(
        "error_class",
        [
            ErrorClass.VALIDATION_ERROR,
            ErrorClass.UNSUPPORTED_FORMAT,
            ErrorClass.QUOTA_EXCEEDED,
            ErrorClass.CORRUPTION_DETECTED,
            ErrorClass.RESOURCE_NOT_FOUND,
            ErrorClass.PERMISSION_DENIED,
            ErrorClass.INTERNAL_BUG,
        ],
    )
    def test_non_retryable_is_terminal(self, policies, error_class):
        """Non-retryable failures end the job on the first attempt."""
        controller = RetryController(policies, seed=1)
        decision = controller.on_failure(running(1), error(error_class))
        assert decision == Terminal(dead_letter=True)

    def test_exhausted_attempts_are_terminal(self, policies):
        """A retryable failure on the last attempt is terminal."""
        controller = RetryController(policies, seed=1)
        decision = controller.on_failure(
            running(3), error(ErrorClass.TRANSIENT_STORAGE)
        )
        assert isinstance(decision, Terminal)

    def test_dead_letter_disabled(self, policies):
        """Terminal decisions respect the dead-letter switch."""
        controller = RetryController(policies, dead_letter_enabled=False, seed=1)
        decision = controller.on_failure(
            running(1), error(ErrorClass.VALIDATION_ERROR)
        )
        assert decision == Terminal(dead_letter=False)


class TestBackoff:
    """Tests for the full-jitter exponential backoff."""

    @pytest.mark.parametrize(
        "attempts,expected", [(1, 2.0), (2, 4.0)]
    )
    def test_upper_bound_doubles(self, policies, fixed_random, attempts, expected):
        """With maximal jitter the delay is base * 2**(attempt - 1)."""
        controller = RetryController(policies, rng=fixed_random(1.0))
        decision = controller.on_failure(
            running(attempts), error(ErrorClass.NETWORK_TIMEOUT)
        )
        assert decision == Retry(delay=expected)

    def test_delay_is_capped(self, policies, fixed_random):
        """The delay never exceeds the cap."""
        controller = RetryController(policies, rng=fixed_random(1.0))
        decision = controller.on_failure(
            running(6, max_attempts=10, job_type=JobType.AI),
            error(ErrorClass.MODEL_OVERLOADED),
        )
        assert decision == Retry(delay=5.0)

    def test_jitter_stays_in_bounds(self, policies):
        """Random delays fall between zero and the upper bound."""
        controller = RetryController(policies, seed=42)
        for attempt_index in range(5):
            bound = controller.max_delay(JobType.AI, attempt_index)
            for _ in range(50):
                delay = controller.backoff_delay(JobType.AI, attempt_index)
                assert 0.0 <= delay <= bound

    def test_seed_makes_delays_deterministic(self, policies):
        """Two controllers with one seed produce the same delays."""
        a = RetryController(policies, seed=123)
        b = RetryController(policies, seed=123)
        delays_a = [a.backoff_delay(JobType.CONVERT, i) for i in range(4)]
        delays_b = [b.backoff_delay(JobType.CONVERT, i) for i in range(4)]
        assert delays_a == delays_b
