"""Integration tests for WorkerExecutor: timeouts, cancellation, shutdown."""

import sqlite3
import threading
import time

import pytest

from djo.config.models import JobTypeConfig, JobTypesConfig
from djo.db.types import ErrorClass, JobStatus, JobType
from djo.jobs.executor import JobCanceled, ProgressReporter, StaleAttemptError
from djo.jobs.executor import WorkerExecutor
from djo.jobs.handlers import HandlerRegistry
from djo.jobs.retry import RetryController

pytestmark = pytest.mark.integration


def claim(engine, job_type=JobType.CONVERT, worker_id="w1"):
    return engine.coordinator.dispatcher.dequeue(job_type, worker_id)


def executor_for(engine, **kwargs) -> WorkerExecutor:
    return WorkerExecutor(
        engine.coordinator, engine.config, "w1", check_interval=0.01, **kwargs
    )


class BlockingHandler:
    """Reports one stage, then blocks until released."""

    def __init__(self, stage_after_release: str | None = None) -> None:
        self.release = threading.Event()
        self.started = threading.Event()
        self.late_error: Exception | None = None
        self._stage_after_release = stage_after_release

    def execute(self, payload, reporter):
        reporter.report("working", 30)
        self.started.set()
        self.release.wait(5)
        if self._stage_after_release:
            try:
                reporter.report(self._stage_after_release, 80)
            except Exception as e:
                self.late_error = e
                raise
        return {"done": True}


class TestProgressReporter:
    """Tests for ProgressReporter."""

    def test_reports_update_job(self, engine, convert_payload):
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        running = claim(engine)
        reporter = ProgressReporter(engine.coordinator, running)

        reporter.report("parsing", 40, "Parsing slides", {"slides": 12})

        current = engine.coordinator.get(job.id)
        assert current.stage == "parsing"
        assert current.progress == 40
        event = engine.coordinator.history(job.id)[-1]
        assert event.message == "Parsing slides"
        assert event.metadata == {"slides": 12}

    def test_cancel_checked_at_stage_boundary(self, engine, convert_payload):
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        reporter = ProgressReporter(engine.coordinator, claim(engine))
        reporter.report("parsing", 20)
        engine.coordinator.cancel(job.id)

        # Same stage: no boundary, the report goes through
        reporter.report("parsing", 30)
        with pytest.raises(JobCanceled):
            reporter.report("extracting", 60)
        assert reporter.cancel_seen is True

    def test_invalidated_reporter_rejects(self, engine, convert_payload):
        engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        reporter = ProgressReporter(engine.coordinator, claim(engine))
        reporter.invalidate()
        with pytest.raises(StaleAttemptError):
            reporter.report("parsing", 10)

    def test_report_after_job_left_running(self, engine, convert_payload):
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        reporter = ProgressReporter(engine.coordinator, claim(engine))
        engine.coordinator.release(job.id, "test")
        with pytest.raises(StaleAttemptError):
            reporter.report("working", 10)


class TestWorkerExecutor:
    """Tests for running attempts to a terminal state."""

    def test_unexpected_exception_is_internal_bug(
        self, make_engine, scripted_registry, convert_payload
    ):
        """Unclassified exceptions fail the job without retrying."""
        registry, handler = scripted_registry([KeyError("slide")])
        engine = make_engine(registry=registry)
        engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")

        final = executor_for(engine).run(claim(engine), handler)

        assert final.status == JobStatus.FAILED
        assert final.attempts == 1
        assert final.error.error_class == ErrorClass.INTERNAL_BUG
        assert "KeyError" in final.error.message
        assert handler.calls == 1

    def test_cancel_running_job_at_next_stage(self, engine, convert_payload):
        """A running job stops at its next stage boundary after cancel."""
        handler = BlockingHandler(stage_after_release="extracting")
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        running = claim(engine)
        result: dict = {}

        thread = threading.Thread(
            target=lambda: result.update(
                final=executor_for(engine).run(running, handler)
            )
        )
        thread.start()
        assert handler.started.wait(5)
        engine.coordinator.cancel(job.id)
        handler.release.set()
        thread.join(5)

        final = result["final"]
        assert final.status == JobStatus.CANCELED
        assert final.progress == 30
        assert isinstance(handler.late_error, JobCanceled)
        assert engine.coordinator.history(job.id)[-1].status == JobStatus.CANCELED

    def test_cancel_requested_before_completion(self, engine, convert_payload):
        """Completing after a cancel request ends as canceled, not succeeded."""
        handler = BlockingHandler()
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        running = claim(engine)
        result: dict = {}

        thread = threading.Thread(
            target=lambda: result.update(
                final=executor_for(engine).run(running, handler)
            )
        )
        thread.start()
        assert handler.started.wait(5)
        engine.coordinator.cancel(job.id)
        handler.release.set()
        thread.join(5)

        assert result["final"].status == JobStatus.CANCELED
        assert result["final"].result is None

    def test_timeout_fails_after_last_attempt(self, make_engine, convert_payload):
        """A handler running past its timeout counts as a job_timeout failure."""
        engine = make_engine(
            jobs=JobTypesConfig(
                convert=JobTypeConfig(
                    max_attempts=1, timeout_seconds=0.2, max_per_resource=1
                )
            )
        )
        handler = BlockingHandler(stage_after_release="late")
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")

        started = time.monotonic()
        final = executor_for(engine).run(claim(engine), handler)
        elapsed = time.monotonic() - started

        assert final.status == JobStatus.FAILED
        assert final.error.error_class == ErrorClass.JOB_TIMEOUT
        assert final.error.retryable is True
        assert elapsed < 3

        # The abandoned attempt cannot write to the job any more
        handler.release.set()
        time.sleep(0.1)
        assert isinstance(handler.late_error, StaleAttemptError)
        assert engine.coordinator.get(job.id).status == JobStatus.FAILED
        assert engine.coordinator.get(job.id).progress == 30

    def test_ai_timeout_is_inactivity_based(self, make_engine, ai_payload):
        """ai attempts that keep streaming are not timed out."""

        class SlowStream:
            def execute(self, payload, reporter):
                for index in range(6):
                    time.sleep(0.1)
                    reporter.report("streaming", index * 10)
                return {"content": "done"}

        engine = make_engine(
            jobs=JobTypesConfig(ai=JobTypeConfig(max_attempts=1, timeout_seconds=0.3))
        )
        engine.coordinator.submit(JobType.AI, ai_payload, "alice")

        final = executor_for(engine).run(claim(engine, JobType.AI), SlowStream())

        assert final.status == JobStatus.SUCCEEDED

    def test_shutdown_during_backoff_releases_job(
        self, make_engine, scripted_registry, transient_error, fixed_random,
        convert_payload,
    ):
        """Stopping the worker mid-backoff puts the job back in the queue."""
        registry, handler = scripted_registry([transient_error()])
        engine = make_engine(registry=registry)
        engine.coordinator.retry = RetryController(
            JobTypesConfig(
                convert=JobTypeConfig(backoff_base_seconds=60, backoff_cap_seconds=60)
            ),
            rng=fixed_random(1.0),
        )
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        shutdown = threading.Event()
        shutdown.set()

        final = executor_for(engine, shutdown=shutdown).run(claim(engine), handler)

        assert final.status == JobStatus.PENDING
        assert final.attempts == 2
        assert final.worker_id is None
        assert engine.coordinator.history(job.id)[-1].message == "Worker shutting down"

    def test_cancel_during_backoff(
        self, make_engine, scripted_registry, transient_error, fixed_random,
        convert_payload,
    ):
        """A cancel request interrupts the backoff wait."""
        registry, handler = scripted_registry([transient_error()])
        engine = make_engine(registry=registry)
        engine.coordinator.retry = RetryController(
            JobTypesConfig(
                convert=JobTypeConfig(backoff_base_seconds=60, backoff_cap_seconds=60)
            ),
            rng=fixed_random(1.0),
        )
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        running = claim(engine)
        result: dict = {}

        thread = threading.Thread(
            target=lambda: result.update(
                final=executor_for(engine).run(running, handler)
            )
        )
        thread.start()
        deadline = time.monotonic() + 5
        while engine.coordinator.get(job.id).stage != "retrying":
            assert time.monotonic() < deadline
            time.sleep(0.01)
        engine.coordinator.cancel(job.id)
        thread.join(5)

        assert result["final"].status == JobStatus.CANCELED
        assert handler.calls == 1

    def test_heartbeat_refreshes_while_running(self, engine, clock, convert_payload):
        """The heartbeat thread keeps a long attempt from looking lost."""
        handler = BlockingHandler()
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        running = claim(engine)
        first_beat = running.heartbeat_at

        thread = threading.Thread(
            target=executor_for(engine).run, args=(running, handler)
        )
        thread.start()
        assert handler.started.wait(5)
        clock.advance(60)
        time.sleep(0.3)

        assert engine.coordinator.get(job.id).heartbeat_at > first_beat
        assert engine.coordinator.recover_lost_workers() == []
        handler.release.set()
        thread.join(5)
        assert engine.coordinator.get(job.id).status == JobStatus.SUCCEEDED

    def test_failing_heartbeat_abandons_attempt(
        self, engine, convert_payload, monkeypatch
    ):
        """When heartbeats cannot be written the attempt stops writing too."""
        handler = BlockingHandler(stage_after_release="extracting")
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        running = claim(engine)

        def broken_touch(job_id, worker_id):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(engine.coordinator.store, "touch_heartbeat", broken_touch)

        final = executor_for(engine).run(running, handler)

        # Left running for lost-worker recovery to pick up
        assert final.status == JobStatus.RUNNING
        assert final.progress == 30
        handler.release.set()
        time.sleep(0.1)
        assert isinstance(handler.late_error, StaleAttemptError)
        assert engine.coordinator.get(job.id).stage == "working"

    def test_lost_claim_result_not_committed(
        self, engine, clock, convert_payload, monkeypatch
    ):
        """A result finished after another worker took over is dropped."""
        handler = BlockingHandler()
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        running = claim(engine)
        result: dict = {}

        thread = threading.Thread(
            target=lambda: result.update(
                final=executor_for(engine).run(running, handler)
            )
        )
        thread.start()
        assert handler.started.wait(5)
        # Heartbeats stop landing, as if this worker had stalled
        monkeypatch.setattr(
            engine.coordinator.store, "touch_heartbeat", lambda job_id, worker_id: True
        )
        clock.advance(31)
        engine.coordinator.recover_lost_workers()
        other = claim(engine, worker_id="w2")
        handler.release.set()
        thread.join(5)

        assert result["final"].worker_id == "w2"
        current = engine.coordinator.get(job.id)
        assert current.status == JobStatus.RUNNING
        assert current.worker_id == "w2"
        assert current.attempts == other.attempts == 2
        assert current.result is None


def test_registry_unused_types_are_skipped(make_engine, ai_payload):
    """drain() ignores types without a handler."""
    engine = make_engine(registry=HandlerRegistry())
    engine.coordinator.submit(JobType.AI, ai_payload, "alice")
    assert engine.worker_pool().drain([JobType.AI]) == []
