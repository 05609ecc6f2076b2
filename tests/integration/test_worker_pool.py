"""Integration tests for the threaded worker pool."""

import time

import pytest

from djo.config.models import JobTypeConfig, JobTypesConfig
from djo.db.types import ErrorClass, JobStatus, JobType
from djo.jobs.retry import RetryController

pytestmark = pytest.mark.integration


def wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not reached in time")
        time.sleep(0.01)


@pytest.fixture
def worker_pool(engine):
    pool = engine.worker_pool()
    yield pool
    if pool.running:
        pool.stop(timeout=5)


class TestWorkerPool:
    """Tests for WorkerPool threads."""

    def test_processes_jobs_in_background(self, engine, worker_pool, export_payload):
        job = engine.coordinator.submit(JobType.EXPORT, export_payload, "alice")

        worker_pool.start()
        wait_for(lambda: engine.coordinator.get(job.id).is_terminal)

        final = engine.coordinator.get(job.id)
        assert final.status == JobStatus.SUCCEEDED
        assert final.result["format"] == "pdf"
        assert worker_pool.stop(timeout=5) is True
        assert worker_pool.running is False

    def test_start_twice_rejected(self, worker_pool):
        worker_pool.start()
        with pytest.raises(RuntimeError, match="already started"):
            worker_pool.start()

    def test_stop_releases_job_in_backoff(
        self, make_engine, scripted_registry, transient_error, fixed_random,
        convert_payload,
    ):
        """Jobs waiting out a backoff go back to pending on shutdown."""
        registry, handler = scripted_registry([transient_error()])
        engine = make_engine(registry=registry)
        engine.coordinator.retry = RetryController(
            JobTypesConfig(
                convert=JobTypeConfig(backoff_base_seconds=60, backoff_cap_seconds=60)
            ),
            rng=fixed_random(1.0),
        )
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        pool = engine.worker_pool()

        pool.start()
        wait_for(lambda: engine.coordinator.get(job.id).stage == "retrying")
        assert pool.stop(timeout=5) is True

        released = engine.coordinator.get(job.id)
        assert released.status == JobStatus.PENDING
        assert released.attempts == 2
        assert handler.calls == 1


class TestMaintenance:
    """Tests for run_maintenance and drain."""

    def test_run_maintenance_recovers_lost_worker(
        self, engine, clock, ai_payload
    ):
        job = engine.coordinator.submit(JobType.AI, ai_payload, "alice")
        engine.coordinator.dispatcher.dequeue(JobType.AI, "crashed-worker")
        clock.advance(31)

        counts = engine.worker_pool().run_maintenance()

        assert counts == {
            "recovered": 1,
            "idempotency_keys": 0,
            "events": 0,
            "jobs": 0,
        }
        recovered = engine.coordinator.get(job.id)
        assert recovered.status == JobStatus.PENDING
        assert recovered.error.error_class == ErrorClass.WORKER_LOST

    def test_drain_max_jobs(self, engine):
        for index in range(3):
            payload = {"documentId": f"doc_{index}", "format": "pdf"}
            engine.coordinator.submit(JobType.EXPORT, payload, "alice")

        processed = engine.worker_pool().drain(max_jobs=2, worker_id="cli")

        assert len(processed) == 2
        pending = engine.coordinator.list_jobs(status=JobStatus.PENDING)
        assert len(pending) == 1

    def test_drain_only_selected_types(self, engine, export_payload, ai_payload):
        engine.coordinator.submit(JobType.EXPORT, export_payload, "alice")
        ai_job = engine.coordinator.submit(JobType.AI, ai_payload, "alice")

        processed = engine.worker_pool().drain([JobType.EXPORT])

        assert [j.job_type for j in processed] == [JobType.EXPORT]
        assert engine.coordinator.get(ai_job.id).status == JobStatus.PENDING
