"""End-to-end job lifecycle scenarios against a real database."""

import pytest

from djo.db.types import ErrorClass, JobStatus, JobType
from djo.jobs.handlers import TaskError

pytestmark = pytest.mark.integration


class TestLifecycleScenarios:
    """Submit, run and observe jobs through the engine API."""

    def test_convert_job_succeeds(
        self, make_engine, scripted_registry, convert_payload
    ):
        """Stages 10, 60 and 100 end in succeeded at 100 percent."""
        registry, handler = scripted_registry(
            [{"documentId": "doc_1"}],
            stages=(("parsing", 10), ("extracting", 60), ("assembling", 100)),
        )
        engine = make_engine(registry=registry)
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")

        (final,) = engine.worker_pool().drain()

        assert final.id == job.id
        assert final.status == JobStatus.SUCCEEDED
        assert final.progress == 100
        assert final.attempts == 1
        assert final.result == {"documentId": "doc_1"}
        assert final.completed_at is not None
        progress = [e.progress for e in engine.coordinator.history(job.id)]
        assert progress == [0, 0, 10, 60, 100, 100]

    def test_transient_failures_then_success(
        self, make_engine, scripted_registry, transient_error, convert_payload
    ):
        """Two transient_storage failures are retried; the third attempt wins."""
        registry, handler = scripted_registry(
            [transient_error(), transient_error(), {"documentId": "doc_1"}]
        )
        engine = make_engine(registry=registry)
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")

        (final,) = engine.worker_pool().drain()

        assert final.status == JobStatus.SUCCEEDED
        assert final.attempts == 3
        assert final.error is None
        assert handler.calls == 3
        retries = [
            e
            for e in engine.coordinator.history(job.id)
            if e.stage == "retrying"
        ]
        assert [e.attempt for e in retries] == [2, 3]
        assert retries[0].metadata["error"]["class"] == "transient_storage"

    def test_validation_error_is_not_retried(
        self, make_engine, scripted_registry, convert_payload
    ):
        """A validation_error fails the job after one attempt."""
        registry, handler = scripted_registry(
            [TaskError(ErrorClass.VALIDATION_ERROR, "Unreadable slide 3")]
        )
        engine = make_engine(registry=registry)
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")

        (final,) = engine.worker_pool().drain()

        assert final.status == JobStatus.FAILED
        assert final.attempts == 1
        assert handler.calls == 1
        assert final.error.error_class == ErrorClass.VALIDATION_ERROR
        assert final.error.retryable is False
        assert final.error.message == "Unreadable slide 3"
        (record,) = engine.coordinator.list_dead_letters()
        assert record.job_id == job.id

    def test_cancel_pending_job(
        self, make_engine, scripted_registry, convert_payload
    ):
        """A pending job canceled before any worker sees it never runs."""
        registry, handler = scripted_registry([{"documentId": "doc_1"}])
        engine = make_engine(registry=registry)
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")

        canceled = engine.coordinator.cancel(job.id)
        processed = engine.worker_pool().drain()

        assert canceled.status == JobStatus.CANCELED
        assert processed == []
        assert handler.calls == 0
        assert engine.coordinator.get(job.id).status == JobStatus.CANCELED

    def test_idempotent_submission(self, engine, export_payload):
        """Two submissions with one key and payload yield one job."""
        first = engine.coordinator.submit(
            JobType.EXPORT, export_payload, "alice", idempotency_key="export-42"
        )
        second = engine.coordinator.submit(
            JobType.EXPORT, export_payload, "alice", idempotency_key="export-42"
        )

        assert first.id == second.id
        assert [j.id for j in engine.coordinator.list_jobs()] == [first.id]


class TestRetryExhaustion:
    """Retryable failures that never recover."""

    def test_retries_exhausted(
        self, make_engine, scripted_registry, transient_error, convert_payload
    ):
        registry, handler = scripted_registry([transient_error()] * 3)
        engine = make_engine(registry=registry)
        job = engine.coordinator.submit(JobType.CONVERT, convert_payload, "alice")

        (final,) = engine.worker_pool().drain()

        assert final.status == JobStatus.FAILED
        assert final.attempts == 3
        assert final.error.error_class == ErrorClass.TRANSIENT_STORAGE
        (record,) = engine.coordinator.list_dead_letters()
        assert record.attempts == 3

        # Reprocessing runs the payload again as a new job
        retry = engine.coordinator.reprocess_dead_letter(record.id)
        (rerun,) = engine.worker_pool().drain()
        assert rerun.id == retry.id
        assert rerun.status == JobStatus.SUCCEEDED
        assert rerun.parent_job_id == job.id

    def test_simulated_pipelines(
        self, engine, convert_payload, export_payload, ai_payload
    ):
        """Every simulated handler runs to success."""
        coordinator = engine.coordinator
        coordinator.submit(JobType.CONVERT, convert_payload, "alice")
        coordinator.submit(JobType.EXPORT, export_payload, "alice")
        coordinator.submit(JobType.AI, ai_payload, "alice")

        processed = engine.worker_pool().drain()

        types = sorted(j.job_type.value for j in processed)
        assert types == ["ai", "convert", "export"]
        assert all(j.status == JobStatus.SUCCEEDED for j in processed)
        ai_job = next(j for j in processed if j.job_type == JobType.AI)
        assert ai_job.result["content"] == "ereht olleh"
