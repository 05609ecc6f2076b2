"""Unit tests for JobStore compare-and-swap and event append."""

import threading
import uuid
from datetime import timedelta

import pytest

from djo.db.types import ErrorClass, Job, JobError, JobStatus, JobType
from djo.jobs.exceptions import (
    ConcurrencyLimitError,
    ConcurrentModificationError,
    InvalidTransitionError,
    JobNotFoundError,
)
from djo.jobs.state import (
    apply_progress,
    mark_failed,
    mark_started,
    mark_succeeded,
)
from djo.jobs.store import IdempotencyKeyTakenError


def new_job(job_type: JobType = JobType.CONVERT, **overrides) -> Job:
    values = {
        "id": str(uuid.uuid4()),
        "job_type": job_type,
        "status": JobStatus.PENDING,
        "payload": {"objectKey": "a.pptx", "sourceType": "pptx"},
        "requested_by": "alice",
        "max_attempts": 3,
        "created_at": "",
        "updated_at": "",
    }
    values.update(overrides)
    return Job(**values)


def start(store, job_id: str, worker_id: str = "w1") -> Job:
    now_iso = store.now_iso()
    return store.compare_and_swap_status(
        job_id, JobStatus.PENDING, lambda j: mark_started(j, worker_id, now_iso)
    )


class TestCreate:
    """Tests for JobStore.create."""

    def test_persists_job_and_first_event(self, store, clock):
        """A new job is stored with a seq 1 'submitted' event."""
        job = store.create(new_job())

        stored = store.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.created_at == store.now_iso()

        with store.pool.read_connection() as conn:
            rows = conn.execute(
                "SELECT seq, status, message FROM job_events WHERE job_id = ?",
                (job.id,),
            ).fetchall()
        assert [(r["seq"], r["status"], r["message"]) for r in rows] == [
            (1, "pending", "Job submitted")
        ]

    def test_rejects_non_pending_job(self, store):
        """Only fresh pending jobs can be created."""
        with pytest.raises(ValueError):
            store.create(new_job(status=JobStatus.RUNNING))
        with pytest.raises(ValueError):
            store.create(new_job(attempts=1))

    def test_resource_limit(self, store):
        """A second active job on a capped resource is refused."""
        store.create(new_job(resource_key="source:a"), resource_limit=1)
        with pytest.raises(ConcurrencyLimitError):
            store.create(new_job(resource_key="source:a"), resource_limit=1)
        # Other resources are unaffected
        store.create(new_job(resource_key="source:b"), resource_limit=1)

    def test_resource_slot_released_on_terminal(self, store):
        """Finishing a job frees its resource slot."""
        job = store.create(new_job(resource_key="source:a"), resource_limit=1)
        start(store, job.id)
        store.compare_and_swap_status(
            job.id, JobStatus.RUNNING, lambda j: mark_succeeded(j, {})
        )
        store.create(new_job(resource_key="source:a"), resource_limit=1)

    def test_duplicate_live_idempotency_key(self, store):
        """Two jobs cannot hold the same live idempotency key."""
        store.create(new_job(idempotency_key="k1"), idempotency_fingerprint="fp")
        with pytest.raises(IdempotencyKeyTakenError):
            store.create(new_job(idempotency_key="k1"), idempotency_fingerprint="fp")
        assert len(store.list_jobs()) == 1


class TestCompareAndSwap:
    """Tests for JobStore.compare_and_swap_status."""

    def test_applies_mutation_and_appends_event(self, store):
        """A successful swap updates the job and appends the next seq."""
        job = store.create(new_job())
        started = start(store, job.id)
        assert started.status == JobStatus.RUNNING
        assert started.attempts == 1

        now_iso = store.now_iso()
        progressed = store.compare_and_swap_status(
            job.id,
            JobStatus.RUNNING,
            lambda j: apply_progress(j, "parsing", 25, now_iso),
            message="Parsing",
            metadata={"pages": 3},
        )
        assert progressed.progress == 25

        with store.pool.read_connection() as conn:
            rows = conn.execute(
                "SELECT seq, stage, progress, attempt, message FROM job_events "
                "WHERE job_id = ? ORDER BY seq",
                (job.id,),
            ).fetchall()
        assert [r["seq"] for r in rows] == [1, 2, 3]
        assert rows[-1]["stage"] == "parsing"
        assert rows[-1]["attempt"] == 1
        assert rows[-1]["message"] == "Parsing"

    def test_wrong_expected_status(self, store):
        """The swap fails when the job has moved on."""
        job = store.create(new_job())
        with pytest.raises(ConcurrentModificationError) as exc_info:
            store.compare_and_swap_status(
                job.id, JobStatus.RUNNING, lambda j: mark_succeeded(j, {})
            )
        assert exc_info.value.actual_status == "pending"

    def test_owner_guard(self, store):
        """A swap narrowed to a worker and attempt only applies for that owner."""
        job = store.create(new_job())
        start(store, job.id, worker_id="w2")

        for worker_id, attempts in (("w1", None), ("w2", 2), ("w1", 1)):
            with pytest.raises(ConcurrentModificationError):
                store.compare_and_swap_status(
                    job.id,
                    JobStatus.RUNNING,
                    lambda j: mark_succeeded(j, {}),
                    expected_worker_id=worker_id,
                    expected_attempts=attempts,
                )
        assert store.get(job.id).status == JobStatus.RUNNING

        done = store.compare_and_swap_status(
            job.id,
            JobStatus.RUNNING,
            lambda j: mark_succeeded(j, {"by": "w2"}),
            expected_worker_id="w2",
            expected_attempts=1,
        )
        assert done.result == {"by": "w2"}

    def test_invalid_transition_writes_nothing(self, store):
        """An illegal edge is rejected and no event is appended."""
        job = store.create(new_job())
        with pytest.raises(InvalidTransitionError):
            store.compare_and_swap_status(
                job.id, JobStatus.PENDING, lambda j: mark_succeeded(j, {})
            )
        assert store.get(job.id).status == JobStatus.PENDING
        with store.pool.read_connection() as conn:
            count = conn.execute(
                "SELECT COUNT(*) FROM job_events WHERE job_id = ?", (job.id,)
            ).fetchone()[0]
        assert count == 1

    def test_unknown_job(self, store):
        """Swapping a missing job raises JobNotFoundError."""
        with pytest.raises(JobNotFoundError):
            store.compare_and_swap_status(
                "missing", JobStatus.PENDING, lambda j: j
            )

    def test_terminal_jobs_are_frozen(self, store):
        """A terminal job accepts no further swaps."""
        job = store.create(new_job())
        start(store, job.id)
        store.compare_and_swap_status(
            job.id, JobStatus.RUNNING, lambda j: mark_succeeded(j, {"ok": 1})
        )
        with pytest.raises(ConcurrentModificationError):
            store.compare_and_swap_status(
                job.id,
                JobStatus.RUNNING,
                lambda j: mark_failed(
                    j, JobError.from_class(ErrorClass.INTERNAL_BUG, "late")
                ),
            )
        final = store.get(job.id)
        assert final.status == JobStatus.SUCCEEDED
        assert final.result == {"ok": 1}

    def test_failed_job_is_dead_lettered(self, store):
        """dead_letter=True writes a record in the same transaction."""
        job = store.create(new_job())
        start(store, job.id)
        error = JobError.from_class(ErrorClass.UNSUPPORTED_FORMAT, "bad format")
        store.compare_and_swap_status(
            job.id,
            JobStatus.RUNNING,
            lambda j: mark_failed(j, error),
            dead_letter=True,
        )
        records = store.list_dead_letters()
        assert len(records) == 1
        assert records[0].job_id == job.id
        assert records[0].last_error == error
        assert records[0].attempts == 1
        assert store.count_dead_letters() == 1

    def test_concurrent_claims_have_one_winner(self, store):
        """Racing claims of the same pending job produce exactly one winner."""
        job = store.create(new_job())
        winners: list[str] = []
        losers: list[str] = []
        barrier = threading.Barrier(4)

        def claim(worker_id: str) -> None:
            barrier.wait()
            try:
                start(store, job.id, worker_id)
                winners.append(worker_id)
            except ConcurrentModificationError:
                losers.append(worker_id)

        threads = [
            threading.Thread(target=claim, args=(f"w{i}",)) for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(losers) == 3
        assert store.get(job.id).worker_id == winners[0]


class TestHeartbeatAndQueries:
    """Tests for heartbeats, stale detection and filters."""

    def test_touch_heartbeat(self, store, clock):
        """Only the owning worker can refresh a running job's heartbeat."""
        job = store.create(new_job())
        start(store, job.id, "w1")
        clock.advance(10)

        assert store.touch_heartbeat(job.id, "w1") is True
        assert store.get(job.id).heartbeat_at == store.now_iso()
        assert store.touch_heartbeat(job.id, "w2") is False

    def test_find_stale_running(self, store, clock):
        """Jobs whose heartbeat is older than the cutoff are stale."""
        job = store.create(new_job())
        start(store, job.id)
        clock.advance(60)

        assert store.find_stale_running(store.now() - timedelta(seconds=120)) == []
        stale = store.find_stale_running(store.now() - timedelta(seconds=30))
        assert [j.id for j in stale] == [job.id]

    def test_list_pending_is_fifo(self, store, clock):
        """Pending jobs are listed oldest first."""
        first = store.create(new_job(resource_key=None))
        clock.advance(1)
        second = store.create(new_job(resource_key=None))
        pending = store.list_pending_for_type(JobType.CONVERT, 10)
        assert [j.id for j in pending] == [first.id, second.id]
        assert store.count_pending(JobType.CONVERT) == 2
        assert store.count_pending(JobType.EXPORT) == 0

    def test_list_jobs_filters(self, store):
        """list_jobs filters by status, type and requester."""
        a = store.create(new_job(requested_by="alice"))
        store.create(new_job(JobType.AI, payload={"messages": []}, requested_by="bob"))
        start(store, a.id)

        assert [j.id for j in store.list_jobs(status=JobStatus.RUNNING)] == [a.id]
        assert len(store.list_jobs(job_type=JobType.AI)) == 1
        assert len(store.list_jobs(requested_by="bob")) == 1
        assert len(store.list_jobs(limit=1)) == 1

    def test_count_by_status_is_zero_filled(self, store):
        """Counts include every type and status, even when empty."""
        store.create(new_job())
        counts = store.count_by_status()
        assert counts["convert"]["pending"] == 1
        assert counts["export"] == {
            "pending": 0,
            "running": 0,
            "succeeded": 0,
            "failed": 0,
            "canceled": 0,
        }

    def test_purge_completed(self, store, clock):
        """Old terminal jobs and their events are deleted; active jobs stay."""
        done = store.create(new_job())
        start(store, done.id)
        store.compare_and_swap_status(
            done.id, JobStatus.RUNNING, lambda j: mark_succeeded(j, {})
        )
        active = store.create(new_job(payload={"objectKey": "b"}))
        clock.advance(3600)

        assert store.purge_completed(store.now() - timedelta(minutes=30)) == 1
        with pytest.raises(JobNotFoundError):
            store.get(done.id)
        assert store.get(active.id).status == JobStatus.PENDING
