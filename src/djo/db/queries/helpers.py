"""Shared helper functions for database queries.

Row mapping functions convert database rows to the typed dataclasses in
djo.db.types. JSON columns are decoded here so callers never see raw text.
"""

import sqlite3

from djo.core.json_utils import loads_or_none
from djo.db.types import (
    DeadLetterRecord,
    IdempotencyRecord,
    Job,
    JobError,
    JobEvent,
    JobStatus,
    JobType,
)

JOB_COLUMNS = """
    id, job_type, status, stage, progress, attempts, max_attempts,
    payload_json, result_json, error_json, requested_by, idempotency_key,
    parent_job_id, resource_key, worker_id, heartbeat_at, cancel_requested,
    created_at, updated_at, started_at, completed_at, seq
"""

EVENT_COLUMNS = """
    id, job_id, seq, timestamp, status, stage, progress, attempt,
    message, metadata_json
"""

DEAD_LETTER_COLUMNS = """
    id, job_id, job_type, payload_json, attempts, last_error_json,
    requested_by, created_at, started_at, failed_at, reprocessed_job_id
"""


def _validate_limit(limit: int | None) -> None:
    if limit is not None:
        if not isinstance(limit, int) or limit <= 0 or limit > 10000:
            raise ValueError(f"Invalid limit value: {limit}")


def _decode_error(raw: str | None, context: str) -> JobError | None:
    data = loads_or_none(raw, context=context)
    if not data:
        return None
    return JobError.from_dict(data)


def _row_to_job(row: sqlite3.Row) -> Job:
    """Convert a database row to a Job object.

    Args:
        row: sqlite3.Row from a SELECT query on the jobs table.

    Returns:
        Job instance populated from the row.
    """
    job_id = row["id"]
    return Job(
        id=job_id,
        job_type=JobType(row["job_type"]),
        status=JobStatus(row["status"]),
        payload=loads_or_none(row["payload_json"], context=f"job {job_id} payload")
        or {},
        requested_by=row["requested_by"],
        max_attempts=row["max_attempts"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        stage=row["stage"],
        progress=row["progress"],
        attempts=row["attempts"],
        result=loads_or_none(row["result_json"], context=f"job {job_id} result"),
        error=_decode_error(row["error_json"], f"job {job_id} error"),
        idempotency_key=row["idempotency_key"],
        parent_job_id=row["parent_job_id"],
        resource_key=row["resource_key"],
        worker_id=row["worker_id"],
        heartbeat_at=row["heartbeat_at"],
        cancel_requested=row["cancel_requested"] == 1,
    )


def _row_to_event(row: sqlite3.Row) -> JobEvent:
    """Convert a database row to a JobEvent object."""
    return JobEvent(
        id=row["id"],
        job_id=row["job_id"],
        seq=row["seq"],
        timestamp=row["timestamp"],
        status=JobStatus(row["status"]),
        stage=row["stage"],
        progress=row["progress"],
        attempt=row["attempt"],
        message=row["message"],
        metadata=loads_or_none(row["metadata_json"], context=f"event {row['id']}"),
    )


def _row_to_idempotency_record(row: sqlite3.Row) -> IdempotencyRecord:
    return IdempotencyRecord(
        requested_by=row["requested_by"],
        key=row["key"],
        payload_fingerprint=row["payload_fingerprint"],
        job_id=row["job_id"],
        created_at=row["created_at"],
    )


def _row_to_dead_letter(row: sqlite3.Row) -> DeadLetterRecord:
    """Convert a database row to a DeadLetterRecord object."""
    record_id = row["id"]
    return DeadLetterRecord(
        id=record_id,
        job_id=row["job_id"],
        job_type=JobType(row["job_type"]),
        payload=loads_or_none(
            row["payload_json"], context=f"dead letter {record_id} payload"
        )
        or {},
        attempts=row["attempts"],
        last_error=_decode_error(
            row["last_error_json"], f"dead letter {record_id} error"
        ),
        requested_by=row["requested_by"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        failed_at=row["failed_at"],
        reprocessed_job_id=row["reprocessed_job_id"],
    )
