"""Dead-letter store operations for Document Job Orchestrator database."""

import sqlite3

from djo.core.json_utils import dumps_or_none
from djo.db.types import DeadLetterRecord, JobType

from .helpers import DEAD_LETTER_COLUMNS, _row_to_dead_letter, _validate_limit


def insert_dead_letter(conn: sqlite3.Connection, record: DeadLetterRecord) -> str:
    """Insert a dead-letter record.

    Raises:
        sqlite3.IntegrityError: If the job already has a dead-letter record.
    """
    conn.execute(
        f"""
        INSERT INTO dead_letters ({DEAD_LETTER_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record.id,
            record.job_id,
            record.job_type.value,
            dumps_or_none(record.payload),
            record.attempts,
            dumps_or_none(record.last_error.to_dict() if record.last_error else None),
            record.requested_by,
            record.created_at,
            record.started_at,
            record.failed_at,
            record.reprocessed_job_id,
        ),
    )
    return record.id


def get_dead_letter(conn: sqlite3.Connection, record_id: str) -> DeadLetterRecord | None:
    """Get a dead-letter record by ID."""
    row = conn.execute(
        f"SELECT {DEAD_LETTER_COLUMNS} FROM dead_letters WHERE id = ?", (record_id,)
    ).fetchone()
    return _row_to_dead_letter(row) if row else None


def get_dead_letter_for_job(
    conn: sqlite3.Connection, job_id: str
) -> DeadLetterRecord | None:
    """Get the dead-letter record written for a failed job."""
    row = conn.execute(
        f"SELECT {DEAD_LETTER_COLUMNS} FROM dead_letters WHERE job_id = ?", (job_id,)
    ).fetchone()
    return _row_to_dead_letter(row) if row else None


def get_dead_letters(
    conn: sqlite3.Connection,
    *,
    job_type: JobType | None = None,
    include_reprocessed: bool = True,
    limit: int | None = None,
) -> list[DeadLetterRecord]:
    """Get dead-letter records, most recent failure first.

    Args:
        conn: Database connection.
        job_type: Filter by job type.
        include_reprocessed: Whether to include records already reprocessed.
        limit: Maximum number of records to return.
    """
    _validate_limit(limit)
    conditions = []
    params: list[str | int] = []
    if job_type is not None:
        conditions.append("job_type = ?")
        params.append(job_type.value)
    if not include_reprocessed:
        conditions.append("reprocessed_job_id IS NULL")

    query = f"SELECT {DEAD_LETTER_COLUMNS} FROM dead_letters"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY failed_at DESC, rowid DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    return [_row_to_dead_letter(row) for row in conn.execute(query, params).fetchall()]


def count_dead_letters(conn: sqlite3.Connection) -> int:
    """Count dead-letter records not yet reprocessed."""
    row = conn.execute(
        "SELECT COUNT(*) FROM dead_letters WHERE reprocessed_job_id IS NULL"
    ).fetchone()
    return row[0]


def mark_dead_letter_reprocessed(
    conn: sqlite3.Connection, record_id: str, new_job_id: str
) -> bool:
    """Link a dead-letter record to the job created from it.

    Returns:
        True if updated, False if the record is missing or already reprocessed.
    """
    cursor = conn.execute(
        """
        UPDATE dead_letters SET reprocessed_job_id = ?
        WHERE id = ? AND reprocessed_job_id IS NULL
        """,
        (new_job_id, record_id),
    )
    return cursor.rowcount > 0
