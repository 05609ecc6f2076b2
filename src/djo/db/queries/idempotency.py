"""Idempotency key operations for Document Job Orchestrator database.

Keys are scoped to the principal that submitted them: two callers using
the same key never see each other's jobs.
"""

import sqlite3

from djo.db.types import IdempotencyRecord

from .helpers import _row_to_idempotency_record


def get_live_idempotency_record(
    conn: sqlite3.Connection, requested_by: str, key: str, now: str
) -> IdempotencyRecord | None:
    """Get the unexpired record for a caller's idempotency key.

    Args:
        conn: Database connection.
        requested_by: Principal that submitted the key.
        key: Caller-supplied idempotency key.
        now: Current ISO-8601 UTC timestamp.

    Returns:
        IdempotencyRecord if a live record exists, None otherwise.
    """
    row = conn.execute(
        """
        SELECT requested_by, key, payload_fingerprint, job_id, created_at
        FROM idempotency_keys
        WHERE requested_by = ? AND key = ? AND expires_at > ?
        """,
        (requested_by, key, now),
    ).fetchone()
    return _row_to_idempotency_record(row) if row else None


def insert_idempotency_record(
    conn: sqlite3.Connection, record: IdempotencyRecord, expires_at: str
) -> None:
    """Insert an idempotency record, replacing an expired one for the same key.

    Raises:
        sqlite3.IntegrityError: If a live record already holds the caller's key.
    """
    conn.execute(
        """
        DELETE FROM idempotency_keys
        WHERE requested_by = ? AND key = ? AND expires_at <= ?
        """,
        (record.requested_by, record.key, record.created_at),
    )
    conn.execute(
        """
        INSERT INTO idempotency_keys
            (requested_by, key, payload_fingerprint, job_id, created_at, expires_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            record.requested_by,
            record.key,
            record.payload_fingerprint,
            record.job_id,
            record.created_at,
            expires_at,
        ),
    )


def delete_expired_idempotency_records(conn: sqlite3.Connection, now: str) -> int:
    """Delete expired idempotency records. Referenced jobs are untouched.

    Returns:
        Number of records deleted.
    """
    cursor = conn.execute("DELETE FROM idempotency_keys WHERE expires_at <= ?", (now,))
    return cursor.rowcount
