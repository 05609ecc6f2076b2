"""Event log operations for Document Job Orchestrator database.

The job_events table is append-only. Events are ordered per job by the
store's logical clock (seq).
"""

import sqlite3

from djo.core.json_utils import dumps_or_none
from djo.db.types import JobEvent

from .helpers import EVENT_COLUMNS, _row_to_event, _validate_limit


def insert_event(conn: sqlite3.Connection, event: JobEvent) -> str:
    """Append an event record.

    Args:
        conn: Database connection.
        event: Event to append.

    Returns:
        The ID of the inserted event.
    """
    conn.execute(
        f"""
        INSERT INTO job_events ({EVENT_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.id,
            event.job_id,
            event.seq,
            event.timestamp,
            event.status.value,
            event.stage,
            event.progress,
            event.attempt,
            event.message,
            dumps_or_none(event.metadata),
        ),
    )
    return event.id


def get_events(
    conn: sqlite3.Connection,
    job_id: str,
    after_seq: int | None = None,
    limit: int | None = None,
) -> list[JobEvent]:
    """Get events for a job in order.

    Args:
        conn: Database connection.
        job_id: Job UUID.
        after_seq: Only return events with a greater seq.
        limit: Maximum number of events to return.

    Returns:
        List of JobEvent objects ordered by seq.
    """
    _validate_limit(limit)
    query = f"SELECT {EVENT_COLUMNS} FROM job_events WHERE job_id = ? AND seq > ?"
    params: list[str | int] = [job_id, after_seq or 0]
    query += " ORDER BY seq ASC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]


def delete_events_for_finished_jobs(conn: sqlite3.Connection, older_than: str) -> int:
    """Delete events of jobs that reached a terminal state before a cutoff.

    Args:
        conn: Database connection.
        older_than: ISO-8601 UTC timestamp.

    Returns:
        Number of events deleted.
    """
    cursor = conn.execute(
        """
        DELETE FROM job_events
        WHERE job_id IN (
            SELECT id FROM jobs
            WHERE completed_at IS NOT NULL AND completed_at < ?
        )
        """,
        (older_than,),
    )
    return cursor.rowcount
