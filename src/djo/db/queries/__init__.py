"""Database query operations package.

Module organization:
- helpers.py: Column lists and row mapping functions
- jobs.py: Job CRUD, FIFO lookups and resource slots
- events.py: Append-only event log
- idempotency.py: Idempotency key records
- dead_letters.py: Dead-letter records

Usage:
    from djo.db.queries import get_job, insert_event
"""

from .dead_letters import (
    count_dead_letters,
    get_dead_letter,
    get_dead_letter_for_job,
    get_dead_letters,
    insert_dead_letter,
    mark_dead_letter_reprocessed,
)
from .events import (
    delete_events_for_finished_jobs,
    get_events,
    insert_event,
)
from .idempotency import (
    delete_expired_idempotency_records,
    get_live_idempotency_record,
    insert_idempotency_record,
)
from .jobs import (
    acquire_resource_slot,
    count_jobs_by_type_and_status,
    count_pending_jobs,
    delete_completed_jobs,
    get_job,
    get_job_seq,
    get_jobs_filtered,
    get_pending_jobs,
    get_stale_running_jobs,
    insert_job,
    release_resource_slot,
    update_job_heartbeat,
    update_job_if_status,
)

__all__ = [
    # Jobs
    "acquire_resource_slot",
    "count_jobs_by_type_and_status",
    "count_pending_jobs",
    "delete_completed_jobs",
    "get_job",
    "get_job_seq",
    "get_jobs_filtered",
    "get_pending_jobs",
    "get_stale_running_jobs",
    "insert_job",
    "release_resource_slot",
    "update_job_heartbeat",
    "update_job_if_status",
    # Events
    "delete_events_for_finished_jobs",
    "get_events",
    "insert_event",
    # Idempotency
    "delete_expired_idempotency_records",
    "get_live_idempotency_record",
    "insert_idempotency_record",
    # Dead letters
    "count_dead_letters",
    "get_dead_letter",
    "get_dead_letter_for_job",
    "get_dead_letters",
    "insert_dead_letter",
    "mark_dead_letter_reprocessed",
]
