"""Idempotency index for job submissions.

A submission carrying an idempotency key creates at most one job while
the key's record is live. Keys belong to the submitting principal, so the
same key from two callers names two unrelated submissions. The record is
inserted by the JobStore in the same transaction as the job, and the
table's primary key arbitrates concurrent submissions of the same key.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from djo.core.json_utils import canonical_json
from djo.db.queries import (
    delete_expired_idempotency_records,
    get_live_idempotency_record,
)
from djo.db.types import IdempotencyRecord, Job, JobType
from djo.jobs.exceptions import IdempotencyConflictError
from djo.jobs.store import IdempotencyKeyTakenError, JobStore

logger = logging.getLogger(__name__)

# A racing submitter can only win the key once, so one re-lookup suffices;
# the extra attempt covers a record expiring between the two reads.
_MAX_RESERVE_ATTEMPTS = 3


def fingerprint(job_type: JobType, payload: dict[str, Any]) -> str:
    """Return the SHA-256 fingerprint of a submission."""
    canonical = canonical_json({"type": job_type.value, "payload": payload})
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Reservation:
    """Outcome of an idempotent submission."""

    job: Job
    created: bool  # False when an existing job was returned


class IdempotencyIndex:
    """Maps (requester, idempotency key) pairs to the jobs they created."""

    def __init__(self, store: JobStore) -> None:
        self._store = store

    def lookup(self, requested_by: str, key: str) -> IdempotencyRecord | None:
        """Return the live record for a caller's ``key``, if any."""
        with self._store.pool.read_connection() as conn:
            return get_live_idempotency_record(
                conn, requested_by, key, self._store.now_iso()
            )

    def reserve(
        self,
        requested_by: str,
        key: str,
        payload_fingerprint: str,
        create: Callable[[], Job],
    ) -> Reservation:
        """Return the job for a key, creating it if the key is unused.

        Args:
            requested_by: Principal submitting the job; scopes the key.
            key: Caller-supplied idempotency key.
            payload_fingerprint: Fingerprint of the submitted payload.
            create: Creates and persists the job together with its
                idempotency record. Only called when no live record exists.

        Returns:
            Reservation with the existing or newly created job.

        Raises:
            IdempotencyConflictError: If the key is live with a different
                payload fingerprint.
        """
        for _ in range(_MAX_RESERVE_ATTEMPTS):
            record = self.lookup(requested_by, key)
            if record is not None:
                if record.payload_fingerprint != payload_fingerprint:
                    raise IdempotencyConflictError(key, record.job_id)
                logger.debug("Idempotency key %s replayed job %s", key, record.job_id)
                return Reservation(job=self._store.get(record.job_id), created=False)
            try:
                return Reservation(job=create(), created=True)
            except IdempotencyKeyTakenError:
                logger.debug("Lost race for idempotency key %s, re-reading", key)
        raise IdempotencyConflictError(key, "unknown")

    def purge_expired(self) -> int:
        """Delete expired records. The jobs they point to are untouched."""
        now_iso = self._store.now_iso()
        with self._store.pool.transaction() as conn:
            deleted = delete_expired_idempotency_records(conn, now_iso)
        if deleted:
            logger.info("Purged %d expired idempotency record(s)", deleted)
        return deleted
