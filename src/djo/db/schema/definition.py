"""Database schema definition for Document Job Orchestrator.

The jobs table is the single source of truth for job state. The event log,
idempotency index, dead letters and resource slots are all written inside
the same transaction as the job row they belong to.
"""

import sqlite3

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS _meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,                -- UUID v4
    job_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    stage TEXT NOT NULL DEFAULT 'queued',
    progress INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    payload_json TEXT NOT NULL,
    result_json TEXT,
    error_json TEXT,
    requested_by TEXT NOT NULL,
    idempotency_key TEXT,
    parent_job_id TEXT,
    resource_key TEXT,
    worker_id TEXT,
    heartbeat_at TEXT,                  -- ISO 8601 UTC timestamp
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    seq INTEGER NOT NULL DEFAULT 0,     -- Logical clock of the last event
    CONSTRAINT valid_type CHECK (job_type IN ('convert', 'export', 'ai')),
    CONSTRAINT valid_status CHECK (
        status IN ('pending', 'running', 'succeeded', 'failed', 'canceled')
    ),
    CONSTRAINT valid_progress CHECK (progress >= 0 AND progress <= 100),
    CONSTRAINT valid_attempts CHECK (attempts >= 0 AND attempts <= max_attempts)
);

CREATE INDEX IF NOT EXISTS idx_jobs_type_status_created
    ON jobs(job_type, status, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_heartbeat ON jobs(status, heartbeat_at);

-- Append-only event log, ordered by (job_id, seq)
CREATE TABLE IF NOT EXISTS job_events (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    status TEXT NOT NULL,
    stage TEXT NOT NULL,
    progress INTEGER NOT NULL,
    attempt INTEGER NOT NULL,
    message TEXT,
    metadata_json TEXT,
    UNIQUE (job_id, seq),
    FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_job_events_timestamp ON job_events(timestamp);

-- Keys are scoped to the submitting principal
CREATE TABLE IF NOT EXISTS idempotency_keys (
    requested_by TEXT NOT NULL,
    key TEXT NOT NULL,
    payload_fingerprint TEXT NOT NULL,
    job_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    PRIMARY KEY (requested_by, key)
);

CREATE INDEX IF NOT EXISTS idx_idempotency_expires ON idempotency_keys(expires_at);

CREATE TABLE IF NOT EXISTS dead_letters (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL UNIQUE,        -- Exactly one record per failed job
    job_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    attempts INTEGER NOT NULL,
    last_error_json TEXT,
    requested_by TEXT NOT NULL,
    created_at TEXT NOT NULL,
    started_at TEXT,
    failed_at TEXT NOT NULL,
    reprocessed_job_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_dead_letters_failed ON dead_letters(failed_at);

-- Active job counters for per-resource concurrency caps
CREATE TABLE IF NOT EXISTS resource_slots (
    resource_key TEXT PRIMARY KEY,
    active INTEGER NOT NULL DEFAULT 0 CHECK (active >= 0)
);
"""


def create_schema(conn: sqlite3.Connection) -> None:
    """Create the database schema if it doesn't exist.

    Args:
        conn: An open database connection.
    """
    conn.executescript(SCHEMA_SQL)

    conn.execute(
        "INSERT OR IGNORE INTO _meta (key, value) VALUES ('schema_version', ?)",
        (str(SCHEMA_VERSION),),
    )
    # executescript() commits implicitly; the INSERT above opens a new
    # implicit transaction that must be closed before BEGIN IMMEDIATE.
    conn.commit()
