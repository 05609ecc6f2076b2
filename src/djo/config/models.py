"""Configuration data models.

This module defines dataclasses for orchestrator configuration options.
"""

from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class JobTypeConfig:
    """Execution and retry policy for one job type."""

    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_cap_seconds: float = 30.0

    # Soft execution timeout per attempt. For ai jobs this is measured from
    # the last progress report (stream inactivity) instead of attempt start.
    timeout_seconds: float = 60.0

    # Worker threads dedicated to this type
    workers: int = 2

    # Maximum concurrently active jobs per resource (document / source object)
    max_per_resource: int | None = None

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.backoff_base_seconds < 0 or self.backoff_cap_seconds < 0:
            raise ValueError("backoff values must be non-negative")
        if self.timeout_seconds <= 0:
            raise ValueError(
                f"timeout_seconds must be positive, got {self.timeout_seconds}"
            )
        if self.workers < 0:
            raise ValueError(f"workers must be non-negative, got {self.workers}")
        if self.max_per_resource is not None and self.max_per_resource < 1:
            raise ValueError(
                f"max_per_resource must be at least 1, got {self.max_per_resource}"
            )


def _convert_defaults() -> JobTypeConfig:
    return JobTypeConfig(timeout_seconds=60.0, max_per_resource=1)


def _export_defaults() -> JobTypeConfig:
    return JobTypeConfig(timeout_seconds=45.0, max_per_resource=2)


def _ai_defaults() -> JobTypeConfig:
    return JobTypeConfig(
        max_attempts=2,
        backoff_base_seconds=1.0,
        backoff_cap_seconds=10.0,
        timeout_seconds=30.0,
        workers=4,
    )


@dataclass
class JobTypesConfig:
    """Per-type policies keyed by job type."""

    convert: JobTypeConfig = field(default_factory=_convert_defaults)
    export: JobTypeConfig = field(default_factory=_export_defaults)
    ai: JobTypeConfig = field(default_factory=_ai_defaults)

    def for_type(self, job_type: str) -> JobTypeConfig:
        """Return the policy for a job type value ("convert", "export", "ai")."""
        return getattr(self, job_type)


@dataclass
class QueueConfig:
    """Admission control for the dispatcher."""

    # Pending depth per type above which load shedding may start
    high_watermark: int = 500

    # Pending depth per type at or below which shedding stops
    low_watermark: int = 250

    # How long depth must stay above the high watermark before shedding
    sustained_seconds: float = 10.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.low_watermark > self.high_watermark:
            raise ValueError(
                f"low_watermark ({self.low_watermark}) must not exceed "
                f"high_watermark ({self.high_watermark})"
            )
        if self.sustained_seconds < 0:
            raise ValueError("sustained_seconds must be non-negative")


@dataclass
class AIRateLimitConfig:
    """Per-caller sliding window limit on ai job submissions."""

    enabled: bool = True
    max_requests: int = 20
    window_seconds: int = 60

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_requests < 1:
            raise ValueError(f"max_requests must be at least 1, got {self.max_requests}")
        if self.window_seconds < 1:
            raise ValueError(
                f"window_seconds must be at least 1, got {self.window_seconds}"
            )


@dataclass
class RetentionConfig:
    """How long finished work is kept."""

    # Idempotency records expire after this many hours
    idempotency_ttl_hours: float = 24.0

    # Events of finished jobs are kept at least this long
    event_retention_hours: float = 24.0

    # Finished jobs are deleted after this many days (0 disables)
    job_retention_days: int = 30


@dataclass
class WorkerConfig:
    """Configuration for the worker pool."""

    # Running jobs with no heartbeat for this long are treated as lost
    liveness_timeout_seconds: float = 120.0

    # Heartbeat refresh interval while a handler runs
    heartbeat_interval_seconds: float = 15.0

    # Idle wait between dequeue attempts
    poll_interval_seconds: float = 1.0

    # Interval of the lost-worker recovery and purge loop
    maintenance_interval_seconds: float = 30.0

    # Seed for backoff jitter (None = nondeterministic)
    backoff_seed: int | None = None

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.heartbeat_interval_seconds >= self.liveness_timeout_seconds:
            raise ValueError(
                "heartbeat_interval_seconds must be shorter than "
                "liveness_timeout_seconds"
            )


@dataclass
class DeadLetterConfig:
    """Dead-letter store behavior."""

    enabled: bool = True


@dataclass
class LoggingConfig:
    """Configuration for structured logging."""

    # Log level: debug, info, warning, error
    level: str = "info"

    # Log file path (None = stderr only)
    file: Path | None = None

    # Log format: text or json
    format: str = "text"

    # Also log to stderr when file is set
    include_stderr: bool = False

    # Rotation threshold in bytes (default 10MB)
    max_bytes: int = 10_485_760

    # Number of rotated files to keep
    backup_count: int = 5

    def __post_init__(self) -> None:
        """Validate configuration."""
        valid_levels = {"debug", "info", "warning", "error"}
        if self.level.lower() not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}, got {self.level}")
        valid_formats = {"text", "json"}
        if self.format.lower() not in valid_formats:
            raise ValueError(
                f"format must be one of {valid_formats}, got {self.format}"
            )


@dataclass
class ServerConfig:
    """Configuration for the HTTP gateway (`djo serve`)."""

    bind: str = "127.0.0.1"
    port: int = 8320

    shutdown_timeout: float = 30.0
    """Seconds to wait for graceful shutdown before cancelling tasks."""

    run_workers: bool = True
    """Start the worker pool inside the server process."""

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not 1 <= self.port <= 65535:
            raise ValueError(f"port must be 1-65535, got {self.port}")
        if self.shutdown_timeout <= 0:
            raise ValueError(
                f"shutdown_timeout must be positive, got {self.shutdown_timeout}"
            )


@dataclass
class DJOConfig:
    """Main configuration container.

    Aggregates all configuration sections.
    """

    jobs: JobTypesConfig = field(default_factory=JobTypesConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    ai_rate_limit: AIRateLimitConfig = field(default_factory=AIRateLimitConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    dead_letter: DeadLetterConfig = field(default_factory=DeadLetterConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    # Database path (None = ~/.djo/jobs.db)
    database_path: Path | None = None

    # Handler set name: "entry_points" or "simulated"
    handlers: str = "entry_points"
