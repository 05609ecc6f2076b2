"""Configuration loader with precedence handling.

Configuration is loaded with the following precedence (highest to lowest):
1. CLI arguments (passed directly to get_config)
2. Environment variables (DJO_*)
3. Config file (~/.djo/config.toml)
4. Default values

Environment variables:
- DJO_CONFIG_PATH: Path to config file (overrides default location)
- DJO_DATA_DIR: Path to data directory (overrides ~/.djo/)
- DJO_DATABASE_PATH: Path to database file
- DJO_HANDLERS: Handler set ("entry_points" or "simulated")
- DJO_{CONVERT,EXPORT,AI}_{MAX_ATTEMPTS,BACKOFF_BASE,BACKOFF_CAP,TIMEOUT,
  WORKERS,MAX_PER_RESOURCE}: Per-type execution policy
- DJO_QUEUE_{HIGH_WATERMARK,LOW_WATERMARK,SUSTAINED_SECONDS}: Admission control
- DJO_AI_RATE_LIMIT_{ENABLED,MAX_REQUESTS,WINDOW_SECONDS}: AI caller limits
- DJO_IDEMPOTENCY_TTL_HOURS, DJO_EVENT_RETENTION_HOURS, DJO_JOB_RETENTION_DAYS
- DJO_LIVENESS_TIMEOUT, DJO_HEARTBEAT_INTERVAL, DJO_POLL_INTERVAL,
  DJO_MAINTENANCE_INTERVAL, DJO_BACKOFF_SEED: Worker pool
- DJO_DEAD_LETTER_ENABLED
- DJO_LOG_LEVEL, DJO_LOG_FILE, DJO_LOG_FORMAT
- DJO_SERVER_BIND, DJO_SERVER_PORT, DJO_SERVER_RUN_WORKERS
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from djo.config.env import EnvReader
from djo.config.models import (
    AIRateLimitConfig,
    DeadLetterConfig,
    DJOConfig,
    JobTypeConfig,
    JobTypesConfig,
    LoggingConfig,
    QueueConfig,
    RetentionConfig,
    ServerConfig,
    WorkerConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".djo"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

VALID_HANDLER_SETS = frozenset({"entry_points", "simulated"})


def get_default_config_path(reader: EnvReader | None = None) -> Path:
    """Get the config file path, honoring DJO_CONFIG_PATH."""
    reader = reader or EnvReader()
    return reader.get_path("DJO_CONFIG_PATH") or DEFAULT_CONFIG_FILE


def get_data_dir(reader: EnvReader | None = None) -> Path:
    """Get the data directory (~/.djo/ unless DJO_DATA_DIR is set)."""
    reader = reader or EnvReader()
    return reader.get_path("DJO_DATA_DIR") or DEFAULT_CONFIG_DIR


def load_config_file(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from TOML file.

    Args:
        path: Path to config file. If None, uses default location.

    Returns:
        Parsed configuration dict. Empty dict if the file doesn't exist
        or cannot be parsed (a warning is logged).
    """
    if path is None:
        path = get_default_config_path()

    if not path.exists():
        logger.debug("Config file not found: %s", path)
        return {}

    try:
        with path.open("rb") as f:
            config = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning("Failed to load config file %s: %s", path, e)
        return {}
    logger.debug("Loaded config from %s", path)
    return config


def _build_job_type(
    reader: EnvReader, name: str, section: Mapping[str, Any], defaults: JobTypeConfig
) -> JobTypeConfig:
    prefix = f"DJO_{name.upper()}"
    return JobTypeConfig(
        max_attempts=reader.get_int(
            f"{prefix}_MAX_ATTEMPTS",
            section.get("max_attempts", defaults.max_attempts),
        ),
        backoff_base_seconds=reader.get_float(
            f"{prefix}_BACKOFF_BASE",
            section.get("backoff_base_seconds", defaults.backoff_base_seconds),
        ),
        backoff_cap_seconds=reader.get_float(
            f"{prefix}_BACKOFF_CAP",
            section.get("backoff_cap_seconds", defaults.backoff_cap_seconds),
        ),
        timeout_seconds=reader.get_float(
            f"{prefix}_TIMEOUT",
            section.get("timeout_seconds", defaults.timeout_seconds),
        ),
        workers=reader.get_int(
            f"{prefix}_WORKERS", section.get("workers", defaults.workers)
        ),
        max_per_resource=reader.get_int(
            f"{prefix}_MAX_PER_RESOURCE",
            section.get("max_per_resource", defaults.max_per_resource),
        ),
    )


def get_config(
    config_path: Path | None = None,
    *,
    database_path: Path | None = None,
    handlers: str | None = None,
    env: Mapping[str, str] | None = None,
) -> DJOConfig:
    """Get configuration with full precedence handling.

    Args:
        config_path: Path to config file (overrides DJO_CONFIG_PATH).
        database_path: CLI override for database path.
        handlers: CLI override for the handler set.
        env: Environment mapping to read instead of os.environ.

    Returns:
        DJOConfig with merged configuration.

    Raises:
        ValueError: If a merged value fails validation.
    """
    reader = EnvReader(env)
    file_config = load_config_file(config_path or get_default_config_path(reader))

    jobs_file = file_config.get("jobs", {})
    defaults = JobTypesConfig()
    jobs = JobTypesConfig(
        convert=_build_job_type(
            reader, "convert", jobs_file.get("convert", {}), defaults.convert
        ),
        export=_build_job_type(
            reader, "export", jobs_file.get("export", {}), defaults.export
        ),
        ai=_build_job_type(reader, "ai", jobs_file.get("ai", {}), defaults.ai),
    )

    queue_file = file_config.get("queue", {})
    queue = QueueConfig(
        high_watermark=reader.get_int(
            "DJO_QUEUE_HIGH_WATERMARK", queue_file.get("high_watermark", 500)
        ),
        low_watermark=reader.get_int(
            "DJO_QUEUE_LOW_WATERMARK", queue_file.get("low_watermark", 250)
        ),
        sustained_seconds=reader.get_float(
            "DJO_QUEUE_SUSTAINED_SECONDS", queue_file.get("sustained_seconds", 10.0)
        ),
    )

    rate_file = file_config.get("ai_rate_limit", {})
    ai_rate_limit = AIRateLimitConfig(
        enabled=reader.get_bool(
            "DJO_AI_RATE_LIMIT_ENABLED", rate_file.get("enabled", True)
        ),
        max_requests=reader.get_int(
            "DJO_AI_RATE_LIMIT_MAX_REQUESTS", rate_file.get("max_requests", 20)
        ),
        window_seconds=reader.get_int(
            "DJO_AI_RATE_LIMIT_WINDOW_SECONDS", rate_file.get("window_seconds", 60)
        ),
    )

    retention_file = file_config.get("retention", {})
    retention = RetentionConfig(
        idempotency_ttl_hours=reader.get_float(
            "DJO_IDEMPOTENCY_TTL_HOURS",
            retention_file.get("idempotency_ttl_hours", 24.0),
        ),
        event_retention_hours=reader.get_float(
            "DJO_EVENT_RETENTION_HOURS",
            retention_file.get("event_retention_hours", 24.0),
        ),
        job_retention_days=reader.get_int(
            "DJO_JOB_RETENTION_DAYS", retention_file.get("job_retention_days", 30)
        ),
    )

    worker_file = file_config.get("worker", {})
    worker = WorkerConfig(
        liveness_timeout_seconds=reader.get_float(
            "DJO_LIVENESS_TIMEOUT", worker_file.get("liveness_timeout_seconds", 120.0)
        ),
        heartbeat_interval_seconds=reader.get_float(
            "DJO_HEARTBEAT_INTERVAL",
            worker_file.get("heartbeat_interval_seconds", 15.0),
        ),
        poll_interval_seconds=reader.get_float(
            "DJO_POLL_INTERVAL", worker_file.get("poll_interval_seconds", 1.0)
        ),
        maintenance_interval_seconds=reader.get_float(
            "DJO_MAINTENANCE_INTERVAL",
            worker_file.get("maintenance_interval_seconds", 30.0),
        ),
        backoff_seed=reader.get_int(
            "DJO_BACKOFF_SEED", worker_file.get("backoff_seed")
        ),
    )

    dead_letter = DeadLetterConfig(
        enabled=reader.get_bool(
            "DJO_DEAD_LETTER_ENABLED",
            file_config.get("dead_letter", {}).get("enabled", True),
        )
    )

    logging_file = file_config.get("logging", {})
    log_file_str = logging_file.get("file")
    logging_config = LoggingConfig(
        level=reader.get_str("DJO_LOG_LEVEL", logging_file.get("level", "info")),
        file=reader.get_path(
            "DJO_LOG_FILE", Path(log_file_str).expanduser() if log_file_str else None
        ),
        format=reader.get_str("DJO_LOG_FORMAT", logging_file.get("format", "text")),
        include_stderr=logging_file.get("include_stderr", False),
        max_bytes=logging_file.get("max_bytes", 10_485_760),
        backup_count=logging_file.get("backup_count", 5),
    )

    server_file = file_config.get("server", {})
    server = ServerConfig(
        bind=reader.get_str("DJO_SERVER_BIND", server_file.get("bind", "127.0.0.1")),
        port=reader.get_int("DJO_SERVER_PORT", server_file.get("port", 8320)),
        shutdown_timeout=server_file.get("shutdown_timeout", 30.0),
        run_workers=reader.get_bool(
            "DJO_SERVER_RUN_WORKERS", server_file.get("run_workers", True)
        ),
    )

    db_file = file_config.get("database_path")
    db_path = (
        database_path
        or reader.get_path("DJO_DATABASE_PATH")
        or (Path(db_file).expanduser() if db_file else None)
        or get_data_dir(reader) / "jobs.db"
    )

    handler_set = (
        handlers
        or reader.get_str("DJO_HANDLERS")
        or file_config.get("handlers", "entry_points")
    )
    if handler_set not in VALID_HANDLER_SETS:
        raise ValueError(
            f"handlers must be one of {sorted(VALID_HANDLER_SETS)}, got {handler_set}"
        )

    return DJOConfig(
        jobs=jobs,
        queue=queue,
        ai_rate_limit=ai_rate_limit,
        retention=retention,
        worker=worker,
        dead_letter=dead_letter,
        logging=logging_config,
        server=server,
        database_path=db_path,
        handlers=handler_set,
    )
