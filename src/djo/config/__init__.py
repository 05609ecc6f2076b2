"""Configuration management for Document Job Orchestrator.

Configuration is loaded with precedence handling:
1. CLI flags (highest priority)
2. Environment variables (DJO_*)
3. Config file (~/.djo/config.toml)
4. Default values (lowest priority)
"""

from djo.config.env import EnvReader
from djo.config.loader import (
    get_config,
    get_data_dir,
    get_default_config_path,
    load_config_file,
)
from djo.config.logging_factory import (
    build_logging_config,
    configure_logging_from_cli,
)
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

__all__ = [
    # Models
    "AIRateLimitConfig",
    "DeadLetterConfig",
    "DJOConfig",
    "JobTypeConfig",
    "JobTypesConfig",
    "LoggingConfig",
    "QueueConfig",
    "RetentionConfig",
    "ServerConfig",
    "WorkerConfig",
    # Loading
    "EnvReader",
    "get_config",
    "get_data_dir",
    "get_default_config_path",
    "load_config_file",
    # Logging
    "build_logging_config",
    "configure_logging_from_cli",
]
