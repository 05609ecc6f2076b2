"""Logging configuration factory.

Merges the logging options given on the command line with the
``[logging]`` section of the loaded configuration.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from djo.config.models import DJOConfig, LoggingConfig


def build_logging_config(
    base: LoggingConfig,
    *,
    level: str | None = None,
    file: Path | None = None,
    json_format: bool | None = None,
    include_stderr: bool | None = None,
) -> LoggingConfig:
    """Return ``base`` with every non-None override applied.

    Args:
        base: Logging configuration from file/environment.
        level: Override log level (debug, info, warning, error).
        file: Override log file path.
        json_format: True for JSON output, False for text, None to keep.
        include_stderr: Override stderr mirroring when logging to a file.

    Returns:
        New LoggingConfig. Validation runs in LoggingConfig.__post_init__,
        so invalid values raise ValueError.
    """
    overrides: dict = {}
    if level is not None:
        overrides["level"] = level
    if file is not None:
        overrides["file"] = file
    if json_format is not None:
        overrides["format"] = "json" if json_format else "text"
    if include_stderr is not None:
        overrides["include_stderr"] = include_stderr
    return replace(base, **overrides)


def configure_logging_from_cli(
    config: DJOConfig,
    *,
    level: str | None = None,
    file: Path | None = None,
    json_format: bool | None = None,
) -> LoggingConfig:
    """Apply CLI overrides to ``config.logging`` and configure logging.

    Returns:
        The effective logging configuration.
    """
    from djo.logging import configure_logging

    final_config = build_logging_config(
        config.logging, level=level, file=file, json_format=json_format
    )
    configure_logging(final_config)
    return final_config
