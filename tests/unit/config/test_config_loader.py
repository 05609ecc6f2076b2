"""Tests for configuration loading and precedence."""

from __future__ import annotations

from pathlib import Path

import pytest

from djo.config import (
    DJOConfig,
    EnvReader,
    LoggingConfig,
    build_logging_config,
    get_config,
    load_config_file,
)
from djo.config.models import JobTypeConfig, QueueConfig, WorkerConfig


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.toml"
    path.write_text(
        """
handlers = "simulated"

[jobs.export]
max_attempts = 5
timeout_seconds = 12.5

[queue]
high_watermark = 40
low_watermark = 10

[server]
port = 9000
run_workers = false

[logging]
level = "debug"
"""
    )
    return path


class TestEnvReader:
    """Tests for EnvReader typed access."""

    def test_get_int_invalid_falls_back(self, caplog):
        reader = EnvReader(env={"DJO_X": "abc"})
        assert reader.get_int("DJO_X", 7) == 7
        assert "Invalid integer value for DJO_X" in caplog.text

    def test_get_bool(self):
        reader = EnvReader(env={"A": "Yes", "B": "0"})
        assert reader.get_bool("A") is True
        assert reader.get_bool("B", True) is False
        assert reader.get_bool("C", True) is True

    def test_get_path_expands_user(self):
        reader = EnvReader(env={"P": "~/jobs.db"})
        assert reader.get_path("P") == Path.home() / "jobs.db"


class TestGetConfig:
    """Tests for get_config precedence."""

    def test_defaults_without_file(self, tmp_path: Path):
        config = get_config(tmp_path / "missing.toml", env={})
        assert isinstance(config, DJOConfig)
        assert config.handlers == "entry_points"
        assert config.jobs.convert.max_per_resource == 1
        assert config.jobs.export.max_per_resource == 2
        assert config.jobs.ai.max_attempts == 2
        assert config.queue.high_watermark == 500
        assert config.queue.low_watermark == 250
        assert config.server.port == 8320
        assert config.database_path == Path.home() / ".djo" / "jobs.db"

    def test_file_values(self, config_file: Path):
        config = get_config(config_file, env={})
        assert config.handlers == "simulated"
        assert config.jobs.export.max_attempts == 5
        assert config.jobs.export.timeout_seconds == 12.5
        # Unset fields keep the per-type defaults
        assert config.jobs.export.max_per_resource == 2
        assert config.queue.high_watermark == 40
        assert config.server.port == 9000
        assert config.server.run_workers is False
        assert config.logging.level == "debug"

    def test_env_overrides_file(self, config_file: Path, tmp_path: Path):
        config = get_config(
            config_file,
            env={
                "DJO_EXPORT_MAX_ATTEMPTS": "7",
                "DJO_SERVER_PORT": "9100",
                "DJO_DATA_DIR": str(tmp_path / "data"),
            },
        )
        assert config.jobs.export.max_attempts == 7
        assert config.server.port == 9100
        assert config.database_path == tmp_path / "data" / "jobs.db"

    def test_cli_overrides_env(self, config_file: Path, tmp_path: Path):
        config = get_config(
            config_file,
            database_path=tmp_path / "cli.db",
            handlers="entry_points",
            env={"DJO_DATABASE_PATH": str(tmp_path / "env.db")},
        )
        assert config.database_path == tmp_path / "cli.db"
        assert config.handlers == "entry_points"

    def test_invalid_handler_set(self, tmp_path: Path):
        with pytest.raises(ValueError, match="handlers"):
            get_config(tmp_path / "missing.toml", env={"DJO_HANDLERS": "magic"})

    def test_invalid_toml_is_ignored(self, tmp_path: Path, caplog):
        path = tmp_path / "bad.toml"
        path.write_text("this is = = not toml")
        assert load_config_file(path) == {}
        assert "Failed to load config file" in caplog.text


class TestModelValidation:
    """Tests for dataclass validation."""

    def test_watermarks_must_be_ordered(self):
        with pytest.raises(ValueError, match="low_watermark"):
            QueueConfig(high_watermark=10, low_watermark=20)

    def test_heartbeat_shorter_than_liveness(self):
        with pytest.raises(ValueError, match="heartbeat_interval_seconds"):
            WorkerConfig(heartbeat_interval_seconds=60, liveness_timeout_seconds=30)

    def test_max_attempts_positive(self):
        with pytest.raises(ValueError):
            JobTypeConfig(max_attempts=0)

    def test_for_type(self):
        config = DJOConfig()
        assert config.jobs.for_type("ai") is config.jobs.ai


class TestBuildLoggingConfig:
    """Tests for CLI logging overrides."""

    def test_overrides_applied(self, tmp_path: Path):
        base = LoggingConfig()
        result = build_logging_config(
            base, level="warning", file=tmp_path / "djo.log", json_format=True
        )
        assert result.level == "warning"
        assert result.file == tmp_path / "djo.log"
        assert result.format == "json"
        assert base.format == "text"

    def test_none_keeps_base(self):
        base = LoggingConfig(format="json")
        assert build_logging_config(base, json_format=None).format == "json"

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            build_logging_config(LoggingConfig(), level="verbose")
