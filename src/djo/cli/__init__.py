"""CLI module for Document Job Orchestrator."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from djo.cli.exit_codes import ExitCode, exit_code_for
from djo.config import DJOConfig, configure_logging_from_cli, get_config
from djo.jobs.engine import Engine, create_engine
from djo.jobs.exceptions import OrchestratorError

logger = logging.getLogger(__name__)


def get_engine(ctx: click.Context) -> Engine:
    """Return the engine for this invocation, creating it on first use.

    Tests may pass a ready engine through ``obj={"engine": ...}``.
    """
    obj = ctx.ensure_object(dict)
    engine = obj.get("engine")
    if engine is None:
        config: DJOConfig = obj["config"]
        try:
            engine = create_engine(config)
        except (OSError, RuntimeError) as e:
            click.echo(f"Error: cannot open database: {e}", err=True)
            ctx.exit(ExitCode.DATABASE_ERROR)
        obj["engine"] = engine
        ctx.find_root().call_on_close(engine.close)
    return engine


def fail(ctx: click.Context, error: OrchestratorError) -> None:
    """Report an engine error and exit with its mapped code."""
    click.echo(f"Error: {error}", err=True)
    ctx.exit(exit_code_for(error))


@click.group()
@click.version_option(package_name="document-job-orchestrator")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to configuration file (default: ~/.djo/config.toml).",
)
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to the job database (default: ~/.djo/jobs.db).",
)
@click.option(
    "--handlers",
    type=click.Choice(["entry_points", "simulated"]),
    default=None,
    help="Task handler set to load.",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Override log level (default: info).",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Override log file path.",
)
@click.option(
    "--log-json",
    is_flag=True,
    default=False,
    help="Use JSON log format.",
)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path | None,
    db_path: Path | None,
    handlers: str | None,
    log_level: str | None,
    log_file: Path | None,
    log_json: bool,
) -> None:
    """Document Job Orchestrator - run conversion, export and AI jobs."""
    obj = ctx.ensure_object(dict)

    if "config" not in obj:
        try:
            obj["config"] = get_config(
                config_path, database_path=db_path, handlers=handlers
            )
        except ValueError as e:
            click.echo(f"Error: invalid configuration: {e}", err=True)
            ctx.exit(ExitCode.CONFIG_ERROR)

    if not obj.get("logging_configured"):
        configure_logging_from_cli(
            obj["config"],
            level=log_level,
            file=log_file,
            json_format=log_json or None,
        )
        obj["logging_configured"] = True


def _register_commands() -> None:
    from djo.cli.dlq import dlq_group
    from djo.cli.jobs import jobs_group
    from djo.cli.serve import serve_command

    main.add_command(jobs_group)
    main.add_command(dlq_group)
    main.add_command(serve_command)


_register_commands()
