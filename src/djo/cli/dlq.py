"""CLI commands for the dead-letter store."""

from __future__ import annotations

import json

import click

from djo.cli import fail, get_engine
from djo.db.types import JobType
from djo.jobs.display import short_id
from djo.jobs.exceptions import OrchestratorError


@click.group("dlq")
def dlq_group() -> None:
    """Inspect and reprocess terminally failed jobs."""
    pass


@dlq_group.command("list")
@click.option(
    "--type",
    "-t",
    "job_type",
    type=click.Choice([*(t.value for t in JobType), "all"]),
    default="all",
    help="Filter by job type.",
)
@click.option(
    "--pending-only",
    is_flag=True,
    help="Hide records that were already reprocessed.",
)
@click.option(
    "--limit",
    "-n",
    type=click.IntRange(1, 1000),
    default=50,
    help="Maximum number of records to show.",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Output in JSON format.",
)
@click.pass_context
def list_dead_letters(
    ctx: click.Context,
    job_type: str,
    pending_only: bool,
    limit: int,
    json_output: bool,
) -> None:
    """List dead-letter records, newest first."""
    engine = get_engine(ctx)
    records = engine.coordinator.list_dead_letters(
        job_type=None if job_type == "all" else JobType(job_type),
        include_reprocessed=not pending_only,
        limit=limit,
    )

    if json_output:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return

    if not records:
        click.echo("No dead letters.")
        return

    click.echo(f"{'ID':<10} {'JOB':<10} {'TYPE':<8} {'TRIES':<6} {'FAILED':<20} ERROR")
    click.echo("-" * 80)
    for record in records:
        error = record.last_error.error_class.value if record.last_error else "-"
        line = (
            f"{short_id(record.id):<10} {short_id(record.job_id):<10} "
            f"{record.job_type.value:<8} {record.attempts:<6} "
            f"{record.failed_at[:19].replace('T', ' '):<20} {error}"
        )
        if record.reprocessed_job_id:
            line += click.style(
                f"  -> {short_id(record.reprocessed_job_id)}", fg="bright_black"
            )
        click.echo(line)


@dlq_group.command("reprocess")
@click.argument("record_id")
@click.option(
    "--requested-by",
    default=None,
    help="Principal for the new job (default: the original requester).",
)
@click.pass_context
def reprocess_dead_letter(
    ctx: click.Context, record_id: str, requested_by: str | None
) -> None:
    """Submit a new job from dead-letter record RECORD_ID.

    The failed job stays failed; the new job references it as its parent.
    """
    engine = get_engine(ctx)
    try:
        job = engine.coordinator.reprocess_dead_letter(record_id, requested_by)
    except OrchestratorError as e:
        fail(ctx, e)
        return
    click.echo(f"Reprocessed as job {job.id} (parent {job.parent_job_id})")
