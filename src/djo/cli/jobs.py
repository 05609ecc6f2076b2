"""CLI commands for job submission and queue management."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from djo.cli import fail, get_engine
from djo.cli.exit_codes import ExitCode
from djo.db.types import Job, JobStatus, JobType
from djo.jobs.display import (
    format_attempts,
    format_event_line,
    get_status_color,
    short_id,
)
from djo.jobs.exceptions import OrchestratorError, PayloadValidationError
from djo.jobs.payloads import validate_payload

logger = logging.getLogger(__name__)

JOB_TYPE_CHOICES = [t.value for t in JobType]
STATUS_CHOICES = [s.value for s in JobStatus]


def _format_job_row(job: Job) -> tuple[str, str, str, str, str, str, str]:
    """Format a job for table display.

    Returns:
        Tuple of (job_id, status_value, status_color, job_type, stage,
        progress, created). Color is returned separately so it does not
        affect column widths.
    """
    return (
        short_id(job.id),
        job.status.value,
        get_status_color(job.status),
        job.job_type.value,
        job.stage,
        f"{job.progress}%",
        job.created_at[:19].replace("T", " "),
    )


def _load_payload(payload: str | None, payload_file: Path | None) -> dict:
    if payload is not None and payload_file is not None:
        raise click.UsageError("Use either --payload or --payload-file, not both.")
    if payload_file is not None:
        payload = payload_file.read_text(encoding="utf-8")
    if payload is None:
        raise click.UsageError("A payload is required (--payload or --payload-file).")
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.UsageError(f"Payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise click.UsageError("Payload must be a JSON object.")
    return data


@click.group("jobs")
def jobs_group() -> None:
    """Submit, inspect and run jobs.

    Examples:

        # Submit a conversion job
        djo jobs submit convert -p '{"objectKey": "a.pptx", "sourceType": "pptx"}'

        # Process pending jobs until the queue is empty
        djo jobs start

        # Follow a job's progress
        djo jobs events <job-id> --follow
    """
    pass


@jobs_group.command("submit")
@click.argument("job_type", type=click.Choice(JOB_TYPE_CHOICES))
@click.option("--payload", "-p", help="Job payload as a JSON object.")
@click.option(
    "--payload-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Read the JSON payload from a file.",
)
@click.option(
    "--requested-by",
    default="cli",
    show_default=True,
    help="Principal recorded as the job's requester.",
)
@click.option(
    "--idempotency-key",
    "-k",
    default=None,
    help="Deduplicate retried submissions with this key.",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Output the created job as JSON.",
)
@click.pass_context
def submit_job(
    ctx: click.Context,
    job_type: str,
    payload: str | None,
    payload_file: Path | None,
    requested_by: str,
    idempotency_key: str | None,
    json_output: bool,
) -> None:
    """Submit a new job of JOB_TYPE.

    The payload is validated before submission. Resubmitting with the same
    idempotency key and payload returns the existing job.
    """
    data = _load_payload(payload, payload_file)
    engine = get_engine(ctx)
    jt = JobType(job_type)
    try:
        normalized = validate_payload(jt, data)
        job = engine.coordinator.submit(
            jt, normalized, requested_by, idempotency_key=idempotency_key
        )
    except PayloadValidationError as e:
        for detail in e.details:
            click.echo(f"  {detail['field']}: {detail['message']}", err=True)
        fail(ctx, e)
        return
    except OrchestratorError as e:
        fail(ctx, e)
        return

    if json_output:
        click.echo(json.dumps(job.to_dict(), indent=2))
    else:
        click.echo(f"Submitted {job.job_type.value} job {job.id}")


@jobs_group.command("list")
@click.option(
    "--status",
    "-s",
    type=click.Choice([*STATUS_CHOICES, "all"]),
    default="all",
    help="Filter by job status.",
)
@click.option(
    "--type",
    "-t",
    "job_type",
    type=click.Choice([*JOB_TYPE_CHOICES, "all"]),
    default="all",
    help="Filter by job type.",
)
@click.option("--requested-by", default=None, help="Filter by requester.")
@click.option(
    "--limit",
    "-n",
    type=click.IntRange(1, 1000),
    default=50,
    help="Maximum number of jobs to show.",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Output in JSON format.",
)
@click.pass_context
def list_jobs(
    ctx: click.Context,
    status: str,
    job_type: str,
    requested_by: str | None,
    limit: int,
    json_output: bool,
) -> None:
    """List jobs, newest first."""
    engine = get_engine(ctx)
    jobs = engine.coordinator.list_jobs(
        status=None if status == "all" else JobStatus(status),
        job_type=None if job_type == "all" else JobType(job_type),
        requested_by=requested_by,
        limit=limit,
    )

    if json_output:
        click.echo(json.dumps([job.to_dict() for job in jobs], indent=2))
        return

    if not jobs:
        click.echo("No jobs found.")
        return

    click.echo(
        f"{'ID':<10} {'STATUS':<10} {'TYPE':<8} "
        f"{'STAGE':<14} {'PROG':<6} {'CREATED':<20}"
    )
    click.echo("-" * 72)
    for job in jobs:
        row = _format_job_row(job)
        # Pad before coloring so ANSI codes don't affect alignment
        status_colored = click.style(f"{row[1]:<10}", fg=row[2])
        click.echo(
            f"{row[0]:<10} {status_colored} {row[3]:<8} "
            f"{row[4]:<14} {row[5]:<6} {row[6]:<20}"
        )


@jobs_group.command("show")
@click.argument("job_id")
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Output in JSON format.",
)
@click.pass_context
def show_job(ctx: click.Context, job_id: str, json_output: bool) -> None:
    """Show detailed information about a job."""
    engine = get_engine(ctx)
    try:
        job = engine.coordinator.get(job_id)
    except OrchestratorError as e:
        fail(ctx, e)
        return

    if json_output:
        click.echo(json.dumps(job.to_dict(), indent=2))
        return

    status_colored = click.style(
        job.status.value.upper(), fg=get_status_color(job.status)
    )
    click.echo(f"\nJob: {job.id}")
    click.echo("-" * 50)
    click.echo(f"  Status:      {status_colored}")
    click.echo(f"  Type:        {job.job_type.value}")
    click.echo(f"  Stage:       {job.stage} ({job.progress}%)")
    click.echo(f"  Attempts:    {format_attempts(job)}")
    click.echo(f"  Requested:   {job.requested_by}")
    if job.parent_job_id:
        click.echo(f"  Parent:      {job.parent_job_id}")
    if job.cancel_requested and not job.is_terminal:
        click.echo("  Cancel:      requested")
    click.echo("")
    click.echo(f"  Created:     {job.created_at}")
    if job.started_at:
        click.echo(f"  Started:     {job.started_at}")
    if job.completed_at:
        click.echo(f"  Completed:   {job.completed_at}")
    if job.worker_id and job.status == JobStatus.RUNNING:
        click.echo(f"  Worker:      {job.worker_id}")
        click.echo(f"  Heartbeat:   {job.heartbeat_at}")
    if job.error:
        click.echo("")
        message = click.style(job.error.message, fg="red")
        click.echo(f"  Error:       {message} ({job.error.error_class.value})")
    if job.result:
        click.echo("")
        click.echo("  Result:")
        for key, value in job.result.items():
            click.echo(f"    {key}: {value}")
    click.echo("")


@jobs_group.command("cancel")
@click.argument("job_id")
@click.pass_context
def cancel_job_cmd(ctx: click.Context, job_id: str) -> None:
    """Cancel a job.

    Pending jobs are canceled immediately; running jobs stop at their next
    stage boundary.
    """
    engine = get_engine(ctx)
    try:
        job = engine.coordinator.cancel(job_id)
    except OrchestratorError as e:
        fail(ctx, e)
        return

    if job.status == JobStatus.CANCELED:
        click.echo(f"Canceled job {short_id(job.id)}")
    elif job.is_terminal:
        click.echo(f"Job {short_id(job.id)} already {job.status.value}")
    else:
        click.echo(f"Cancellation requested for job {short_id(job.id)}")


@jobs_group.command("events")
@click.argument("job_id")
@click.option(
    "--after",
    type=click.IntRange(min=0),
    default=None,
    help="Only show events with a sequence number greater than this.",
)
@click.option(
    "--follow",
    "-f",
    is_flag=True,
    help="Keep printing live events until the job finishes.",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Output one JSON object per line.",
)
@click.pass_context
def show_events(
    ctx: click.Context,
    job_id: str,
    after: int | None,
    follow: bool,
    json_output: bool,
) -> None:
    """Show the event history of a job."""
    engine = get_engine(ctx)
    try:
        if follow:
            events = engine.coordinator.subscribe(job_id, after_seq=after)
        else:
            events = iter(engine.coordinator.history(job_id, after_seq=after))
        for event in events:
            if json_output:
                click.echo(json.dumps(event.to_dict()))
            else:
                click.echo(format_event_line(event))
    except OrchestratorError as e:
        fail(ctx, e)


@jobs_group.command("status")
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Output in JSON format.",
)
@click.pass_context
def show_status(ctx: click.Context, json_output: bool) -> None:
    """Show queue statistics per job type."""
    engine = get_engine(ctx)
    stats = engine.coordinator.queue_stats()

    if json_output:
        click.echo(json.dumps(stats, indent=2))
        return

    click.echo("Job Queue Status")
    click.echo("-" * 62)
    click.echo(
        f"  {'TYPE':<8} {'PENDING':>8} {'RUNNING':>8} {'DONE':>8} "
        f"{'FAILED':>8} {'CANCELED':>9}"
    )
    for job_type, counts in stats["jobs"].items():
        line = (
            f"  {job_type:<8} {counts['pending']:>8} {counts['running']:>8} "
            f"{counts['succeeded']:>8} {counts['failed']:>8} {counts['canceled']:>9}"
        )
        if counts["shedding"]:
            line += click.style("  shedding", fg="red")
        click.echo(line)
    click.echo("-" * 62)
    click.echo(f"  Dead letters: {stats['deadLetters']}")


@jobs_group.command("recover")
@click.option(
    "--purge",
    is_flag=True,
    help="Also purge expired idempotency keys, old events and old jobs.",
)
@click.pass_context
def recover_jobs(ctx: click.Context, purge: bool) -> None:
    """Recover jobs whose worker stopped heartbeating."""
    engine = get_engine(ctx)
    recovered = engine.coordinator.recover_lost_workers()
    for job in recovered:
        click.echo(
            f"  {short_id(job.id)} -> {job.status.value} "
            f"(attempt {format_attempts(job)})"
        )
    click.echo(f"Recovered {len(recovered)} job(s).")

    if purge:
        counts = engine.coordinator.purge_expired()
        click.echo(
            "Purged {idempotency_keys} idempotency key(s), {events} event(s), "
            "{jobs} job(s).".format(**counts)
        )


@jobs_group.command("start")
@click.option(
    "--type",
    "-t",
    "job_types",
    type=click.Choice(JOB_TYPE_CHOICES),
    multiple=True,
    help="Only process these job types (repeatable).",
)
@click.option(
    "--max-jobs",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many jobs.",
)
@click.option(
    "--forever",
    is_flag=True,
    help="Run the worker pool until SIGINT/SIGTERM instead of draining.",
)
@click.pass_context
def start_worker(
    ctx: click.Context,
    job_types: tuple[str, ...],
    max_jobs: int | None,
    forever: bool,
) -> None:
    """Start processing jobs from the queue.

    By default pending jobs are processed in this process until the queue
    is empty. With --forever the worker pool runs until interrupted.
    """
    engine = get_engine(ctx)
    if not engine.registry.job_types:
        click.echo(
            "Error: no task handlers installed (try --handlers simulated).", err=True
        )
        ctx.exit(ExitCode.CONFIG_ERROR)

    pool = engine.worker_pool()
    if forever:
        pool.run_forever()
        return

    processed = pool.drain(
        [JobType(t) for t in job_types] or None, max_jobs=max_jobs
    )
    for job in processed:
        color = get_status_color(job.status)
        click.echo(
            f"  {short_id(job.id)} {job.job_type.value:<8} "
            f"{click.style(job.status.value, fg=color)}"
        )
    click.echo(f"Processed {len(processed)} job(s).")
