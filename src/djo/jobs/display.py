"""Job display utilities for consistent formatting across CLI and API.

Status colors, short ids and one-line summaries of jobs and events.
"""

from djo.db.types import Job, JobEvent, JobStatus

# Map JobStatus to terminal color names (for click.style and similar)
JOB_STATUS_COLORS: dict[JobStatus, str] = {
    JobStatus.PENDING: "yellow",
    JobStatus.RUNNING: "blue",
    JobStatus.SUCCEEDED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELED: "bright_black",
}

DEFAULT_STATUS_COLOR = "white"


def get_status_color(status: JobStatus) -> str:
    """Get the terminal color for a job status.

    Args:
        status: The job status.

    Returns:
        Color name suitable for click.style().
    """
    return JOB_STATUS_COLORS.get(status, DEFAULT_STATUS_COLOR)


def short_id(job_id: str) -> str:
    return job_id[:8]


def format_attempts(job: Job) -> str:
    return f"{job.attempts}/{job.max_attempts}"


def format_event_line(event: JobEvent) -> str:
    """Render an event as a single log-style line."""
    line = (
        f"#{event.seq:<3} {event.timestamp} {event.status.value:<9} "
        f"{event.stage} {event.progress}%"
    )
    if event.message:
        line += f" - {event.message}"
    return line
