"""UTC datetime utilities.

All timestamps are stored as ISO-8601 UTC strings. The server clock is
authoritative; workers never supply their own timestamps.
"""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Format a datetime as a fixed-width ISO-8601 UTC string.

    Fixed microsecond precision keeps stored timestamps lexically sortable.
    """
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return to_iso(utc_now())


def parse_iso_timestamp(timestamp: str) -> datetime:
    """Parse ISO-8601 timestamp, handling both Z and +00:00 suffixes.

    Args:
        timestamp: ISO-8601 timestamp string (e.g., "2024-01-15T10:30:00Z").

    Returns:
        Timezone-aware datetime object (always UTC if no offset specified).
    """
    normalized = timestamp.replace("Z", "+00:00")
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def add_seconds(moment: datetime, seconds: float) -> datetime:
    """Return ``moment`` shifted by ``seconds`` (negative to go back)."""
    return moment + timedelta(seconds=seconds)


def calculate_duration_seconds(started_at: str, completed_at: str) -> int | None:
    """Calculate duration between two ISO timestamps.

    Args:
        started_at: Start timestamp (ISO-8601).
        completed_at: End timestamp (ISO-8601).

    Returns:
        Duration in seconds, or None if parsing fails.
    """
    try:
        started = parse_iso_timestamp(started_at)
        completed = parse_iso_timestamp(completed_at)
        return int((completed - started).total_seconds())
    except (ValueError, TypeError):
        return None
