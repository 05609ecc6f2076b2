"""Database initialization for Document Job Orchestrator."""

import logging
import sqlite3

from .definition import SCHEMA_VERSION, create_schema

logger = logging.getLogger(__name__)


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """Get the current schema version from the database.

    Args:
        conn: An open database connection.

    Returns:
        The schema version number, or None if not set.
    """
    try:
        cursor = conn.execute("SELECT value FROM _meta WHERE key = 'schema_version'")
        row = cursor.fetchone()
        return int(row[0]) if row else None
    except sqlite3.OperationalError:
        # Table doesn't exist
        return None


def initialize_database(conn: sqlite3.Connection) -> None:
    """Initialize the database with schema, creating tables if needed.

    Args:
        conn: An open database connection.

    Raises:
        RuntimeError: If the database was created by a newer release.
    """
    current_version = get_schema_version(conn)

    if current_version is None:
        create_schema(conn)
        logger.debug("Created schema version %d", SCHEMA_VERSION)
    elif current_version > SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {current_version} is newer than "
            f"supported version {SCHEMA_VERSION}"
        )
