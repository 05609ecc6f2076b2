"""SQLite access for the job store.

Every job state change commits together with its event (and, when the job
fails for good, its dead-letter record) in one ``BEGIN IMMEDIATE``
transaction on a single shared writer connection. Readers such as event
subscribers and the health check open their own short-lived connections, so
WAL mode lets them run while a worker holds the write lock.

Lock contention surfaces as ``sqlite3.OperationalError("database is
locked")``; ``execute_with_retry`` retries those with capped, fully jittered
backoff and turns an exhausted retry budget into ``DatabaseLockedError``,
which the HTTP layer maps to 503.
"""

from __future__ import annotations

import logging
import random
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DB_PATH = Path.home() / ".djo" / "jobs.db"

# Transactions slower than this are logged; they hold up every writer.
SLOW_TRANSACTION_SECONDS = 1.0

_PRAGMAS = (
    "PRAGMA foreign_keys = ON",
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA busy_timeout = 10000",
)


class DatabaseLockedError(Exception):
    """The job database stayed locked through every retry."""

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Job database is locked (gave up after {attempts} attempts)"
        )
        self.attempts = attempts


def get_default_db_path() -> Path:
    """Return the default job database path (~/.djo/jobs.db)."""
    return DEFAULT_DB_PATH


def ensure_db_directory(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _open(db_path: Path, timeout: float, shared: bool = False) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=not shared)
    for pragma in _PRAGMAS:
        conn.execute(pragma)
    conn.row_factory = sqlite3.Row
    return conn


def is_lock_error(error: sqlite3.OperationalError) -> bool:
    """Whether an operational error is lock contention rather than a fault."""
    message = str(error).casefold()
    return "locked" in message or "busy" in message


@contextmanager
def get_connection(
    db_path: Path | None = None, timeout: float = 30.0
) -> Iterator[sqlite3.Connection]:
    """Open a one-off connection, used for schema setup before the pool starts.

    Args:
        db_path: Database file. Defaults to ~/.djo/jobs.db.
        timeout: Seconds to wait on a locked database.

    Yields:
        A configured connection, closed on exit.
    """
    path = db_path or get_default_db_path()
    ensure_db_directory(path)
    conn = _open(path, timeout)
    try:
        yield conn
    finally:
        conn.close()


def execute_with_retry(
    func: Callable[[], T],
    max_retries: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Run ``func``, retrying while the database is locked.

    The wait before retry ``n`` is ``min(max_delay, base_delay * 2**n)``
    scaled by a uniform random factor, the same full-jitter rule the job
    retry controller uses.

    Raises:
        DatabaseLockedError: The database was still locked after
            ``max_retries`` retries.
        sqlite3.OperationalError: Any error that is not lock contention.
    """
    for retry in range(max_retries + 1):
        try:
            result = func()
        except sqlite3.OperationalError as e:
            if not is_lock_error(e):
                raise
            if retry == max_retries:
                logger.warning("Giving up on locked database: %s", e)
                raise DatabaseLockedError(retry + 1) from e
            delay = min(max_delay, base_delay * 2**retry) * rng()
            logger.debug("Database locked, retry %d in %.3fs", retry + 1, delay)
            sleep(delay)
            continue
        if retry:
            logger.info("Database write went through after %d retries", retry)
        return result
    raise AssertionError("unreachable")


class ConnectionPool:
    """The store's connections: one serialized writer, fresh readers.

    Args:
        db_path: Database file. Must already hold the schema.
        timeout: Seconds SQLite waits on a lock before raising.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0) -> None:
        self.db_path = db_path
        self.timeout = timeout
        self._writer: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"Connection pool for {self.db_path} is closed")

    @contextmanager
    def read_connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a private connection for reads, closed on exit."""
        self._check_open()
        conn = _open(self.db_path, self.timeout)
        try:
            yield conn
        finally:
            conn.close()

    def execute_read(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self.read_connection() as conn:
            return conn.execute(query, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the write lock for one ``BEGIN IMMEDIATE`` transaction.

        Commits when the block exits normally and rolls back on any
        exception, so a rejected compare-and-swap leaves no partial event
        behind.

        Yields:
            The shared writer connection.
        """
        with self._lock:
            self._check_open()
            if self._writer is None:
                self._writer = _open(self.db_path, self.timeout, shared=True)
            conn = self._writer
            started = time.monotonic()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                elapsed = time.monotonic() - started
                if elapsed > SLOW_TRANSACTION_SECONDS:
                    logger.warning("Slow job store transaction: %.2fs", elapsed)

    def close(self) -> None:
        """Close the writer. Further use of the pool raises RuntimeError."""
        with self._lock:
            self._closed = True
            writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()
