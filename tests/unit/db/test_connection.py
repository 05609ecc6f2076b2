"""Unit tests for the job store's connection pool and lock retry."""

import sqlite3
import threading

import pytest

from djo.db.connection import (
    ConnectionPool,
    DatabaseLockedError,
    execute_with_retry,
    is_lock_error,
)


class TestConnectionPool:
    """Tests for ConnectionPool transactions and readers."""

    def test_readers_are_configured(self, pool: ConnectionPool) -> None:
        with pool.read_connection() as conn:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
            assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 10000

    def test_writer_is_reused(self, pool: ConnectionPool) -> None:
        with pool.transaction() as first:
            pass
        with pool.transaction() as second:
            pass
        assert first is second

    def test_rollback_on_error(self, pool: ConnectionPool) -> None:
        """Nothing written inside a failed transaction is kept."""
        with pytest.raises(ValueError):
            with pool.transaction() as conn:
                conn.execute("CREATE TABLE scratch (id INTEGER)")
                conn.execute("INSERT INTO scratch VALUES (1)")
                raise ValueError("abort")

        rows = pool.execute_read(
            "SELECT name FROM sqlite_master WHERE name = 'scratch'"
        )
        assert rows == []

    def test_reader_sees_only_committed_rows(self, pool: ConnectionPool) -> None:
        with pool.transaction() as conn:
            conn.execute("CREATE TABLE scratch (id INTEGER)")

        seen: list[int] = []
        inside = threading.Event()
        done = threading.Event()

        def read() -> None:
            inside.wait(5)
            seen.append(pool.execute_read("SELECT COUNT(*) FROM scratch")[0][0])
            done.set()

        reader = threading.Thread(target=read)
        reader.start()
        with pool.transaction() as conn:
            conn.execute("INSERT INTO scratch VALUES (1)")
            inside.set()
            assert done.wait(5)
        reader.join(5)

        assert seen == [0]
        assert pool.execute_read("SELECT COUNT(*) FROM scratch")[0][0] == 1

    def test_closed_pool_rejects_use(self, pool: ConnectionPool) -> None:
        pool.close()
        pool.close()
        with pytest.raises(RuntimeError, match="is closed"):
            with pool.transaction():
                pass
        with pytest.raises(RuntimeError, match="is closed"):
            pool.execute_read("SELECT 1")


class TestExecuteWithRetry:
    """Tests for execute_with_retry."""

    def test_retries_lock_errors_with_capped_backoff(self) -> None:
        calls = []
        sleeps: list[float] = []

        def flaky() -> str:
            calls.append(1)
            if len(calls) < 4:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        result = execute_with_retry(
            flaky, base_delay=0.1, max_delay=0.3, sleep=sleeps.append, rng=lambda: 0.5
        )

        assert result == "ok"
        assert len(calls) == 4
        assert sleeps == pytest.approx([0.05, 0.1, 0.15])

    def test_gives_up_with_database_locked_error(self) -> None:
        def locked() -> None:
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(DatabaseLockedError) as exc_info:
            execute_with_retry(locked, max_retries=2, sleep=lambda _: None)
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)

    def test_other_errors_are_not_retried(self) -> None:
        calls = []

        def broken() -> None:
            calls.append(1)
            raise sqlite3.OperationalError("no such table: jobs")

        with pytest.raises(sqlite3.OperationalError, match="no such table"):
            execute_with_retry(broken, sleep=lambda _: None)
        assert len(calls) == 1

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("database is locked", True),
            ("database table is locked", True),
            ("SQLITE_BUSY", True),
            ("disk I/O error", False),
        ],
    )
    def test_is_lock_error(self, message: str, expected: bool) -> None:
        assert is_lock_error(sqlite3.OperationalError(message)) is expected
