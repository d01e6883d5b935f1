from __future__ import annotations

import sqlite3

import pytest

from fieldsync.infrastructure.migrations import MigrationRunner, main, run_migrations


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", isolation_level=None)
    yield conn
    conn.close()


def _tables(connection: sqlite3.Connection) -> set[str]:
    rows = connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {row[0] for row in rows}


def test_apply_all_is_idempotent(connection: sqlite3.Connection) -> None:
    assert run_migrations(connection) == [1]
    assert run_migrations(connection) == []
    assert "local_store" in _tables(connection)
    assert connection.execute("PRAGMA user_version").fetchone()[0] == 1


def test_status_and_rollback(connection: sqlite3.Connection) -> None:
    runner = MigrationRunner(connection)
    runner.apply_all()

    assert runner.status() == [{"version": 1, "name": "local_store", "applied": True}]
    assert runner.rollback() == [1]
    assert "local_store" not in _tables(connection)
    assert connection.execute("PRAGMA user_version").fetchone()[0] == 0


def test_missing_down_file_is_rejected(tmp_path, connection: sqlite3.Connection) -> None:
    (tmp_path / "001_only_up.up.sql").write_text("CREATE TABLE t (id INTEGER);", encoding="utf-8")

    with pytest.raises(FileNotFoundError):
        MigrationRunner(connection, tmp_path)


def test_cli_up_creates_database(tmp_path, monkeypatch, isolated_logging) -> None:
    monkeypatch.setenv("FIELDSYNC_LOG_DIR", str(tmp_path / "logs"))
    db_path = tmp_path / "cli.db"

    assert main(["up", "--db", str(db_path)]) == 0

    conn = sqlite3.connect(db_path)
    try:
        assert "local_store" in _tables(conn)
    finally:
        conn.close()
