"""State DB migration, pragma, busy-retry, and WAL concurrency tests."""

from __future__ import annotations

import sqlite3
import threading
from typing import TYPE_CHECKING

import pytest

from agent_foreman.constants import STATE_DB_SCHEMA_VERSION
from agent_foreman.persistence.state_db import (
    MIGRATIONS,
    StateDB,
    StateDBBusyError,
    StateDBError,
    StateDBMigrationError,
    canonical_json,
)

if TYPE_CHECKING:
    from pathlib import Path


def test_migration_is_idempotent_and_configures_pragmas(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "foreman.sqlite", busy_timeout_ms=4_321)

    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.migrate() == STATE_DB_SCHEMA_VERSION

    with db.connection() as conn:
        tables = {
            str(row[0])
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert {"schema_versions", "documents"}.issubset(tables)

        assert int(conn.execute("PRAGMA foreign_keys").fetchone()[0]) == 1
        assert str(conn.execute("PRAGMA journal_mode").fetchone()[0]).lower() == "wal"
        assert int(conn.execute("PRAGMA busy_timeout").fetchone()[0]) == 4_321

        ledger = conn.execute("SELECT version, name, checksum FROM schema_versions").fetchall()
        assert [(row[0], row[1]) for row in ledger] == [(1, "versioned_documents")]
        assert ledger[0][2] == MIGRATIONS[0].checksum


def test_checksum_mismatch_is_reported(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "foreman.sqlite")
    db.migrate()
    db.execute("UPDATE schema_versions SET checksum = ? WHERE version = 1", ("0" * 64,))

    with pytest.raises(StateDBMigrationError, match="checksum mismatch"):
        db.migrate()


def test_newer_database_schema_is_rejected(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "foreman.sqlite")
    db.migrate()
    db.execute(
        "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
        (99, "future", "f" * 64, "2026-01-01T00:00:00Z"),
    )

    with pytest.raises(StateDBMigrationError, match="newer"):
        db.migrate()


def test_transaction_rolls_back_and_savepoints_nest(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "foreman.sqlite")
    db.migrate()
    insert = (
        "INSERT INTO documents (name, version, payload_json, created_at, updated_at) "
        "VALUES (?, 1, '{}', 'now', 'now')"
    )

    with pytest.raises(RuntimeError):
        with db.transaction() as tx:
            db.execute(insert, ("outer",), conn=tx)
            raise RuntimeError("boom")
    assert db.query_one("SELECT name FROM documents WHERE name = 'outer'") is None

    with db.transaction() as tx:
        db.execute(insert, ("kept",), conn=tx)
        with pytest.raises(RuntimeError):
            with db.transaction(conn=tx):
                db.execute(insert, ("inner",), conn=tx)
                raise RuntimeError("inner boom")

    names = {row["name"] for row in db.query_all("SELECT name FROM documents")}
    assert names == {"kept"}


def test_locked_database_is_retried_then_reported(tmp_path: Path) -> None:
    sleeps: list[float] = []
    db = StateDB(tmp_path / "foreman.sqlite", busy_timeout_ms=0, busy_retries=2, sleep=sleeps.append)
    db.migrate()

    holder = db.connect()
    try:
        holder.execute("BEGIN IMMEDIATE")
        with pytest.raises(StateDBBusyError, match="3 attempt"):
            db.execute("DELETE FROM documents")
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    assert sleeps == [0.025, 0.05]


def test_corrupt_file_raises_state_db_error(tmp_path: Path) -> None:
    path = tmp_path / "foreman.sqlite"
    path.write_bytes(b"this is not a sqlite database at all" * 100)

    with pytest.raises((StateDBError, sqlite3.DatabaseError)):
        StateDB(path).migrate()


def test_wal_allows_reader_during_open_writer_transaction(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "foreman.sqlite")
    db.migrate()
    db.execute(
        "INSERT INTO documents (name, version, payload_json, created_at, updated_at) "
        "VALUES ('usage', 1, '{}', 'now', 'now')"
    )

    writer_conn = db.connect()
    reader_conn = db.connect()
    writer_started = threading.Event()
    reader_finished = threading.Event()
    errors: list[str] = []
    counts: list[int] = []

    def writer() -> None:
        try:
            writer_conn.execute("BEGIN IMMEDIATE")
            writer_conn.execute("UPDATE documents SET version = 2 WHERE name = 'usage'")
            writer_started.set()
            if not reader_finished.wait(timeout=2.0):
                errors.append("reader did not finish while writer transaction was open")
            writer_conn.execute("ROLLBACK")
        except Exception as exc:  # noqa: BLE001
            errors.append(f"writer failed: {exc}")

    def reader() -> None:
        if not writer_started.wait(timeout=2.0):
            errors.append("writer did not start")
            reader_finished.set()
            return
        try:
            row = reader_conn.execute("SELECT version FROM documents").fetchone()
            counts.append(int(row[0]))
        finally:
            reader_finished.set()

    threads = [
        threading.Thread(target=writer, daemon=True),
        threading.Thread(target=reader, daemon=True),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5.0)
    writer_conn.close()
    reader_conn.close()

    assert not errors
    assert counts == [1]


def test_canonical_json_is_sorted_and_compact() -> None:
    assert canonical_json({"b": 1, "a": [1, "é"]}) == '{"a":[1,"é"],"b":1}'


def test_invalid_constructor_arguments() -> None:
    with pytest.raises(ValueError):
        StateDB("x.sqlite", busy_timeout_ms=-1)
    with pytest.raises(ValueError):
        StateDB("x.sqlite", busy_retries=-1)
