"""
agent-foreman

File: src/agent_foreman/persistence/state_db.py

Purpose
- SQLite connection lifecycle and schema migrations for the shared foreman
  state store.

Functional requirements
- Migrations are checksummed and applied idempotently.
- Several foreman processes may open the same database file; busy errors are
  retried with bounded exponential backoff before surfacing.

Non-functional requirements
- Connections are short-lived so status commands never hold long locks.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from agent_foreman.constants import STATE_DB_SCHEMA_VERSION

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None
Row = dict[str, RowValue]

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRIES: Final[int] = 4
BUSY_BACKOFF_SECONDS: Final[float] = 0.025

_LEDGER_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_BUSY_MARKERS: Final[tuple[str, ...]] = ("database is locked", "table is locked", "schema is locked")


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        digest = hashlib.sha256(f"{self.version}:{self.name}".encode())
        for statement in self.statements:
            compact = " ".join(statement.split())
            digest.update(b"\x00" + compact.encode("utf-8"))
        return digest.hexdigest()


MIGRATIONS: Final[tuple[Migration, ...]] = (
    Migration(
        version=1,
        name="versioned_documents",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS documents (
                name TEXT PRIMARY KEY CHECK (length(name) > 0),
                version INTEGER NOT NULL CHECK (version >= 1),
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_documents_updated ON documents(updated_at DESC)",
        ),
    ),
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when the database stayed locked through every retry."""


class StateDBMigrationError(StateDBError):
    """Raised when the on-disk schema cannot be reconciled with this build."""


class StateDB:
    """Thin SQLite wrapper: WAL connections, savepoint transactions, migrations."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retries: int = DEFAULT_BUSY_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retries < 0:
            raise ValueError("busy_retries must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retries = busy_retries
        self._sleep = sleep
        self._savepoints = 0

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            mode = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        except sqlite3.Error:
            conn.close()
            raise
        if mode is None or str(mode[0]).lower() != "wal":
            conn.close()
            raise StateDBError(f"could not enable WAL journaling for {self._path}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Atomic block. Nested use on the same connection becomes a savepoint."""

        if conn is None:
            with self.connection() as owned, self.transaction(conn=owned, immediate=immediate) as tx:
                yield tx
            return

        if conn.in_transaction:
            self._savepoints += 1
            name = f"sp_{self._savepoints}"
            begin, commit = f"SAVEPOINT {name}", f"RELEASE SAVEPOINT {name}"
            rollback: tuple[str, ...] = (f"ROLLBACK TO SAVEPOINT {name}", commit)
        else:
            begin = "BEGIN IMMEDIATE" if immediate else "BEGIN"
            commit, rollback = "COMMIT", ("ROLLBACK",)

        self._run(conn, begin)
        try:
            yield conn
        except BaseException:
            for statement in rollback:
                self._run(conn, statement)
            raise
        self._run(conn, commit)

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""

        known = [m.version for m in MIGRATIONS]
        if known != list(range(1, STATE_DB_SCHEMA_VERSION + 1)):
            raise StateDBMigrationError(
                f"migrations {known} do not cover schema version {STATE_DB_SCHEMA_VERSION}"
            )

        with self.connection() as conn:
            self._run(conn, _LEDGER_SQL)
            applied = {
                int(row["version"]): str(row["checksum"])
                for row in self._run(conn, "SELECT version, checksum FROM schema_versions").fetchall()
            }
            newest = max(applied, default=0)
            if newest > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"database schema {newest} is newer than this build ({STATE_DB_SCHEMA_VERSION})"
                )

            for migration in MIGRATIONS:
                recorded = applied.get(migration.version)
                if recorded is not None:
                    if recorded != migration.checksum:
                        raise StateDBMigrationError(
                            f"checksum mismatch for migration {migration.version} ({migration.name})"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._run(tx, statement)
                    self._run(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?) ON CONFLICT(version) DO NOTHING",
                        (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                    )
            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one("SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn)
        return int(row["version"] or 0) if row is not None else 0

    def execute(self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None) -> int:
        """Run one write statement and return the affected row count."""

        if conn is not None:
            return self._run(conn, sql, params).rowcount
        with self.transaction() as tx:
            return self._run(tx, sql, params).rowcount

    def query_all(self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None) -> list[Row]:
        if conn is not None:
            return [dict(row) for row in self._run(conn, sql, params).fetchall()]
        with self.connection() as owned:
            return [dict(row) for row in self._run(owned, sql, params).fetchall()]

    def query_one(self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None) -> Row | None:
        rows = self.query_all(sql, params, conn=conn)
        return rows[0] if rows else None

    def _run(self, conn: sqlite3.Connection, sql: str, params: SQLParams = ()) -> sqlite3.Cursor:
        delay = BUSY_BACKOFF_SECONDS
        for attempt in range(self._busy_retries + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.OperationalError as exc:
                if not _is_busy(exc):
                    raise StateDBError(f"{self._path}: {exc}") from exc
                if attempt == self._busy_retries:
                    raise StateDBBusyError(
                        f"{self._path} stayed locked after {attempt + 1} attempt(s): {exc}"
                    ) from exc
                self._sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")


def _is_busy(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRIES",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MIGRATIONS",
    "Migration",
    "Row",
    "SQLParams",
    "StateDB",
    "StateDBBusyError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
