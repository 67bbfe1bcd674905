"""
case-forge — state database

File: src/case_forge/persistence/state_db.py
Last updated: 2026-10-18

Purpose
- SQLite connection lifecycle, the case schema and its migrations.

Functional requirements
- Migrations are versioned, checksummed and idempotent.
- A case row and its file rows commit or roll back as one unit
  (``BEGIN IMMEDIATE``; nested blocks become savepoints).
- A statement against a table that does not exist raises
  ``StateDBMissingRelationError`` naming the table.

Non-functional requirements
- Connections are short-lived; no lock is held between pipeline phases.
"""

from __future__ import annotations

import hashlib
import re
import sqlite3
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from case_forge.constants import DIFFICULTY_LEVELS, STATE_DB_SCHEMA_VERSION

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

CASE_STATUSES: Final[tuple[str, ...]] = ("draft", "published", "archived")

_LOCKED_RETRIES: Final[int] = 4
_LOCKED_BACKOFF_SECONDS: Final[float] = 0.025
_MISSING_RELATION_RE: Final[re.Pattern[str]] = re.compile(r"no such table: (?:\w+\.)?(\w+)")


def _quoted(values: Sequence[str]) -> str:
    return ", ".join(f"'{value}'" for value in values)


_INITIAL_SCHEMA: Final[tuple[str, ...]] = (
    """
    CREATE TABLE users (
        id TEXT PRIMARY KEY,
        email TEXT,
        created_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE cases (
        id TEXT PRIMARY KEY,
        blueprint_id TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        arena_id TEXT NOT NULL,
        competency_name TEXT NOT NULL,
        storage_path TEXT NOT NULL,
        difficulty TEXT CHECK (difficulty IS NULL OR difficulty IN ({_quoted(DIFFICULTY_LEVELS)})),
        estimated_minutes INTEGER CHECK (estimated_minutes IS NULL OR estimated_minutes >= 1),
        status TEXT NOT NULL CHECK (status IN ({_quoted(CASE_STATUSES)})),
        created_by TEXT REFERENCES users(id) ON DELETE SET NULL,
        document_json TEXT NOT NULL,
        violations_json TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE case_files (
        case_id TEXT NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
        file_id TEXT NOT NULL,
        file_name TEXT NOT NULL,
        file_type TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        content TEXT NOT NULL,
        size INTEGER NOT NULL CHECK (size >= 0),
        violations_json TEXT NOT NULL DEFAULT '[]',
        updated_at TEXT NOT NULL,
        PRIMARY KEY(case_id, file_id)
    )
    """,
    """
    CREATE TABLE token_usage (
        day TEXT NOT NULL,
        model TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL DEFAULT 0 CHECK (prompt_tokens >= 0),
        completion_tokens INTEGER NOT NULL DEFAULT 0 CHECK (completion_tokens >= 0),
        total_tokens INTEGER NOT NULL DEFAULT 0 CHECK (total_tokens >= 0),
        updated_at TEXT NOT NULL,
        PRIMARY KEY(day, model)
    )
    """,
    "CREATE INDEX idx_cases_arena_competency ON cases(arena_id, competency_name)",
)

# (version, name, statements); versions are contiguous from 1.
MIGRATIONS: Final[tuple[tuple[int, str, tuple[str, ...]], ...]] = (
    (1, "initial_case_schema", _INITIAL_SCHEMA),
)


def migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    """SHA-256 over the whitespace-normalized statements of one migration."""
    digest = hashlib.sha256(f"{version}:{name}".encode())
    for statement in statements:
        digest.update(b"\n--\n")
        digest.update(" ".join(statement.split()).encode("utf-8"))
    return digest.hexdigest()


class StateDBError(RuntimeError):
    """Base class for state database failures."""


class StateDBMigrationError(StateDBError):
    """The database and the code disagree about the schema."""


class StateDBMissingRelationError(StateDBError):
    """A statement referenced a table the database does not have."""

    def __init__(self, message: str, *, relation: str) -> None:
        super().__init__(message)
        self.relation = relation


class StateDB:
    """Thin SQLite wrapper: one connection per call unless ``conn`` is passed."""

    def __init__(self, path: str | Path, *, busy_timeout_ms: int = 5_000) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._savepoints = 0

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
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
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self, *, conn: sqlite3.Connection | None = None
    ) -> Iterator[sqlite3.Connection]:
        """Atomic block; inside an open transaction it becomes a savepoint."""
        if conn is None:
            with self.connection() as owned:
                with self.transaction(conn=owned) as tx:
                    yield tx
            return

        if conn.in_transaction:
            self._savepoints += 1
            name = f"sp_{self._savepoints}"
            self._run(conn, f"SAVEPOINT {name}", ())
            try:
                yield conn
            except Exception:
                self._run(conn, f"ROLLBACK TO SAVEPOINT {name}", ())
                self._run(conn, f"RELEASE SAVEPOINT {name}", ())
                raise
            self._run(conn, f"RELEASE SAVEPOINT {name}", ())
            return

        self._run(conn, "BEGIN IMMEDIATE", ())
        try:
            yield conn
        except Exception:
            self._run(conn, "ROLLBACK", ())
            raise
        self._run(conn, "COMMIT", ())

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""
        with self.connection() as conn:
            self._run(
                conn,
                """
                CREATE TABLE IF NOT EXISTS schema_versions (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    checksum TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
                """,
                (),
            )
            applied = {
                row["version"]: row["checksum"]
                for row in self.query_all(
                    "SELECT version, checksum FROM schema_versions", conn=conn
                )
            }
            newest = max(applied, default=0)
            if isinstance(newest, int) and newest > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"database schema version {newest} is newer than this release "
                    f"supports ({STATE_DB_SCHEMA_VERSION})"
                )
            for version, name, statements in MIGRATIONS:
                if version > STATE_DB_SCHEMA_VERSION:
                    break
                checksum = migration_checksum(version, name, statements)
                if version in applied:
                    if applied[version] != checksum:
                        raise StateDBMigrationError(
                            f"migration {version} ({name}) was changed after it was applied"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    for statement in statements:
                        self._run(tx, statement, ())
                    self._run(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (version, name, checksum, utc_now_iso()),
                    )
            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        if conn is None:
            with self.connection() as owned:
                return self.schema_version(conn=owned)
        exists = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_versions'"
        ).fetchone()
        if exists is None:
            return 0
        row = conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_versions").fetchone()
        return int(row[0])

    def execute(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> int:
        """Run one statement; without ``conn`` it commits on its own."""
        if conn is not None:
            return self._run(conn, sql, params).rowcount
        with self.transaction() as tx:
            return self._run(tx, sql, params).rowcount

    def executemany(
        self,
        sql: str,
        rows: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        batch = [tuple(row) for row in rows]
        if conn is None:
            with self.transaction() as tx:
                return self.executemany(sql, batch, conn=tx)
        try:
            return conn.executemany(sql, batch).rowcount
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise self._translate(exc, sql) from exc

    def query_all(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> list[dict[str, RowValue]]:
        if conn is None:
            with self.connection() as owned:
                return self.query_all(sql, params, conn=owned)
        return [dict(row) for row in self._run(conn, sql, params).fetchall()]

    def query_one(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> dict[str, RowValue] | None:
        if conn is None:
            with self.connection() as owned:
                return self.query_one(sql, params, conn=owned)
        row = self._run(conn, sql, params).fetchone()
        return None if row is None else dict(row)

    def _run(self, conn: sqlite3.Connection, sql: str, params: SQLParams) -> sqlite3.Cursor:
        for attempt in range(_LOCKED_RETRIES + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.OperationalError as exc:
                if "locked" in str(exc).lower() and attempt < _LOCKED_RETRIES:
                    time.sleep(_LOCKED_BACKOFF_SECONDS * 2**attempt)
                    continue
                raise self._translate(exc, sql) from exc
            except sqlite3.Error as exc:
                raise self._translate(exc, sql) from exc
        raise StateDBError(f"database at {self._path} stayed locked")

    def _translate(self, exc: sqlite3.Error, sql: str) -> StateDBError:
        statement = " ".join(sql.split())[:80]
        missing = _MISSING_RELATION_RE.search(str(exc))
        if missing is not None:
            return StateDBMissingRelationError(
                f"{statement!r} failed on {self._path}: {exc}", relation=missing.group(1)
            )
        return StateDBError(f"{statement!r} failed on {self._path}: {exc}")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "CASE_STATUSES",
    "MIGRATIONS",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBError",
    "StateDBMigrationError",
    "StateDBMissingRelationError",
    "migration_checksum",
    "utc_now_iso",
]
