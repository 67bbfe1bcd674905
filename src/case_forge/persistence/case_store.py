"""
case-forge — case store

File: src/case_forge/persistence/case_store.py
Last updated: 2026-10-17

Purpose
- Atomic persistence boundary for generated cases and their asset files.

Functional requirements
- A case row and its file rows commit together or not at all.
- The one-case-per-blueprint check runs inside the write transaction.
- A creator that does not exist in ``users`` is stored as NULL.
- Low-level SQLite failures surface as ``PersistenceConflictError`` subclasses.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

import structlog

from case_forge.domain.errors import (
    DuplicateCaseError,
    IntegrityConflictError,
    MissingRelationError,
)
from case_forge.domain.ids import validate_case_id
from case_forge.domain.models import AssetType, PersistedCase, PersistedCaseFile, canonical_json
from case_forge.persistence.state_db import (
    CASE_STATUSES,
    RowValue,
    StateDB,
    StateDBMissingRelationError,
    utc_now_iso,
)

AfterInsertHook = Callable[[sqlite3.Connection], None]

_BLUEPRINT_UNIQUE_FRAGMENT: Final[str] = "cases.blueprint_id"

_CASE_COLUMNS: Final[str] = (
    "id, blueprint_id, title, description, arena_id, competency_name, storage_path, "
    "difficulty, estimated_minutes, status, created_by, document_json, violations_json, created_at"
)
_FILE_COLUMNS: Final[str] = (
    "case_id, file_id, file_name, file_type, mime_type, content, size, violations_json, updated_at"
)


@dataclass(frozen=True, slots=True)
class CaseRecord:
    """Row to insert into ``cases``."""

    id: str
    blueprint_id: str
    title: str
    description: str
    arena_id: str
    competency_name: str
    storage_path: str
    document: dict[str, Any]
    difficulty: str | None = None
    estimated_minutes: int | None = None
    status: str = "draft"
    created_by: str | None = None
    violations: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        validate_case_id(self.id)
        if not self.blueprint_id.strip():
            raise ValueError("blueprint_id must be non-empty")
        if self.status not in CASE_STATUSES:
            raise ValueError(f"status must be one of {', '.join(CASE_STATUSES)}")


@dataclass(frozen=True, slots=True)
class CaseFileRecord:
    """Row to insert into or update in ``case_files``."""

    file_id: str
    file_name: str
    file_type: AssetType
    content: str = ""
    violations: tuple[str, ...] = field(default_factory=tuple)

    @property
    def mime_type(self) -> str:
        return self.file_type.mime_type

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))


class CaseStore:
    """Reads and writes cases and case files in the state database.

    ``after_case_insert`` runs inside the create transaction right after the
    case row is written; raising from it rolls the whole create back.
    """

    def __init__(
        self,
        db: StateDB,
        *,
        auto_migrate: bool = True,
        after_case_insert: AfterInsertHook | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._after_case_insert = after_case_insert
        self._log = logger if logger is not None else structlog.get_logger(__name__)
        if auto_migrate:
            self._db.migrate()

    @property
    def db(self) -> StateDB:
        return self._db

    def create_case_with_files(
        self,
        case_record: CaseRecord,
        file_records: Sequence[CaseFileRecord],
    ) -> tuple[PersistedCase, tuple[PersistedCaseFile, ...]]:
        created_at = utc_now_iso()
        try:
            with self._db.transaction() as conn:
                existing = self._db.query_one(
                    "SELECT id FROM cases WHERE blueprint_id = ?",
                    (case_record.blueprint_id,),
                    conn=conn,
                )
                if existing is not None:
                    raise DuplicateCaseError(
                        case_record.blueprint_id,
                        existing_case_id=_optional_text(existing.get("id")),
                    )

                created_by = self._resolve_creator(case_record.created_by, conn)
                self._db.execute(
                    f"INSERT INTO cases ({_CASE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        case_record.id,
                        case_record.blueprint_id,
                        case_record.title,
                        case_record.description,
                        case_record.arena_id,
                        case_record.competency_name,
                        case_record.storage_path,
                        case_record.difficulty,
                        case_record.estimated_minutes,
                        case_record.status,
                        created_by,
                        canonical_json(case_record.document),
                        json.dumps(list(case_record.violations)),
                        created_at,
                    ),
                    conn=conn,
                )
                if self._after_case_insert is not None:
                    self._after_case_insert(conn)

                self._db.executemany(
                    f"INSERT INTO case_files ({_FILE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [_file_params(case_record.id, record, created_at) for record in file_records],
                    conn=conn,
                )
        except StateDBMissingRelationError as exc:
            raise MissingRelationError(exc.relation, detail=str(exc)) from exc
        except sqlite3.IntegrityError as exc:
            if _BLUEPRINT_UNIQUE_FRAGMENT in str(exc):
                raise DuplicateCaseError(case_record.blueprint_id) from exc
            raise IntegrityConflictError(f"case insert violated a constraint: {exc}") from exc

        self._log.info(
            "case_persisted",
            case_id=case_record.id,
            blueprint_id=case_record.blueprint_id,
            file_count=len(file_records),
            creator_nulled=created_by is None and case_record.created_by is not None,
        )
        persisted = PersistedCase(
            id=case_record.id,
            blueprint_id=case_record.blueprint_id,
            title=case_record.title,
            description=case_record.description,
            arena_id=case_record.arena_id,
            competency_name=case_record.competency_name,
            storage_path=case_record.storage_path,
            difficulty=case_record.difficulty,
            estimated_minutes=case_record.estimated_minutes,
            status=case_record.status,
            created_by=created_by,
            document=case_record.document,
            created_at=created_at,
            violations=case_record.violations,
        )
        files = tuple(
            _persisted_file(case_record.id, record, created_at) for record in file_records
        )
        return persisted, files

    def upsert_case_file(self, case_id: str, record: CaseFileRecord) -> PersistedCaseFile:
        updated_at = utc_now_iso()
        try:
            self._db.execute(
                f"""
                INSERT INTO case_files ({_FILE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(case_id, file_id) DO UPDATE SET
                    file_name = excluded.file_name,
                    file_type = excluded.file_type,
                    mime_type = excluded.mime_type,
                    content = excluded.content,
                    size = excluded.size,
                    violations_json = excluded.violations_json,
                    updated_at = excluded.updated_at
                """,
                _file_params(case_id, record, updated_at),
            )
        except StateDBMissingRelationError as exc:
            raise MissingRelationError(exc.relation, detail=str(exc)) from exc
        except sqlite3.IntegrityError as exc:
            raise IntegrityConflictError(
                f"case file {record.file_id!r} for case {case_id!r} violated a constraint: {exc}"
            ) from exc
        return _persisted_file(case_id, record, updated_at)

    def get_case_file(self, case_id: str, file_id: str) -> PersistedCaseFile | None:
        row = self._query_one(
            f"SELECT {_FILE_COLUMNS} FROM case_files WHERE case_id = ? AND file_id = ?",
            (case_id, file_id),
        )
        return None if row is None else _file_from_row(row)

    def list_case_files(self, case_id: str) -> list[PersistedCaseFile]:
        rows = self._query_all(
            f"SELECT {_FILE_COLUMNS} FROM case_files WHERE case_id = ? ORDER BY rowid ASC",
            (case_id,),
        )
        return [_file_from_row(row) for row in rows]

    def get_case(self, case_id: str) -> PersistedCase | None:
        row = self._query_one(f"SELECT {_CASE_COLUMNS} FROM cases WHERE id = ?", (case_id,))
        return None if row is None else _case_from_row(row)

    def find_by_blueprint(self, blueprint_id: str) -> PersistedCase | None:
        row = self._query_one(
            f"SELECT {_CASE_COLUMNS} FROM cases WHERE blueprint_id = ?",
            (blueprint_id,),
        )
        return None if row is None else _case_from_row(row)

    def add_user(self, user_id: str, *, email: str | None = None) -> None:
        self._db.execute(
            "INSERT OR IGNORE INTO users (id, email, created_at) VALUES (?, ?, ?)",
            (user_id, email, utc_now_iso()),
        )

    def _resolve_creator(self, created_by: str | None, conn: sqlite3.Connection) -> str | None:
        if created_by is None:
            return None
        row = self._db.query_one("SELECT id FROM users WHERE id = ?", (created_by,), conn=conn)
        if row is None:
            self._log.warning("case_creator_missing", created_by=created_by)
            return None
        return created_by

    def _query_one(
        self, sql: str, params: Sequence[str]
    ) -> dict[str, RowValue] | None:
        try:
            return self._db.query_one(sql, params)
        except StateDBMissingRelationError as exc:
            raise MissingRelationError(exc.relation, detail=str(exc)) from exc

    def _query_all(self, sql: str, params: Sequence[str]) -> list[dict[str, RowValue]]:
        try:
            return self._db.query_all(sql, params)
        except StateDBMissingRelationError as exc:
            raise MissingRelationError(exc.relation, detail=str(exc)) from exc


def _file_params(
    case_id: str, record: CaseFileRecord, timestamp: str
) -> tuple[str, str, str, str, str, str, int, str, str]:
    return (
        case_id,
        record.file_id,
        record.file_name,
        record.file_type.value,
        record.mime_type,
        record.content,
        record.size,
        json.dumps(list(record.violations)),
        timestamp,
    )


def _persisted_file(case_id: str, record: CaseFileRecord, timestamp: str) -> PersistedCaseFile:
    return PersistedCaseFile(
        case_id=case_id,
        file_id=record.file_id,
        file_name=record.file_name,
        file_type=record.file_type.value,
        mime_type=record.mime_type,
        content=record.content,
        size=record.size,
        violations=record.violations,
        updated_at=timestamp,
    )


def _file_from_row(row: Mapping[str, RowValue]) -> PersistedCaseFile:
    return PersistedCaseFile(
        case_id=_text(row, "case_id"),
        file_id=_text(row, "file_id"),
        file_name=_text(row, "file_name"),
        file_type=_text(row, "file_type"),
        mime_type=_text(row, "mime_type"),
        content=_text(row, "content"),
        size=_int(row, "size") or 0,
        violations=_violations(row),
        updated_at=_text(row, "updated_at"),
    )


def _case_from_row(row: Mapping[str, RowValue]) -> PersistedCase:
    return PersistedCase(
        id=_text(row, "id"),
        blueprint_id=_text(row, "blueprint_id"),
        title=_text(row, "title"),
        description=_text(row, "description"),
        arena_id=_text(row, "arena_id"),
        competency_name=_text(row, "competency_name"),
        storage_path=_text(row, "storage_path"),
        difficulty=_optional_text(row.get("difficulty")),
        estimated_minutes=_int(row, "estimated_minutes"),
        status=_text(row, "status"),
        created_by=_optional_text(row.get("created_by")),
        document=json.loads(_text(row, "document_json")),
        created_at=_text(row, "created_at"),
        violations=_violations(row),
    )


def _text(row: Mapping[str, RowValue], key: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise IntegrityConflictError(f"column {key!r} must be text, got {type(value).__name__}")
    return value


def _violations(row: Mapping[str, RowValue]) -> tuple[str, ...]:
    return tuple(str(item) for item in json.loads(_text(row, "violations_json") or "[]"))


def _optional_text(value: RowValue) -> str | None:
    return value if isinstance(value, str) else None


def _int(row: Mapping[str, RowValue], key: str) -> int | None:
    value = row.get(key)
    return value if isinstance(value, int) else None


__all__ = ["AfterInsertHook", "CaseFileRecord", "CaseRecord", "CaseStore"]
