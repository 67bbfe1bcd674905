from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING

import pytest

from case_forge.constants import STATE_DB_SCHEMA_VERSION
from case_forge.domain.models import TokenUsage
from case_forge.persistence.repositories import TokenUsageRepo
from case_forge.persistence.state_db import (
    MIGRATIONS,
    StateDB,
    StateDBMigrationError,
    StateDBMissingRelationError,
    migration_checksum,
)

from . import count_rows

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.unit
def test_migrate_is_idempotent(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "nested" / "state.sqlite")

    assert db.schema_version() == 0
    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    rows = db.query_all("SELECT version, name, checksum FROM schema_versions ORDER BY version")
    assert [row["version"] for row in rows] == [1]
    assert rows[0]["name"] == "initial_case_schema"
    assert rows[0]["checksum"] == migration_checksum(*MIGRATIONS[0])


@pytest.mark.unit
def test_edited_migration_is_refused(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite")
    db.migrate()
    db.execute("UPDATE schema_versions SET checksum = ? WHERE version = 1", ("0" * 64,))

    with pytest.raises(StateDBMigrationError, match="changed after it was applied"):
        db.migrate()


@pytest.mark.unit
def test_newer_schema_is_refused(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite")
    db.migrate()
    db.execute(
        "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
        (STATE_DB_SCHEMA_VERSION + 1, "from_the_future", "f" * 64, "2026-10-18T00:00:00Z"),
    )

    with pytest.raises(StateDBMigrationError, match="newer than this release"):
        db.migrate()


@pytest.mark.unit
def test_checksum_ignores_whitespace_only_edits() -> None:
    assert migration_checksum(1, "m", ["CREATE TABLE t (a INT)"]) == migration_checksum(
        1, "m", ["  CREATE TABLE t\n    (a INT)  "]
    )
    assert migration_checksum(1, "m", ["CREATE TABLE t (a INT)"]) != migration_checksum(
        1, "m", ["CREATE TABLE t (b INT)"]
    )


@pytest.mark.unit
def test_nested_transaction_rolls_back_only_savepoint(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite")
    db.migrate()

    with db.transaction() as conn:
        db.execute(
            "INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)",
            ("outer", None, "2026-10-17T00:00:00Z"),
            conn=conn,
        )
        with pytest.raises(RuntimeError):
            with db.transaction(conn=conn) as inner:
                db.execute(
                    "INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)",
                    ("inner", None, "2026-10-17T00:00:00Z"),
                    conn=inner,
                )
                raise RuntimeError("abort inner")

    rows = db.query_all("SELECT id FROM users ORDER BY id")
    assert rows == [{"id": "outer"}]


@pytest.mark.unit
def test_unknown_table_raises_missing_relation(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite")

    with pytest.raises(StateDBMissingRelationError) as excinfo:
        db.query_one("SELECT * FROM cases")

    assert excinfo.value.relation == "cases"


@pytest.mark.unit
def test_token_usage_accumulates_per_day_and_model(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite")
    repo = TokenUsageRepo(db)
    day = date(2026, 10, 17)

    repo.record_usage(day=day, model="gpt-4o", usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15))
    repo.record_usage(day=day, model="gpt-4o", usage=TokenUsage(prompt_tokens=1, completion_tokens=1, total_tokens=2))
    repo.record_usage(day=day, model="claude", usage=TokenUsage(prompt_tokens=3, completion_tokens=3, total_tokens=6))

    assert repo.get(day=day, model="gpt-4o") == TokenUsage(prompt_tokens=11, completion_tokens=6, total_tokens=17)
    assert list(repo.totals_for_day(day)) == ["claude", "gpt-4o"]
    assert repo.get(day=date(2026, 10, 18), model="gpt-4o") is None
    assert count_rows(db, "token_usage") == 2
    with pytest.raises(ValueError, match="model"):
        repo.record_usage(day=day, model=" ", usage=TokenUsage())
