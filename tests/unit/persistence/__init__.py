"""Shared builders for persistence tests."""

from __future__ import annotations

from typing import Any

from case_forge.domain.models import AssetType
from case_forge.persistence.case_store import CaseFileRecord, CaseRecord


def make_case_record(index: int = 1, **overrides: Any) -> CaseRecord:
    values: dict[str, Any] = {
        "id": f"cs_bp_{index}_1700000000000",
        "blueprint_id": f"bp_{index}",
        "title": f"Case {index}",
        "description": "A case about margins.",
        "arena_id": "arena_ops",
        "competency_name": "Strategic Thinking",
        "storage_path": f"cases/year1/arena_ops/strategic_thinking/cs_bp_{index}_1700000000000.json",
        "document": {"caseId": f"cs_bp_{index}_1700000000000", "title": f"Case {index}"},
        "difficulty": "intermediate",
        "estimated_minutes": 90,
    }
    values.update(overrides)
    return CaseRecord(**values)


def make_file_records(count: int = 3) -> list[CaseFileRecord]:
    types = (AssetType.FINANCIAL_DATA, AssetType.MEMO, AssetType.STAKEHOLDER_PROFILES)
    return [
        CaseFileRecord(
            file_id=f"file_{index}",
            file_name=f"file_{index}.{types[index % 3].extension}",
            file_type=types[index % 3],
        )
        for index in range(count)
    ]


def count_rows(db: Any, table: str) -> int:
    row = db.query_one(f"SELECT COUNT(*) AS n FROM {table}")
    return int(row["n"]) if row is not None else 0


__all__ = ["count_rows", "make_case_record", "make_file_records"]
