"""
case-forge — integration tests for the generation pipeline

File: tests/integration/test_generation_pipeline.py
Last updated: 2026-10-17

Purpose
- Drive ``generate_case`` end to end with a scripted generator, a real SQLite
  state DB and a local mirror directory.

What this test file should cover
- Slide-count repair for presentation decks.
- Row-count messaging for tabular assets.
- Recovery of fenced JSON with trailing commas.
- Duplicate-submission rejection without extra rows.

Functional requirements
- Offline; no provider SDK is touched.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from case_forge.config.schema import default_config
from case_forge.domain.errors import DuplicateCaseError, InvalidRequestError
from case_forge.domain.events import EventType, PipelineEvent
from case_forge.observability.events import EventBus
from case_forge.orchestration.factory import generate_case
from case_forge.parsing.structural_parser import parse_structure
from case_forge.persistence.case_store import CaseStore
from case_forge.persistence.mirror import LocalMirrorStore
from case_forge.persistence.state_db import StateDB
from case_forge.validation.content import validate_asset
from tests.builders import (
    ScriptedGenerator,
    case_json,
    make_csv,
    make_deck,
    make_prose,
    make_request,
)

if TYPE_CHECKING:
    from pathlib import Path

DECK_FILES = [
    {"fileId": "board_deck", "fileName": "board_deck.md", "fileType": "PRESENTATION_DECK"},
    {"fileId": "quarterly_financials", "fileName": "quarterly_financials.csv", "fileType": "FINANCIAL_DATA"},
    {"fileId": "ceo_memo", "fileName": "ceo_memo.md", "fileType": "INTERNAL_MEMO"},
]


@pytest.fixture
def store(tmp_path: Path) -> CaseStore:
    return CaseStore(StateDB(tmp_path / "state" / "caseforge.sqlite"))


@pytest.fixture
def mirror(tmp_path: Path) -> LocalMirrorStore:
    return LocalMirrorStore(tmp_path / "sources")


def _count(store: CaseStore, table: str) -> int:
    row = store.db.query_one(f"SELECT COUNT(*) AS n FROM {table}")
    assert row is not None
    return int(row["n"])


@pytest.mark.asyncio
async def test_short_deck_is_repaired_and_mirrored(
    tmp_path: Path, store: CaseStore, mirror: LocalMirrorStore
) -> None:
    short_deck = make_deck(9)
    assert validate_asset(short_deck, "PRESENTATION_DECK").violations == (
        "Too few slides: found 9, need at least 12",
    )
    generator = ScriptedGenerator(
        [
            "Outline: three quarters of margin erosion",
            case_json(caseFiles=DECK_FILES),
            short_deck,
            make_deck(12),
            make_csv(17),
            make_prose(900),
        ]
    )
    bus = EventBus()
    seen: list[PipelineEvent] = []
    bus.subscribe(None, seen.append)

    result = await generate_case(
        make_request(case_id="cs_bp_demo_1"),
        config=default_config(),
        generator=generator,
        store=store,
        mirror=mirror,
        events=bus,
    )

    assert generator.calls == 6
    assert "- Too few slides: found 9, need at least 12" in generator.prompts[3]
    deck = result.assets[0]
    assert deck.success and deck.repaired and deck.mirrored
    assert (tmp_path / "sources" / "cs_bp_demo_1" / "board_deck.md").read_text(
        encoding="utf-8"
    ) == make_deck(12)
    assert [event.event_type for event in seen].count(EventType.ASSET_REPAIR_REQUESTED) == 1
    assert _count(store, "cases") == 1
    assert _count(store, "case_files") == 3


@pytest.mark.asyncio
async def test_short_table_keeps_row_count_violation_in_warn_mode(
    store: CaseStore, mirror: LocalMirrorStore
) -> None:
    short_table = make_csv(11)
    generator = ScriptedGenerator(
        [
            "outline",
            case_json(caseFiles=DECK_FILES),
            make_deck(12),
            short_table,
            short_table,
            make_prose(900),
        ]
    )

    result = await generate_case(
        make_request(case_id="cs_bp_demo_1"),
        config=default_config(),
        generator=generator,
        store=store,
        mirror=mirror,
    )

    expected = "Insufficient rows: expected at least 17 (1 header + 16 data rows), got 11"
    table = result.assets[1]
    assert table.success is True
    assert table.violations == (expected,)
    assert result.failed_assets == ()
    stored = store.get_case_file("cs_bp_demo_1", "quarterly_financials")
    assert stored is not None and stored.violations == (expected,)


def test_fenced_json_with_trailing_comma_is_recovered() -> None:
    outcome = parse_structure('Here is your data: ```json\n{"a":1,}\n```')

    assert outcome.ok
    assert outcome.value == {"a": 1}
    assert outcome.repaired


@pytest.mark.asyncio
async def test_fenced_case_document_flows_through_pipeline(
    store: CaseStore, mirror: LocalMirrorStore
) -> None:
    document = case_json(caseFiles=DECK_FILES)
    fenced = "Here is the case:\n```json\n" + document[:-1] + ",}\n```\nLet me know!"
    generator = ScriptedGenerator(
        ["outline", fenced, make_deck(12), make_csv(17), make_prose(900)]
    )

    result = await generate_case(
        make_request(case_id="cs_bp_demo_1"),
        config=default_config(),
        generator=generator,
        store=store,
        mirror=mirror,
    )

    assert result.repaired is False
    assert result.persisted.document["title"] == json.loads(document)["title"]


@pytest.mark.asyncio
async def test_duplicate_submission_is_rejected_without_new_rows(
    store: CaseStore, mirror: LocalMirrorStore
) -> None:
    generator = ScriptedGenerator(
        ["outline", case_json(caseFiles=DECK_FILES), make_deck(12), make_csv(17), make_prose(900)]
    )
    await generate_case(
        make_request(case_id="cs_bp_demo_1"),
        config=default_config(),
        generator=generator,
        store=store,
        mirror=mirror,
    )

    with pytest.raises(DuplicateCaseError) as excinfo:
        await generate_case(
            make_request(case_id="cs_bp_demo_2"),
            config=default_config(),
            generator=generator,
            store=store,
            mirror=mirror,
        )

    assert excinfo.value.to_dict()["code"] == "duplicate_case"
    assert generator.calls == 5
    assert _count(store, "cases") == 1
    assert _count(store, "case_files") == 3


@pytest.mark.asyncio
async def test_invalid_request_is_rejected_before_any_call(store: CaseStore) -> None:
    generator = ScriptedGenerator()

    with pytest.raises(InvalidRequestError):
        await generate_case(
            {"arena_id": "arena_ops", "competency_name": "Strategic Thinking"},
            config=default_config(),
            generator=generator,
            store=store,
        )

    assert generator.calls == 0
