"""Request parsing and draft projection from generated documents."""

from __future__ import annotations

import pytest

from case_forge.domain.models import (
    AssetType,
    CaseDraft,
    CaseFileDraft,
    Difficulty,
    GenerationRequest,
    TokenUsage,
    ValidationResult,
)
from tests.builders import make_case_payload, make_request


def test_request_from_dict_parses_nested_options() -> None:
    request = GenerationRequest.from_dict(
        make_request(
            options={"provider": "anthropic", "target_word_count": 1200},
            difficulty="advanced",
            estimated_duration=45,
        )
    )

    assert request.options.provider == "anthropic"
    assert request.options.target_word_count == 1200
    assert request.difficulty is Difficulty.ADVANCED
    assert request.duplicate_key == "bp_demo"
    assert request.resolved_blueprint().title == "Margin Pressure"


def test_duplicate_key_falls_back_to_slugified_title() -> None:
    request = GenerationRequest.from_dict(
        {"arena_id": "a1", "competency_name": "Negotiation", "blueprint_title": "Supplier Squeeze!"}
    )

    assert request.duplicate_key == "supplier_squeeze"


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"arena_id": "a1", "competency_name": "c"}, "blueprint_id or blueprint_title"),
        ({"arena_id": "a1", "competency_name": "c", "blueprint_id": "b", "extra": 1}, "unexpected fields"),
        ({"arena_id": "a1", "blueprint_id": "b"}, "missing required fields"),
        ({"arena_id": "a1", "competency_name": "c", "blueprint_id": "b", "difficulty": "hard"}, "difficulty"),
        ({"arena_id": "a1", "competency_name": "c", "blueprint_id": "b", "case_id": "x/y"}, "case_id"),
        ({"arena_id": "a1", "competency_name": "c", "blueprint_id": "b", "estimated_duration": 0}, "estimated_duration"),
    ],
)
def test_request_validation_errors(payload: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        GenerationRequest.from_dict(payload)


def test_case_draft_projects_generated_document() -> None:
    draft = CaseDraft.from_payload(make_case_payload())

    assert draft.case_id == "cs_bp_demo_1700000000000"
    assert len(draft.stages) == 6
    assert len(draft.rubric_criteria) == 8
    assert [item.file_id for item in draft.files] == ["quarterly_financials", "board_memo", "stakeholders"]
    assert draft.file("board_memo").file_type is AssetType.MEMO
    assert not draft.file("board_memo").is_populated


def test_case_draft_is_lenient_about_substandard_fields() -> None:
    draft = CaseDraft.from_payload(
        {
            "title": 42,
            "difficulty": "legendary",
            "estimatedDuration": True,
            "caseFiles": [
                {"fileName": "Board Memo.md", "fileType": "MEMO"},
                {"fileName": "dupe.md", "fileId": "board_memo_md", "fileType": "MEMO"},
                {"fileName": "bad.bin", "fileType": "BINARY"},
            ],
        }
    )

    assert draft.title == ""
    assert draft.difficulty is None
    assert draft.estimated_duration is None
    assert [item.file_id for item in draft.files] == ["board_memo_md"]
    with pytest.raises(ValueError):
        CaseDraft.from_payload(["not", "an", "object"])  # type: ignore[arg-type]


def test_to_document_folds_in_asset_content() -> None:
    draft = CaseDraft.from_payload(make_case_payload()).with_file_content("board_memo", "# Memo")

    document = draft.to_document()

    memo = next(item for item in document["caseFiles"] if item["fileId"] == "board_memo")
    assert memo["source"] == {"type": "STATIC", "content": "# Memo"}
    assert document["title"] == "Margin Pressure at Northwind Logistics"
    with pytest.raises(KeyError):
        draft.with_file_content("missing", "x")


def test_case_file_helpers() -> None:
    draft = CaseFileDraft(file_id="deck", file_name="board.deck.md", file_type="PRESENTATION_DECK")

    assert draft.base_name == "board.deck"
    assert draft.file_type.output_format == "Marp Markdown"
    assert AssetType.ORG_CHART.extension == "json"
    assert AssetType.FINANCIAL_DATA.mime_type == "text/csv"
    assert AssetType.MEMO.mime_type == "text/markdown"


def test_token_usage_adds_and_validation_result_verdict() -> None:
    total = TokenUsage(1, 2, 3) + TokenUsage(4, 5, 9)

    assert total == TokenUsage(5, 7, 12)
    assert ValidationResult.from_violations("MEMO", []).valid
    assert not ValidationResult.from_violations("MEMO", ["Too short"]).valid
