from __future__ import annotations

from case_forge.domain.errors import (
    CaseValidationError,
    DuplicateCaseError,
    GenerationTimeoutError,
    InvalidRequestError,
    MissingRelationError,
    PipelineError,
    StructuralParseError,
    raw_preview,
)


def test_pipeline_error_renders_code_and_structured_payload() -> None:
    error = StructuralParseError(
        "Unexpected end of input",
        raw_preview='{"a": 1',
        context='{"a": 1',
        offset=7,
    )

    assert str(error) == "structural_parse_failed: Unexpected end of input"
    assert error.to_dict() == {
        "code": "structural_parse_failed",
        "message": "Unexpected end of input",
        "raw_preview": '{"a": 1',
        "offset": 7,
        "context": '{"a": 1',
    }


def test_validation_error_carries_violations() -> None:
    error = CaseValidationError("case still invalid after repair (1 violations)", violations=["x"])

    assert error.to_dict()["violations"] == ["x"]
    assert isinstance(error, PipelineError)


def test_duplicate_and_missing_relation_messages() -> None:
    duplicate = DuplicateCaseError("bp_demo", existing_case_id="cs_bp_demo_1")
    missing = MissingRelationError("case_files")

    assert duplicate.code == "duplicate_case"
    assert "cs_bp_demo_1" in duplicate.message
    assert missing.code == "missing_relation"
    assert missing.message == "relation 'case_files' does not exist; run `case-forge migrate`"


def test_codes_are_stable_for_subclasses() -> None:
    assert GenerationTimeoutError("slow").code == "generation_timeout"
    assert isinstance(InvalidRequestError("bad"), ValueError)
    assert PipelineError("custom", code="special").code == "special"


def test_raw_preview_truncates() -> None:
    assert raw_preview(None) is None
    assert raw_preview("abc", limit=5) == "abc"
    assert raw_preview("abcdef", limit=3) == "abc"
