from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from case_forge.validation.case_rules import validate_case
from tests.builders import make_case_payload, words

if TYPE_CHECKING:
    from collections.abc import Callable


@pytest.mark.unit
def test_complete_case_passes() -> None:
    result = validate_case(make_case_payload())

    assert result.content_type == "CASE"
    assert result.valid, result.violations


@pytest.mark.unit
@pytest.mark.parametrize(
    ("count", "expected"),
    [
        (799, "Description too short: 799 words, need at least 800 words"),
        (800, None),
        (801, None),
    ],
)
def test_description_word_minimum(count: int, expected: str | None) -> None:
    result = validate_case(make_case_payload(description=words(count)))

    assert list(result.violations) == ([] if expected is None else [expected])


@pytest.mark.unit
@pytest.mark.parametrize(
    ("count", "expected"),
    [
        (5, "Too few stages: found 5, need at least 6"),
        (6, None),
        (7, None),
        (8, None),
        (9, "Too many stages: found 9, need at most 8"),
    ],
)
def test_stage_count_bounds(count: int, expected: str | None) -> None:
    stage = make_case_payload()["stages"][0]
    result = validate_case(make_case_payload(stages=[dict(stage) for _ in range(count)]))

    assert list(result.violations) == ([] if expected is None else [expected])


@pytest.mark.unit
def test_stage_fields_and_rubric_levels_are_required() -> None:
    payload = make_case_payload()
    del payload["stages"][1]["challengeData"]
    del payload["rubric"]["criteria"][3]["scoringGuide"]["Exemplary"]

    result = validate_case(payload)

    assert "Stage 1: Missing challengeData" in result.violations
    assert "Criterion 3: scoringGuide missing levels Exemplary" in result.violations


def _with_criteria(count: int) -> dict[str, Any]:
    payload = make_case_payload()
    template = payload["rubric"]["criteria"][0]
    payload["rubric"]["criteria"] = [{**template, "name": f"Criterion {index}"} for index in range(count)]
    return payload


def _with_datasets(count: int) -> dict[str, Any]:
    return make_case_payload(datasets=[{"name": f"dataset_{index}"} for index in range(count)])


def _with_case_files(count: int) -> dict[str, Any]:
    files = [
        {"fileId": f"exhibit_{index}", "fileName": f"exhibit_{index}.md", "fileType": "MEMO"}
        for index in range(count)
    ]
    return make_case_payload(caseFiles=files)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("build", "count", "expected"),
    [
        (_with_criteria, 7, "Too few rubric criteria: found 7, need at least 8"),
        (_with_criteria, 8, None),
        (_with_criteria, 9, None),
        (_with_datasets, 2, "Too few datasets: found 2, need at least 3"),
        (_with_datasets, 3, None),
        (_with_datasets, 4, None),
        (_with_case_files, 2, "Too few caseFiles: found 2, need at least 3"),
        (_with_case_files, 3, None),
        (_with_case_files, 4, None),
    ],
)
def test_collection_minimums(
    build: Callable[[int], dict[str, Any]], count: int, expected: str | None
) -> None:
    result = validate_case(build(count))

    assert list(result.violations) == ([] if expected is None else [expected])


@pytest.mark.unit
def test_collection_shortfalls_are_reported_together() -> None:
    payload = make_case_payload(datasets=[{}, {}], caseFiles=make_case_payload()["caseFiles"][:2])
    payload["rubric"]["criteria"] = payload["rubric"]["criteria"][:7]

    result = validate_case(payload)

    assert "Too few datasets: found 2, need at least 3" in result.violations
    assert "Too few caseFiles: found 2, need at least 3" in result.violations
    assert "Too few rubric criteria: found 7, need at least 8" in result.violations


@pytest.mark.unit
def test_missing_fields_and_bad_metadata() -> None:
    payload = make_case_payload(competencies=[], difficulty="expert", estimatedDuration=0)
    del payload["title"]
    payload["caseFiles"][0]["fileType"] = "SPREADSHEET"

    result = validate_case(payload)

    assert "Missing required field: title" in result.violations
    assert "Competencies array cannot be empty" in result.violations
    assert "Invalid difficulty (must be beginner, intermediate, advanced)" in result.violations
    assert "Invalid estimatedDuration (must be a positive number)" in result.violations
    assert "Case file 0: Unknown fileType 'SPREADSHEET'" in result.violations


@pytest.mark.unit
def test_placeholder_anywhere_in_case_is_flagged() -> None:
    payload = make_case_payload()
    payload["stages"][0]["challengeData"] = {"prompt": "Placeholder"}

    result = validate_case(payload)

    assert result.violations == ("Content contains placeholder text",)


@pytest.mark.unit
def test_non_object_root_is_a_single_violation() -> None:
    result = validate_case([1, 2])  # type: ignore[arg-type]

    assert result.violations == ("Case must be a JSON object, got list",)
