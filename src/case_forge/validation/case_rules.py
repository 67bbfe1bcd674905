"""Whole-case validation over a parsed case document.

Returns violations as plain strings; the caller decides whether they trigger a
repair round-trip or end the run.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from case_forge.constants import DIFFICULTY_LEVELS, RUBRIC_LEVELS
from case_forge.domain.models import AssetType, ValidationResult
from case_forge.validation.content import PLACEHOLDER_VIOLATION, contains_placeholder, count_words
from case_forge.validation.thresholds import DEFAULT_THRESHOLDS, ValidationThresholds

CASE_CONTENT_TYPE = "CASE"

_KNOWN_FILE_TYPES = frozenset(item.value for item in AssetType)


def validate_case(
    payload: Mapping[str, Any],
    *,
    thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
) -> ValidationResult:
    if not isinstance(payload, Mapping):
        return ValidationResult.from_violations(
            CASE_CONTENT_TYPE, [f"Case must be a JSON object, got {type(payload).__name__}"]
        )
    violations: list[str] = []
    violations.extend(_check_required_fields(payload, thresholds))
    violations.extend(_check_stages(payload.get("stages"), thresholds))
    violations.extend(_check_rubric(payload.get("rubric"), thresholds))
    violations.extend(_check_datasets(payload.get("datasets"), thresholds))
    violations.extend(_check_case_files(payload.get("caseFiles"), thresholds))
    violations.extend(_check_metadata(payload))
    if contains_placeholder(json.dumps(payload, ensure_ascii=False, default=str)):
        violations.append(PLACEHOLDER_VIOLATION)
    return ValidationResult.from_violations(CASE_CONTENT_TYPE, violations)


def _check_required_fields(
    payload: Mapping[str, Any], thresholds: ValidationThresholds
) -> list[str]:
    violations = [
        f"Missing required field: {key}"
        for key in ("caseId", "version", "title", "description")
        if not _present(payload.get(key))
    ]
    competencies = payload.get("competencies")
    if not isinstance(competencies, list):
        violations.append("Missing or invalid competencies array")
    elif not competencies:
        violations.append("Competencies array cannot be empty")

    description = payload.get("description")
    if isinstance(description, str) and description:
        words = count_words(description)
        if words < thresholds.case_description_min_words:
            violations.append(
                f"Description too short: {words} words, "
                f"need at least {thresholds.case_description_min_words} words"
            )
    return violations


def _check_stages(stages: object, thresholds: ValidationThresholds) -> list[str]:
    if not isinstance(stages, list):
        return ["Missing or invalid stages array"]
    violations: list[str] = []
    if len(stages) < thresholds.case_min_stages:
        violations.append(
            f"Too few stages: found {len(stages)}, need at least {thresholds.case_min_stages}"
        )
    elif len(stages) > thresholds.case_max_stages:
        violations.append(
            f"Too many stages: found {len(stages)}, need at most {thresholds.case_max_stages}"
        )
    for index, raw in enumerate(stages):
        stage = raw if isinstance(raw, Mapping) else {}
        for key in ("stageId", "challengeType", "challengeData"):
            if not _present(stage.get(key)):
                violations.append(f"Stage {index}: Missing {key}")
    return violations


def _check_rubric(rubric: object, thresholds: ValidationThresholds) -> list[str]:
    criteria = rubric.get("criteria") if isinstance(rubric, Mapping) else None
    if not isinstance(criteria, list):
        return ["Missing or invalid rubric"]
    violations: list[str] = []
    if len(criteria) < thresholds.case_min_criteria:
        violations.append(
            f"Too few rubric criteria: found {len(criteria)}, "
            f"need at least {thresholds.case_min_criteria}"
        )
    for index, raw in enumerate(criteria):
        criterion = raw if isinstance(raw, Mapping) else {}
        guide = criterion.get("scoringGuide")
        if not isinstance(guide, Mapping):
            violations.append(f"Criterion {index}: Missing scoringGuide")
            continue
        missing = [level for level in RUBRIC_LEVELS if not _present(guide.get(level))]
        if missing:
            levels = ", ".join(missing)
            violations.append(f"Criterion {index}: scoringGuide missing levels {levels}")
    return violations


def _check_datasets(datasets: object, thresholds: ValidationThresholds) -> list[str]:
    if not isinstance(datasets, list):
        return ["Missing or invalid datasets array"]
    if len(datasets) < thresholds.case_min_datasets:
        return [
            f"Too few datasets: found {len(datasets)}, need at least {thresholds.case_min_datasets}"
        ]
    return []


def _check_case_files(case_files: object, thresholds: ValidationThresholds) -> list[str]:
    if not isinstance(case_files, list):
        return ["Missing or invalid caseFiles array"]
    violations: list[str] = []
    if len(case_files) < thresholds.case_min_files:
        violations.append(
            f"Too few caseFiles: found {len(case_files)}, need at least {thresholds.case_min_files}"
        )
    for index, raw in enumerate(case_files):
        case_file = raw if isinstance(raw, Mapping) else {}
        for key in ("fileId", "fileName"):
            if not _present(case_file.get(key)):
                violations.append(f"Case file {index}: Missing {key}")
        file_type = case_file.get("fileType")
        if file_type not in _KNOWN_FILE_TYPES:
            violations.append(f"Case file {index}: Unknown fileType {file_type!r}")
    return violations


def _check_metadata(payload: Mapping[str, Any]) -> list[str]:
    violations: list[str] = []
    if "difficulty" in payload and payload["difficulty"] not in DIFFICULTY_LEVELS:
        violations.append(
            "Invalid difficulty (must be " + ", ".join(DIFFICULTY_LEVELS) + ")"
        )
    if "estimatedDuration" in payload:
        duration = payload["estimatedDuration"]
        if (
            isinstance(duration, bool)
            or not isinstance(duration, (int, float))
            or duration <= 0
        ):
            violations.append("Invalid estimatedDuration (must be a positive number)")
    return violations


def _present(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return bool(value)
    return True


__all__ = ["CASE_CONTENT_TYPE", "validate_case"]
