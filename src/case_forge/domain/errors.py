"""Pipeline error taxonomy with machine-readable codes.

Every failure that can end a run surfaces as one ``PipelineError`` subclass so
callers can render a single structured error object: a stable ``code``, a
human-readable ``message`` and, when relevant, a preview of the raw generator
output, positional context for parse failures, or the violation list.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Final

from case_forge.constants import RAW_PREVIEW_CHARS

STRUCTURAL_PARSE_FAILED: Final[str] = "structural_parse_failed"
CASE_VALIDATION_FAILED: Final[str] = "case_validation_failed"
GENERATION_FAILED: Final[str] = "generation_failed"
GENERATION_PERMANENT: Final[str] = "generation_permanent"
GENERATION_TIMEOUT: Final[str] = "generation_timeout"
RUN_DEADLINE_EXCEEDED: Final[str] = "run_deadline_exceeded"
DUPLICATE_CASE: Final[str] = "duplicate_case"
MISSING_RELATION: Final[str] = "missing_relation"
INTEGRITY_CONFLICT: Final[str] = "integrity_conflict"
INVALID_REQUEST: Final[str] = "invalid_request"


def raw_preview(text: str | None, *, limit: int = RAW_PREVIEW_CHARS) -> str | None:
    """Return the leading ``limit`` characters of ``text`` for diagnostics."""
    if text is None:
        return None
    if len(text) <= limit:
        return text
    return text[:limit]


class PipelineError(Exception):
    """Base error with a stable machine-readable code."""

    code: str = "pipeline_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        raw_preview: str | None = None,
        context: str | None = None,
        offset: int | None = None,
        violations: Sequence[str] = (),
    ) -> None:
        if code is not None:
            self.code = code
        self.message = message
        self.raw_preview = raw_preview
        self.context = context
        self.offset = offset
        self.violations = tuple(violations)
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.raw_preview is not None:
            payload["raw_preview"] = self.raw_preview
        if self.offset is not None:
            payload["offset"] = self.offset
        if self.context is not None:
            payload["context"] = self.context
        if self.violations:
            payload["violations"] = list(self.violations)
        return payload


class InvalidRequestError(PipelineError, ValueError):
    """Raised when a generation request cannot be processed as given."""

    code = INVALID_REQUEST


class StructuralParseError(PipelineError):
    """Generated text never became structured data within the attempt ceiling."""

    code = STRUCTURAL_PARSE_FAILED


class CaseValidationError(PipelineError):
    """Whole-case validation still fails after the single repair round-trip."""

    code = CASE_VALIDATION_FAILED


class GenerationCallError(PipelineError):
    """External generator call failed after retries and provider fallback."""

    code = GENERATION_FAILED


class PermanentGenerationError(GenerationCallError):
    """Generator failure that retrying cannot fix (bad key, unknown model)."""

    code = GENERATION_PERMANENT


class GenerationTimeoutError(GenerationCallError):
    code = GENERATION_TIMEOUT


class RunDeadlineExceededError(PipelineError):
    """The run outlived its configured worst-case latency ceiling."""

    code = RUN_DEADLINE_EXCEEDED


class PersistenceConflictError(PipelineError):
    """Base for persistence failures that need operator action, not a retry."""

    code = INTEGRITY_CONFLICT


class DuplicateCaseError(PersistenceConflictError):
    code = DUPLICATE_CASE

    def __init__(self, blueprint_id: str, *, existing_case_id: str | None = None) -> None:
        self.blueprint_id = blueprint_id
        self.existing_case_id = existing_case_id
        detail = f"a case for blueprint {blueprint_id!r} already exists"
        if existing_case_id is not None:
            detail = f"{detail} (case_id={existing_case_id})"
        super().__init__(detail)


class MissingRelationError(PersistenceConflictError):
    """A required table is absent; the state database needs migrating."""

    code = MISSING_RELATION

    def __init__(self, relation: str, *, detail: str | None = None) -> None:
        self.relation = relation
        message = f"relation {relation!r} does not exist; run `case-forge migrate`"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class IntegrityConflictError(PersistenceConflictError):
    code = INTEGRITY_CONFLICT


__all__ = [
    "CASE_VALIDATION_FAILED",
    "CaseValidationError",
    "DUPLICATE_CASE",
    "DuplicateCaseError",
    "GENERATION_FAILED",
    "GENERATION_PERMANENT",
    "GENERATION_TIMEOUT",
    "GenerationCallError",
    "GenerationTimeoutError",
    "INTEGRITY_CONFLICT",
    "INVALID_REQUEST",
    "IntegrityConflictError",
    "InvalidRequestError",
    "MISSING_RELATION",
    "MissingRelationError",
    "PermanentGenerationError",
    "PersistenceConflictError",
    "PipelineError",
    "RUN_DEADLINE_EXCEEDED",
    "RunDeadlineExceededError",
    "STRUCTURAL_PARSE_FAILED",
    "StructuralParseError",
    "raw_preview",
]
