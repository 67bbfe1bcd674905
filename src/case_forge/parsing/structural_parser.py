"""Bounded parse/repair loop over untrusted generator text.

State machine::

    Parsing --ok--> Succeeded
    Parsing --fail, attempts left--> Repairing --> Parsing
    Parsing --fail, no attempts left--> Exhausted

Each attempt is independent; the only thing carried between attempts is the
progressively repaired text. The number of attempts never exceeds
``max_attempts``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final

import structlog

from case_forge.constants import ERROR_CONTEXT_RADIUS
from case_forge.domain.errors import StructuralParseError, raw_preview
from case_forge.domain.models import JSONValue, ParseAttempt, StructuralError
from case_forge.parsing.extractor import extract_structure
from case_forge.parsing.repairer import repair_with_report

DEFAULT_MAX_ATTEMPTS: Final[int] = 3


class ParserState(StrEnum):
    PARSING = "parsing"
    REPAIRING = "repairing"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True, slots=True)
class ParseOutcome:
    state: ParserState
    raw_text: str
    attempts: tuple[ParseAttempt, ...]
    value: JSONValue = None
    truncated: bool = False
    error: StructuralError | None = None

    @property
    def ok(self) -> bool:
        return self.state is ParserState.SUCCEEDED

    @property
    def repaired(self) -> bool:
        """True when parsing succeeded only after at least one repair."""
        return self.ok and len(self.attempts) > 1

    @property
    def parsed_text(self) -> str | None:
        """Text the successful attempt parsed; ``None`` unless ``ok``."""
        if not self.ok:
            return None
        return self.attempts[-1].input_text

    def raise_for_failure(self) -> JSONValue:
        if self.ok:
            return self.value
        error = self.error or StructuralError(message="no parse attempts recorded")
        message = error.message
        if self.truncated:
            message = f"{message} (output appears truncated)"
        raise StructuralParseError(
            message,
            raw_preview=raw_preview(self.raw_text),
            context=error.context or None,
            offset=error.offset,
        )


def parse_structure(
    text: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    opener: str = "{",
    logger: Any | None = None,
) -> ParseOutcome:
    """Parse ``text`` strictly, repairing between attempts up to ``max_attempts``."""
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
        raise ValueError(f"max_attempts must be an integer >= 1, got {max_attempts!r}")
    log = logger if logger is not None else structlog.get_logger(__name__)
    raw = text if isinstance(text, str) else ""

    extraction = extract_structure(raw, opener=opener)
    current = extraction.text
    transformation: str | None = None
    attempts: list[ParseAttempt] = []
    state = ParserState.PARSING

    while True:
        attempt_number = len(attempts) + 1
        try:
            value = json.loads(current)
        except json.JSONDecodeError as exc:
            error = _structural_error(exc, current)
            attempts.append(
                ParseAttempt(
                    attempt_number=attempt_number,
                    input_text=current,
                    transformation=transformation,
                    error=error,
                )
            )
        except RecursionError:
            error = StructuralError(message="structure nested too deeply to parse")
            attempts.append(
                ParseAttempt(
                    attempt_number=attempt_number,
                    input_text=current,
                    transformation=transformation,
                    error=error,
                )
            )
        else:
            attempts.append(
                ParseAttempt(
                    attempt_number=attempt_number,
                    input_text=current,
                    transformation=transformation,
                    value=value,
                )
            )
            state = ParserState.SUCCEEDED
            if attempt_number > 1:
                log.info(
                    "structural_parse_repaired",
                    attempts=attempt_number,
                    transformation=transformation,
                )
            return ParseOutcome(
                state=state,
                raw_text=raw,
                attempts=tuple(attempts),
                value=value,
                truncated=extraction.truncated,
            )

        if attempt_number >= max_attempts:
            state = ParserState.EXHAUSTED
            log.warning(
                "structural_parse_exhausted",
                attempts=attempt_number,
                error=error.message,
                offset=error.offset,
                truncated=extraction.truncated,
            )
            return ParseOutcome(
                state=state,
                raw_text=raw,
                attempts=tuple(attempts),
                truncated=extraction.truncated,
                error=error,
            )

        state = ParserState.REPAIRING
        report = repair_with_report(current, opener=opener, logger=log)
        transformation = "+".join(report.applied) if report.applied else "noop"
        current = report.text
        state = ParserState.PARSING


def error_context(text: str, offset: int | None, *, radius: int = ERROR_CONTEXT_RADIUS) -> str:
    """Return ``text`` around ``offset`` for human diagnosis."""
    if offset is None:
        return text[: radius * 2]
    start = max(0, offset - radius)
    end = min(len(text), offset + radius)
    return text[start:end]


def _structural_error(exc: json.JSONDecodeError, text: str) -> StructuralError:
    return StructuralError(
        message=exc.msg,
        offset=exc.pos,
        line=exc.lineno,
        column=exc.colno,
        context=error_context(text, exc.pos),
    )


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "ParseOutcome",
    "ParserState",
    "error_context",
    "parse_structure",
]
