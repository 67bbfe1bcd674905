"""Bounded parse/repair loop behavior, including adversarial input."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from case_forge.domain.errors import StructuralParseError
from case_forge.parsing.structural_parser import ParserState, error_context, parse_structure


@pytest.mark.unit
def test_clean_json_parses_on_first_attempt() -> None:
    outcome = parse_structure('{"a": 1}')

    assert outcome.ok
    assert outcome.state is ParserState.SUCCEEDED
    assert outcome.value == {"a": 1}
    assert len(outcome.attempts) == 1
    assert outcome.repaired is False


@pytest.mark.unit
def test_fenced_preamble_with_trailing_comma_is_repaired() -> None:
    outcome = parse_structure('Here is your data: ```json\n{"a":1,}\n```')

    assert outcome.ok
    assert outcome.value == {"a": 1}
    assert outcome.repaired is True
    assert outcome.attempts[1].transformation is not None
    assert "trailing_commas" in outcome.attempts[1].transformation


@pytest.mark.unit
def test_exhaustion_records_structural_error() -> None:
    outcome = parse_structure("{this is not json at all", max_attempts=2)

    assert outcome.state is ParserState.EXHAUSTED
    assert not outcome.ok
    assert len(outcome.attempts) == 2
    assert outcome.truncated is True
    assert outcome.error is not None
    assert outcome.error.offset is not None
    with pytest.raises(StructuralParseError, match="truncated") as excinfo:
        outcome.raise_for_failure()
    assert excinfo.value.raw_preview == "{this is not json at all"


@pytest.mark.unit
def test_array_root_parses_with_bracket_opener() -> None:
    outcome = parse_structure("Data:\n[1, 2, 3,]", opener="[")

    assert outcome.ok
    assert outcome.value == [1, 2, 3]


@pytest.mark.unit
@pytest.mark.parametrize("bad", [0, -1, True, 1.5])
def test_rejects_invalid_attempt_ceiling(bad: object) -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        parse_structure("{}", max_attempts=bad)  # type: ignore[arg-type]


@pytest.mark.unit
def test_error_context_is_bounded_by_radius() -> None:
    text = "x" * 1000

    assert len(error_context(text, 500, radius=150)) == 300
    assert error_context(text, None, radius=10) == "x" * 20


@pytest.mark.unit
@settings(max_examples=30, deadline=None)
@given(text=st.text(max_size=300), max_attempts=st.integers(min_value=1, max_value=5))
def test_attempts_never_exceed_ceiling_for_arbitrary_text(text: str, max_attempts: int) -> None:
    outcome = parse_structure(text, max_attempts=max_attempts)

    assert 1 <= len(outcome.attempts) <= max_attempts
    assert outcome.ok == (outcome.state is ParserState.SUCCEEDED)
    if not outcome.ok:
        assert outcome.error is not None
