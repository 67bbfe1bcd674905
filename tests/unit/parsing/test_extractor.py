from __future__ import annotations

import json

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from case_forge.parsing.extractor import extract_structure, strip_code_fences

_json_scalars = st.none() | st.booleans() | st.integers() | st.text(max_size=20)
_json_objects = st.dictionaries(
    st.text(max_size=10),
    st.recursive(
        _json_scalars,
        lambda children: st.lists(children, max_size=4)
        | st.dictionaries(st.text(max_size=8), children, max_size=4),
        max_leaves=12,
    ),
    max_size=6,
)


@pytest.mark.unit
def test_strip_code_fences_drops_language_fence_and_closer() -> None:
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences("  plain text  ") == "plain text"


@pytest.mark.unit
def test_extracts_object_after_prose_preamble() -> None:
    result = extract_structure('Here is your data: {"a": {"b": [1, 2]}} Hope it helps!')

    assert result.found
    assert result.text == '{"a": {"b": [1, 2]}}'
    assert result.truncated is False


@pytest.mark.unit
def test_braces_inside_strings_do_not_change_depth() -> None:
    text = '{"note": "use } and { freely", "escaped": "a \\" } quote"} trailing'

    result = extract_structure(text)

    assert json.loads(result.text) == {"note": "use } and { freely", "escaped": 'a " } quote'}


@pytest.mark.unit
def test_unbalanced_structure_is_flagged_truncated() -> None:
    result = extract_structure('{"items": [1, 2, 3')

    assert result.truncated is True
    assert result.text == '{"items": [1, 2, 3'


@pytest.mark.unit
def test_array_opener_extracts_array_root() -> None:
    result = extract_structure('Result:\n[{"a": 1}, {"b": 2}]\n', opener="[")

    assert json.loads(result.text) == [{"a": 1}, {"b": 2}]


@pytest.mark.unit
def test_missing_opener_returns_cleaned_text() -> None:
    result = extract_structure("no structure here")

    assert not result.found
    assert result.text == "no structure here"


@pytest.mark.unit
def test_rejects_unknown_opener() -> None:
    with pytest.raises(ValueError, match="opener"):
        extract_structure("{}", opener="(")


@pytest.mark.unit
@settings(max_examples=30, deadline=None)
@given(payload=_json_objects, preamble=st.sampled_from(["", "Here is your data: ", "Sure!\n"]))
def test_extraction_recovers_serialized_objects(payload: dict[str, object], preamble: str) -> None:
    text = f"{preamble}```json\n{json.dumps(payload)}\n```"

    result = extract_structure(text)

    assert result.truncated is False
    assert json.loads(result.text) == payload
