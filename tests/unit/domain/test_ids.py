from __future__ import annotations

import pytest

from case_forge.domain import ids


def test_default_case_id_embeds_blueprint_and_timestamp() -> None:
    case_id = ids.default_case_id("bp_demo", timestamp_ms=1_700_000_000_000)

    assert case_id == "cs_bp_demo_1700000000000"
    ids.validate_case_id(case_id)


@pytest.mark.parametrize("bad", ["", "ab", "x/../y", "has space", "a" * 129])
def test_validate_case_id_rejects_unsafe_values(bad: str) -> None:
    with pytest.raises(ValueError, match="case_id"):
        ids.validate_case_id(bad)


def test_default_case_id_requires_blueprint() -> None:
    with pytest.raises(ValueError, match="blueprint_id"):
        ids.default_case_id("  ")


def test_slugify_collapses_non_alphanumeric_runs() -> None:
    assert ids.slugify("Strategic Thinking") == "strategic_thinking"
    assert ids.slugify("Q3 -- Board/Memo.md") == "q3_board_memo_md"
    assert ids.slugify_file_id("Board Memo.md") == "board_memo_md"
    with pytest.raises(ValueError):
        ids.slugify_file_id("!!!")


def test_prefixed_ids_round_trip_and_validate() -> None:
    run_id = ids.generate_run_id(timestamp_ms=0, randbytes=lambda size: b"\x00" * size)

    assert run_id == "run-" + "0" * 26
    ids.validate_run_id(run_id)
    ids.validate_event_id(ids.generate_event_id())
    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_event_id(run_id)
    with pytest.raises(ValueError, match="ULID"):
        ids.validate_run_id("run-not-a-ulid")


def test_run_ids_sort_by_creation_time() -> None:
    earlier = ids.generate_run_id(timestamp_ms=1_000)
    later = ids.generate_run_id(timestamp_ms=2_000)

    assert earlier < later
    assert len(earlier) == len("run-") + ids.ULID_LENGTH
