from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from case_forge.validation.thresholds import DEFAULT_THRESHOLDS, ValidationThresholds, load_rules_file

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.unit
def test_defaults_match_production_quality_bar() -> None:
    assert DEFAULT_THRESHOLDS.deck_min_slides == 12
    assert DEFAULT_THRESHOLDS.deck_max_slides == 16
    assert DEFAULT_THRESHOLDS.table_min_rows == 17
    assert DEFAULT_THRESHOLDS.prose_min_words == 900
    assert DEFAULT_THRESHOLDS.case_description_min_words == 800


@pytest.mark.unit
def test_overrides_reject_unknown_keys_and_inverted_ranges() -> None:
    with pytest.raises(ValueError, match="unknown threshold keys: slides"):
        DEFAULT_THRESHOLDS.with_overrides({"slides": 3})
    with pytest.raises(ValueError, match="must not exceed"):
        ValidationThresholds(deck_min_slides=20)
    with pytest.raises(ValueError, match="non-negative"):
        ValidationThresholds(prose_min_words=-1)


@pytest.mark.unit
def test_from_mapping_round_trips_through_to_dict() -> None:
    thresholds = ValidationThresholds.from_mapping({"prose_min_words": 1200})

    assert thresholds.prose_min_words == 1200
    assert ValidationThresholds.from_mapping(thresholds.to_dict()) == thresholds


@pytest.mark.unit
def test_rules_file_accepts_bare_or_nested_mapping(tmp_path: Path) -> None:
    bare = tmp_path / "bare.yaml"
    bare.write_text("prose_min_words: 1200\ndeck_max_slides: 18\n", encoding="utf-8")
    nested = tmp_path / "nested.yaml"
    nested.write_text("thresholds:\n  table_min_rows: 25\n", encoding="utf-8")

    assert load_rules_file(bare) == {"prose_min_words": 1200, "deck_max_slides": 18}
    assert load_rules_file(nested) == {"table_min_rows": 25}


@pytest.mark.unit
def test_rules_file_errors_are_value_errors(tmp_path: Path) -> None:
    listing = tmp_path / "list.yaml"
    listing.write_text("- 1\n- 2\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mapping"):
        load_rules_file(listing)
    with pytest.raises(ValueError, match="unable to read"):
        load_rules_file(tmp_path / "missing.yaml")
