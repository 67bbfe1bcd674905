"""Schema validation, profile overlays and threshold extraction."""

from __future__ import annotations

import pytest

from case_forge.config.schema import (
    ConfigValidationError,
    apply_profile_overlay,
    default_config,
    merge_config,
    thresholds_from_config,
    validate_config,
)
from case_forge.validation.thresholds import DEFAULT_THRESHOLDS


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


@pytest.mark.unit
def test_defaults_are_valid() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert result.config["generation"]["backoff_cap_seconds"] == 8.0


@pytest.mark.unit
def test_default_config_is_a_fresh_copy() -> None:
    config = default_config()
    config["providers"]["fallback_order"].append("mistral")

    assert default_config()["providers"]["fallback_order"] == ["openai", "anthropic"]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("overlay", "path"),
    [
        ({"generation": {"max_document_attempts": 0}}, "generation.max_document_attempts"),
        ({"generation": {"backoff_jitter_ratio": 1.5}}, "generation.backoff_jitter_ratio"),
        ({"generation": {"call_timeout_seconds": 0}}, "generation.call_timeout_seconds"),
        ({"generation": {"backoff_base_seconds": 10.0}}, "generation.backoff_base_seconds"),
        ({"validation": {"asset_mode": "lenient"}}, "validation.asset_mode"),
        ({"providers": {"default": "mistral"}}, "providers.default"),
        ({"providers": {"fallback_order": ["anthropic"]}}, "providers.fallback_order"),
        ({"providers": {"openai": {"api_key_env": "lowercase"}}}, "providers.openai.api_key_env"),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level"),
        ({"surprise": {}}, "surprise"),
    ],
)
def test_invalid_values_report_field_paths(overlay: dict[str, object], path: str) -> None:
    assert path in _issue_paths(merge_config(default_config(), overlay))


@pytest.mark.unit
def test_threshold_ranges_are_checked() -> None:
    config = merge_config(
        default_config(), {"validation": {"thresholds": {"deck_min_slides": 20}}}
    )

    result = validate_config(config)

    assert not result.is_valid
    assert result.issues[0].path == "validation.thresholds"
    assert "deck_min_slides must not exceed deck_max_slides" in result.issues[0].message


@pytest.mark.unit
def test_profiles_overlay_and_reject_nested_meta() -> None:
    config = merge_config(
        default_config(),
        {"profiles": {"fast": {"generation": {"max_document_attempts": 1}}}},
    )

    overlaid = apply_profile_overlay(config, "fast")
    assert overlaid["generation"]["max_document_attempts"] == 1
    assert apply_profile_overlay(config, None)["generation"]["max_document_attempts"] == 3

    bad = merge_config(default_config(), {"profiles": {"fast": {"meta": {"schema_version": 1}}}})
    assert "profiles.fast.meta" in _issue_paths(bad)
    with pytest.raises(ConfigValidationError):
        apply_profile_overlay(default_config(), "missing")


@pytest.mark.unit
def test_schema_version_mismatch_gives_guidance() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": 99}})

    result = validate_config(config)

    assert result.issues[0].path == "meta.schema_version"
    assert "newer than supported" in result.issues[0].message


@pytest.mark.unit
def test_thresholds_from_config_merges_overrides() -> None:
    config = merge_config(default_config(), {"validation": {"thresholds": {"prose_min_words": 600}}})

    thresholds = thresholds_from_config(config)

    assert thresholds.prose_min_words == 600
    assert thresholds.deck_min_slides == DEFAULT_THRESHOLDS.deck_min_slides
    assert thresholds_from_config({}) is DEFAULT_THRESHOLDS
