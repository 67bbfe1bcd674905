"""Numeric quality thresholds for case and asset validation.

Defaults describe the production quality bar. Every field can be overridden
through the ``[validation]`` config section or a YAML rules file::

    # rules.yaml
    prose_min_words: 1200
    deck_max_slides: 18
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml


@dataclass(frozen=True, slots=True)
class ValidationThresholds:
    # Presentation decks
    deck_min_slides: int = 12
    deck_max_slides: int = 16
    # Tabular documents (header row included in the row count)
    table_min_rows: int = 17
    table_min_columns: int = 2
    # Stakeholder profiles
    profiles_min_items: int = 5
    profiles_max_items: int = 7
    profile_min_concerns: int = 3
    profile_min_motivations: int = 3
    profile_min_objections: int = 2
    # Market series
    series_min_items: int = 24
    series_min_numeric_keys: int = 2
    # Org charts
    org_min_nodes: int = 12
    org_max_nodes: int = 20
    # Prose documents
    prose_min_words: int = 900
    prose_min_headings: int = 5
    # Whole case
    case_description_min_words: int = 800
    case_min_stages: int = 6
    case_max_stages: int = 8
    case_min_criteria: int = 8
    case_min_datasets: int = 3
    case_min_files: int = 3

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{item.name} must be a non-negative integer, got {value!r}")
        for low, high in (
            ("deck_min_slides", "deck_max_slides"),
            ("profiles_min_items", "profiles_max_items"),
            ("org_min_nodes", "org_max_nodes"),
            ("case_min_stages", "case_max_stages"),
        ):
            if getattr(self, low) > getattr(self, high):
                raise ValueError(f"{low} must not exceed {high}")

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(item.name for item in fields(cls))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ValidationThresholds:
        """Build thresholds from ``data``; unknown keys are rejected."""
        return cls().with_overrides(data)

    def with_overrides(self, data: Mapping[str, Any]) -> ValidationThresholds:
        if not isinstance(data, Mapping):
            raise ValueError(f"threshold overrides must be a mapping, got {type(data).__name__}")
        known = set(self.field_names())
        unknown = sorted(str(key) for key in data if key not in known)
        if unknown:
            raise ValueError(f"unknown threshold keys: {', '.join(unknown)}")
        return replace(self, **dict(data))

    def to_dict(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in self.field_names()}


def load_rules_file(path: str | Path) -> dict[str, Any]:
    """Read threshold overrides from a YAML mapping file."""
    rules_path = Path(path)
    try:
        loaded = yaml.safe_load(rules_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValueError(f"unable to read rules file {rules_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid YAML in rules file {rules_path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"rules file {rules_path} must contain a mapping at the top level")
    thresholds = loaded.get("thresholds", loaded)
    if not isinstance(thresholds, dict):
        raise ValueError(f"rules file {rules_path}: 'thresholds' must be a mapping")
    return thresholds


DEFAULT_THRESHOLDS = ValidationThresholds()

__all__ = ["DEFAULT_THRESHOLDS", "ValidationThresholds", "load_rules_file"]
