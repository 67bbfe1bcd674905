"""
case-forge — asset content validation

File: src/case_forge/validation/content.py
Last updated: 2026-10-17

Purpose
- Classify generated asset text into a tagged content variant and check it
  against the quality thresholds for that variant.

Functional requirements
- One validator per variant, dispatched on the variant class.
- Content is fence-stripped before checks; the cleaned text is returned in the
  ValidationResult so callers persist what was validated.
- Structured variants that never parse produce a single ``Invalid JSON``
  violation instead of raising.

Non-functional requirements
- Deterministic and free of IO.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import singledispatch
from typing import Any, Final

from case_forge.constants import POWER_LEVELS, TIME_KEYS
from case_forge.domain.models import AssetType, ValidationResult
from case_forge.parsing.extractor import strip_code_fences
from case_forge.parsing.structural_parser import parse_structure
from case_forge.validation.thresholds import DEFAULT_THRESHOLDS, ValidationThresholds

PLACEHOLDER_RE: Final[re.Pattern[str]] = re.compile(r"\bPlaceholder\b|\[Placeholder", re.IGNORECASE)
PLACEHOLDER_VIOLATION: Final[str] = "Content contains placeholder text"

_FRONT_MATTER_RE: Final[re.Pattern[str]] = re.compile(r"^---\s*\n[\s\S]*?\n---\s*\n")
_SLIDE_SEPARATOR: Final[str] = "\n---\n"
_HEADING_RE: Final[re.Pattern[str]] = re.compile(r"^#{1,2}\s+.+$", re.MULTILINE)

_PROSE_TYPES: Final[frozenset[AssetType]] = frozenset(
    {
        AssetType.REPORT,
        AssetType.INTERNAL_MEMO,
        AssetType.PRESS_RELEASE,
        AssetType.LEGAL_DOCUMENT,
        AssetType.MEMO,
    }
)


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ContentVariant:
    asset_type: AssetType
    text: str


@dataclass(frozen=True, slots=True)
class SlideDeck(ContentVariant):
    pass


@dataclass(frozen=True, slots=True)
class TabularDocument(ContentVariant):
    pass


@dataclass(frozen=True, slots=True)
class FlatArrayDocument(ContentVariant):
    """JSON array asset; ``kind`` is ``profiles`` or ``series``."""

    kind: str = "series"


@dataclass(frozen=True, slots=True)
class HierarchicalDocument(ContentVariant):
    pass


@dataclass(frozen=True, slots=True)
class ProseDocument(ContentVariant):
    pass


def classify_content(content: str, asset_type: AssetType | str) -> ContentVariant:
    """Wrap fence-stripped ``content`` in the variant that ``asset_type`` maps to."""
    resolved = AssetType(asset_type)
    text = strip_code_fences(content if isinstance(content, str) else "")
    if resolved is AssetType.PRESENTATION_DECK:
        return SlideDeck(resolved, text)
    if resolved is AssetType.FINANCIAL_DATA:
        return TabularDocument(resolved, text)
    if resolved is AssetType.STAKEHOLDER_PROFILES:
        return FlatArrayDocument(resolved, _structured_text(text, opener="["), kind="profiles")
    if resolved is AssetType.MARKET_DATASET:
        return FlatArrayDocument(resolved, _structured_text(text, opener="["), kind="series")
    if resolved is AssetType.ORG_CHART:
        return HierarchicalDocument(resolved, _structured_text(text, opener="{"))
    if resolved in _PROSE_TYPES:
        return ProseDocument(resolved, text)
    raise ValueError(f"no content variant for asset type {resolved.value!r}")


def validate_asset(
    content: str,
    asset_type: AssetType | str,
    *,
    thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
) -> ValidationResult:
    variant = classify_content(content, asset_type)
    violations: list[str] = []
    if contains_placeholder(variant.text):
        violations.append(PLACEHOLDER_VIOLATION)
    violations.extend(check_variant(variant, thresholds))
    return ValidationResult.from_violations(
        variant.asset_type.value, violations, content=variant.text
    )


def contains_placeholder(text: str) -> bool:
    return PLACEHOLDER_RE.search(text) is not None


def count_words(text: str) -> int:
    return len(text.split())


# ---------------------------------------------------------------------------
# Per-variant validators
# ---------------------------------------------------------------------------


@singledispatch
def check_variant(variant: ContentVariant, thresholds: ValidationThresholds) -> list[str]:
    raise TypeError(f"unsupported content variant: {type(variant).__name__}")


@check_variant.register
def _check_slide_deck(variant: SlideDeck, thresholds: ValidationThresholds) -> list[str]:
    violations: list[str] = []
    if _FRONT_MATTER_RE.match(variant.text) is None:
        violations.append("Missing Marp front matter (must start with ---\\n...\\n---\\n)")
    slides = variant.text.count(_SLIDE_SEPARATOR) + 1
    if slides < thresholds.deck_min_slides:
        violations.append(
            f"Too few slides: found {slides}, need at least {thresholds.deck_min_slides}"
        )
    elif slides > thresholds.deck_max_slides:
        violations.append(
            f"Too many slides: found {slides}, need at most {thresholds.deck_max_slides}"
        )
    return violations


@check_variant.register
def _check_tabular(variant: TabularDocument, thresholds: ValidationThresholds) -> list[str]:
    lines = [line for line in variant.text.split("\n") if line.strip()]
    minimum = thresholds.table_min_rows
    if len(lines) < minimum:
        return [
            f"Insufficient rows: expected at least {minimum} "
            f"(1 header + {max(minimum - 1, 0)} data rows), got {len(lines)}"
        ]
    header = lines[0]
    if "," not in header:
        return ["CSV header missing or invalid (no commas found)"]
    columns = len(header.split(","))
    if columns < thresholds.table_min_columns:
        return [f"CSV header must have at least {thresholds.table_min_columns} columns"]
    return []


@check_variant.register
def _check_flat_array(variant: FlatArrayDocument, thresholds: ValidationThresholds) -> list[str]:
    value, error = _parse_json(variant.text, opener="[")
    if error is not None:
        return [error]
    if not isinstance(value, list):
        return ["Must be a top-level JSON array, not an object"]
    if variant.kind == "profiles":
        return _check_profiles(value, thresholds)
    return _check_series(value, thresholds)


@check_variant.register
def _check_hierarchy(variant: HierarchicalDocument, thresholds: ValidationThresholds) -> list[str]:
    value, error = _parse_json(variant.text, opener="{")
    if error is not None:
        return [error]
    if not isinstance(value, dict):
        return ["Must be a JSON object (not array)"]
    organization = value.get("organization")
    if not isinstance(organization, list):
        return ["Missing or invalid 'organization' array"]
    nodes = count_nodes(organization)
    if nodes < thresholds.org_min_nodes:
        return [
            f"Organization must have at least {thresholds.org_min_nodes} people, found {nodes}"
        ]
    if nodes > thresholds.org_max_nodes:
        return [f"Organization has too many people: {nodes}, maximum {thresholds.org_max_nodes}"]
    return []


@check_variant.register
def _check_prose(variant: ProseDocument, thresholds: ValidationThresholds) -> list[str]:
    violations: list[str] = []
    words = count_words(variant.text)
    if words < thresholds.prose_min_words:
        violations.append(
            f"Content too short: {words} words, need at least {thresholds.prose_min_words} words"
        )
    headings = len(_HEADING_RE.findall(variant.text))
    if headings < thresholds.prose_min_headings:
        violations.append(
            f"Too few headings: found {headings}, need at least {thresholds.prose_min_headings}"
        )
    return violations


def count_nodes(nodes: list[Any]) -> int:
    """Count nodes in a tree of ``children`` lists, including every root."""
    total = 0
    stack: list[Any] = list(nodes)
    while stack:
        node = stack.pop()
        total += 1
        if isinstance(node, Mapping):
            children = node.get("children")
            if isinstance(children, list):
                stack.extend(children)
    return total


def _check_profiles(items: list[Any], thresholds: ValidationThresholds) -> list[str]:
    violations: list[str] = []
    if not thresholds.profiles_min_items <= len(items) <= thresholds.profiles_max_items:
        violations.append(
            f"Array length must be {thresholds.profiles_min_items}-"
            f"{thresholds.profiles_max_items}, found {len(items)}"
        )
    allowed = ", ".join(f"'{level}'" for level in POWER_LEVELS)
    list_rules = (
        ("concerns", thresholds.profile_min_concerns),
        ("motivations", thresholds.profile_min_motivations),
        ("likely_objections", thresholds.profile_min_objections),
    )
    for index, raw in enumerate(items):
        item = raw if isinstance(raw, Mapping) else {}
        for key in ("name", "title", "role"):
            value = item.get(key)
            if not isinstance(value, str) or not value:
                violations.append(f"Item {index}: missing or invalid '{key}' field")
        for key in ("power", "influence"):
            if item.get(key) not in POWER_LEVELS:
                violations.append(
                    f"Item {index}: missing or invalid '{key}' field (must be one of {allowed})"
                )
        for key, minimum in list_rules:
            value = item.get(key)
            if not isinstance(value, list) or len(value) < minimum:
                violations.append(
                    f"Item {index}: '{key}' must be an array with at least {minimum} items"
                )
    return violations


def _check_series(items: list[Any], thresholds: ValidationThresholds) -> list[str]:
    violations: list[str] = []
    if len(items) < thresholds.series_min_items:
        violations.append(
            f"Array must have at least {thresholds.series_min_items} items, found {len(items)}"
        )
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            violations.append(f"Item {index}: must be an object")
            continue
        if not any(key in item for key in TIME_KEYS):
            violations.append(f"Item {index}: missing time key ({'/'.join(TIME_KEYS)})")
        numeric = [
            key
            for key, value in item.items()
            if key != "meta" and isinstance(value, (int, float)) and not isinstance(value, bool)
        ]
        if len(numeric) < thresholds.series_min_numeric_keys:
            violations.append(
                f"Item {index}: must have at least "
                f"{thresholds.series_min_numeric_keys} numeric metric keys"
            )
    return violations


def _structured_text(text: str, *, opener: str) -> str:
    # Extracted and repaired text replaces the raw text once it parses.
    outcome = parse_structure(text, opener=_root_opener(text, opener))
    parsed = outcome.parsed_text
    return parsed if parsed is not None else text


def _root_opener(text: str, default: str) -> str:
    # The first opener in the text decides the root shape.
    positions = [(text.find(char), char) for char in "{[" if char in text]
    return min(positions)[1] if positions else default


def _parse_json(text: str, *, opener: str) -> tuple[Any, str | None]:
    outcome = parse_structure(text, opener=_root_opener(text, opener))
    if outcome.ok:
        return outcome.value, None
    message = outcome.error.message if outcome.error is not None else "parse error"
    return None, f"Invalid JSON: {message}"


__all__ = [
    "ContentVariant",
    "FlatArrayDocument",
    "HierarchicalDocument",
    "PLACEHOLDER_RE",
    "PLACEHOLDER_VIOLATION",
    "ProseDocument",
    "SlideDeck",
    "TabularDocument",
    "check_variant",
    "classify_content",
    "contains_placeholder",
    "count_nodes",
    "count_words",
    "validate_asset",
]
