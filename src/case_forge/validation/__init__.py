"""Threshold-based validation of generated cases and assets."""

from case_forge.validation.case_rules import validate_case
from case_forge.validation.content import classify_content, validate_asset
from case_forge.validation.thresholds import DEFAULT_THRESHOLDS, ValidationThresholds

__all__ = [
    "DEFAULT_THRESHOLDS",
    "ValidationThresholds",
    "classify_content",
    "validate_asset",
    "validate_case",
]
