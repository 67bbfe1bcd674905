"""Build the single repair prompt sent after a failed validation."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Final

from case_forge.synthesis.prompt_templates import PromptTemplateEngine

CASE_SUBJECT_TYPE: Final[str] = "CASE"
EXPAND_TRIGGERS: Final[tuple[str, ...]] = ("too short", "too few", "need at least")

_REPAIR_TEMPLATE: Final[str] = "repair"
_REPAIR_VARIABLES: Final[tuple[str, ...]] = (
    "expand",
    "original_prompt",
    "subject_name",
    "subject_type",
    "violations",
)


def needs_expansion(violations: Sequence[str]) -> bool:
    """True when any violation reports content below a size threshold."""
    return any(
        trigger in violation.lower() for violation in violations for trigger in EXPAND_TRIGGERS
    )


def build_repair_prompt(
    original_prompt: str,
    violations: Sequence[str],
    *,
    subject_name: str,
    subject_type: str,
    engine: PromptTemplateEngine | None = None,
) -> str:
    templates = engine if engine is not None else PromptTemplateEngine()
    rendered = templates.render(
        _REPAIR_TEMPLATE,
        variables={
            "original_prompt": original_prompt,
            "violations": [str(item) for item in violations],
            "expand": needs_expansion(violations),
            "subject_name": subject_name,
            "subject_type": subject_type,
        },
        allowed_variables=_REPAIR_VARIABLES,
    )
    return rendered.prompt


__all__ = ["CASE_SUBJECT_TYPE", "EXPAND_TRIGGERS", "build_repair_prompt", "needs_expansion"]
