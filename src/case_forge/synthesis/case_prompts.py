"""Prompt builders for the outline, case document and per-asset phases.

Each builder renders one packaged template and pairs it with the matching
system prompt from ``system.yaml``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from case_forge.constants import CASE_DOCUMENT_VERSION
from case_forge.domain.models import AssetType, Blueprint, CaseFileDraft
from case_forge.synthesis.prompt_templates import PromptTemplateEngine
from case_forge.validation.thresholds import DEFAULT_THRESHOLDS, ValidationThresholds

_OUTLINE_VARIABLES: Final[tuple[str, ...]] = (
    "assets",
    "blueprint_title",
    "challenge_type",
    "competency_name",
    "dilemma",
    "framework_step1",
    "framework_step2",
    "framework_step3",
    "task",
)
_CASE_VARIABLES: Final[tuple[str, ...]] = (
    "blueprint_title",
    "case_id",
    "challenge_type",
    "competency_name",
    "description_min_words",
    "dilemma",
    "file_types",
    "framework_content",
    "framework_step3",
    "max_stages",
    "min_criteria",
    "min_datasets",
    "min_files",
    "min_stages",
    "outline",
    "task",
    "version",
)
_ASSET_VARIABLES: Final[tuple[str, ...]] = (
    "asset_name",
    "asset_type",
    "blueprint_title",
    "case_title",
    "competency_name",
    "dilemma",
    "framework_step2",
    "output_format",
    "task",
    "thresholds",
)


@dataclass(frozen=True, slots=True)
class PhasePrompt:
    system: str
    prompt: str
    prompt_hash: str


class CasePromptBuilder:
    def __init__(
        self,
        *,
        engine: PromptTemplateEngine | None = None,
        thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
    ) -> None:
        self._engine = engine if engine is not None else PromptTemplateEngine()
        self._thresholds = thresholds

    @property
    def engine(self) -> PromptTemplateEngine:
        return self._engine

    def outline(self, blueprint: Blueprint, *, competency_name: str) -> PhasePrompt:
        rendered = self._engine.render(
            "outline",
            variables={
                **self._framework("framework_step1", "framework_step2", "framework_step3"),
                **_blueprint_variables(blueprint, competency_name),
                "assets": list(blueprint.assets) or ["(choose suitable case files)"],
            },
            allowed_variables=_OUTLINE_VARIABLES,
        )
        return PhasePrompt(
            system=self._engine.system_prompt("outline"),
            prompt=rendered.prompt,
            prompt_hash=rendered.prompt_hash,
        )

    def case(
        self,
        blueprint: Blueprint,
        *,
        competency_name: str,
        outline: str,
        case_id: str,
    ) -> PhasePrompt:
        limits = self._thresholds
        rendered = self._engine.render(
            "case",
            variables={
                **self._framework("framework_content", "framework_step3"),
                **_blueprint_variables(blueprint, competency_name),
                "outline": outline,
                "case_id": case_id,
                "version": CASE_DOCUMENT_VERSION,
                "description_min_words": limits.case_description_min_words,
                "file_types": [item.value for item in AssetType],
                "min_files": limits.case_min_files,
                "min_stages": limits.case_min_stages,
                "max_stages": limits.case_max_stages,
                "min_criteria": limits.case_min_criteria,
                "min_datasets": limits.case_min_datasets,
            },
            allowed_variables=_CASE_VARIABLES,
        )
        return PhasePrompt(
            system=self._engine.system_prompt("case"),
            prompt=rendered.prompt,
            prompt_hash=rendered.prompt_hash,
        )

    def asset(
        self,
        case_file: CaseFileDraft,
        *,
        case_title: str,
        blueprint: Blueprint,
        competency_name: str,
    ) -> PhasePrompt:
        rendered = self._engine.render(
            "asset",
            variables={
                **self._framework("framework_step2"),
                "case_title": case_title,
                "blueprint_title": blueprint.title,
                "competency_name": competency_name,
                "dilemma": blueprint.dilemma or "(see case description)",
                "task": blueprint.task or "(see case description)",
                "asset_name": case_file.file_name,
                "asset_type": case_file.file_type.value,
                "output_format": case_file.file_type.output_format,
                "thresholds": self._thresholds,
            },
            allowed_variables=_ASSET_VARIABLES,
        )
        return PhasePrompt(
            system=self._engine.system_prompt("asset"),
            prompt=rendered.prompt,
            prompt_hash=rendered.prompt_hash,
        )

    def _framework(self, *keys: str) -> dict[str, str]:
        return {key: self._engine.system_prompt(key) for key in keys}


def _blueprint_variables(blueprint: Blueprint, competency_name: str) -> dict[str, object]:
    return {
        "competency_name": competency_name,
        "challenge_type": blueprint.challenge_type,
        "blueprint_title": blueprint.title,
        "dilemma": blueprint.dilemma or "(derive from the blueprint title)",
        "task": blueprint.task or "(derive from the blueprint title)",
    }


__all__ = ["CasePromptBuilder", "PhasePrompt"]
