"""Prompt rendering, repair prompts and text generation over external providers."""

from case_forge.synthesis.case_prompts import CasePromptBuilder, PhasePrompt
from case_forge.synthesis.generator import (
    GenerationResult,
    ProviderTextGenerator,
    TextGenerator,
    UsageTracker,
)
from case_forge.synthesis.prompt_templates import PromptTemplateEngine, RenderedPrompt
from case_forge.synthesis.repair_prompt import build_repair_prompt

__all__ = [
    "CasePromptBuilder",
    "GenerationResult",
    "PhasePrompt",
    "PromptTemplateEngine",
    "ProviderTextGenerator",
    "RenderedPrompt",
    "TextGenerator",
    "UsageTracker",
    "build_repair_prompt",
]
