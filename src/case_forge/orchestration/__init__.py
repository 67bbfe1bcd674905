"""
case-forge — orchestration

File: src/case_forge/orchestration/__init__.py
Last updated: 2026-10-17

Purpose
- Generation orchestrator, per-asset sub-pipeline and config-driven wiring.
"""

from case_forge.orchestration.asset_pipeline import AssetContext, AssetMode, AssetPipeline
from case_forge.orchestration.factory import (
    build_orchestrator,
    build_providers,
    generate_case,
    resolve_thresholds,
)
from case_forge.orchestration.orchestrator import (
    CaseGenerationOrchestrator,
    OrchestratorState,
    PipelineSettings,
    worst_case_latency_seconds,
)

__all__ = [
    "AssetContext",
    "AssetMode",
    "AssetPipeline",
    "CaseGenerationOrchestrator",
    "OrchestratorState",
    "PipelineSettings",
    "build_orchestrator",
    "build_providers",
    "generate_case",
    "resolve_thresholds",
    "worst_case_latency_seconds",
]
