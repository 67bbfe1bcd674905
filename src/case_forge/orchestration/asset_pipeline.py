"""
case-forge — per-asset sub-pipeline

File: src/case_forge/orchestration/asset_pipeline.py
Last updated: 2026-10-17

Purpose
- Fill every declared case file of a persisted case: generate, validate,
  repair once, persist, verify, mirror.

Functional requirements
- Assets are processed one at a time, in declaration order.
- A failing asset never stops the remaining ones.
- ``warn`` mode persists assets that are still invalid after repair and flags
  them; ``strict`` mode leaves them unpersisted and reports failure.
- Verification re-fetch and mirroring are best effort: failures are logged
  and never roll back the persisted row.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from case_forge.domain.events import EventType
from case_forge.domain.models import (
    AssetGenerationResult,
    Blueprint,
    CaseFileDraft,
    GenerationOptions,
    GenerationPhase,
    ValidationResult,
)
from case_forge.observability.events import EventBus
from case_forge.observability.logging import correlation_scope
from case_forge.orchestration.calls import generate_with_timeout
from case_forge.persistence.case_store import CaseFileRecord, CaseStore
from case_forge.persistence.mirror import MirrorStore
from case_forge.synthesis.case_prompts import CasePromptBuilder
from case_forge.synthesis.generator import TextGenerator
from case_forge.synthesis.repair_prompt import build_repair_prompt
from case_forge.validation.content import validate_asset
from case_forge.validation.thresholds import DEFAULT_THRESHOLDS, ValidationThresholds


class AssetMode(StrEnum):
    WARN = "warn"
    STRICT = "strict"


@dataclass(frozen=True, slots=True)
class AssetContext:
    """Case-level facts every asset prompt is grounded in."""

    case_title: str
    blueprint: Blueprint
    competency_name: str
    options: GenerationOptions = field(default_factory=GenerationOptions)
    correlation_id: str | None = None


@dataclass(frozen=True, slots=True)
class _AssetOutcome:
    validation: ValidationResult
    repaired: bool


class AssetPipeline:
    def __init__(
        self,
        *,
        generator: TextGenerator,
        store: CaseStore,
        prompts: CasePromptBuilder | None = None,
        mirror: MirrorStore | None = None,
        thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
        mode: AssetMode | str = AssetMode.WARN,
        call_timeout_seconds: float = 120.0,
        events: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._generator = generator
        self._store = store
        self._prompts = prompts if prompts is not None else CasePromptBuilder(thresholds=thresholds)
        self._mirror = mirror
        self._thresholds = thresholds
        self._mode = AssetMode(mode)
        self._call_timeout_seconds = call_timeout_seconds
        self._events = events
        self._log = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def mode(self) -> AssetMode:
        return self._mode

    async def run(
        self,
        case_id: str,
        files: Sequence[CaseFileDraft],
        context: AssetContext,
        *,
        force: bool = False,
    ) -> tuple[AssetGenerationResult, ...]:
        """Process ``files`` sequentially; populated files are skipped unless ``force``."""
        results: list[AssetGenerationResult] = []
        for case_file in files:
            with correlation_scope(case_id=case_id, file_id=case_file.file_id):
                if case_file.is_populated and not force:
                    self._log.info("asset_skipped", reason="already_populated")
                    results.append(
                        AssetGenerationResult(
                            file_id=case_file.file_id,
                            success=True,
                            content_length=len(case_file.content),
                            skipped=True,
                        )
                    )
                    continue
                results.append(await self._process_safely(case_id, case_file, context))
        return tuple(results)

    async def _process_safely(
        self, case_id: str, case_file: CaseFileDraft, context: AssetContext
    ) -> AssetGenerationResult:
        try:
            return await self._process(case_id, case_file, context)
        except Exception as exc:  # noqa: BLE001
            self._log.error(
                "asset_failed",
                file_type=case_file.file_type.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._emit(
                EventType.ASSET_FAILED,
                {
                    "case_id": case_id,
                    "file_id": case_file.file_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc)[:500],
                },
                context,
            )
            return AssetGenerationResult(
                file_id=case_file.file_id,
                success=False,
                error=str(exc) or type(exc).__name__,
            )

    async def _process(
        self, case_id: str, case_file: CaseFileDraft, context: AssetContext
    ) -> AssetGenerationResult:
        await self._emit(
            EventType.ASSET_STARTED,
            {
                "case_id": case_id,
                "file_id": case_file.file_id,
                "file_type": case_file.file_type.value,
            },
            context,
        )
        outcome = await self._generate_validated(case_id, case_file, context)
        validation = outcome.validation
        violations = validation.violations

        if not validation.valid and self._mode is AssetMode.STRICT:
            self._log.warning("asset_rejected_strict", violations=list(violations))
            await self._emit(
                EventType.ASSET_FAILED,
                {
                    "case_id": case_id,
                    "file_id": case_file.file_id,
                    "error_type": "AssetValidationFailed",
                    "violation_count": len(violations),
                },
                context,
            )
            return AssetGenerationResult(
                file_id=case_file.file_id,
                success=False,
                violations=violations,
                content_length=len(validation.content),
                error="asset failed validation in strict mode",
                repaired=outcome.repaired,
            )

        record = CaseFileRecord(
            file_id=case_file.file_id,
            file_name=case_file.file_name,
            file_type=case_file.file_type,
            content=validation.content,
            violations=violations,
        )
        await asyncio.to_thread(self._store.upsert_case_file, case_id, record)
        await self._emit(
            EventType.ASSET_PERSISTED,
            {
                "case_id": case_id,
                "file_id": case_file.file_id,
                "size": record.size,
                "violation_count": len(violations),
            },
            context,
        )
        await self._verify(case_id, record)
        mirrored = await self._mirror_copy(case_id, case_file, record.content, context)

        if violations:
            self._log.warning("asset_persisted_with_violations", violations=list(violations))
        else:
            self._log.info("asset_persisted", size=record.size)
        return AssetGenerationResult(
            file_id=case_file.file_id,
            success=True,
            violations=violations,
            content_length=len(record.content),
            repaired=outcome.repaired,
            mirrored=mirrored,
        )

    async def _generate_validated(
        self, case_id: str, case_file: CaseFileDraft, context: AssetContext
    ) -> _AssetOutcome:
        prompt = self._prompts.asset(
            case_file,
            case_title=context.case_title,
            blueprint=context.blueprint,
            competency_name=context.competency_name,
        )
        first = await generate_with_timeout(
            self._generator,
            prompt.prompt,
            system=prompt.system,
            options=context.options,
            timeout_seconds=self._call_timeout_seconds,
            phase=GenerationPhase.ASSET,
        )
        validation = validate_asset(first.text, case_file.file_type, thresholds=self._thresholds)
        await self._emit(
            EventType.ASSET_VALIDATED,
            {
                "case_id": case_id,
                "file_id": case_file.file_id,
                "valid": validation.valid,
                "violation_count": len(validation.violations),
                "repair": False,
            },
            context,
        )
        if validation.valid:
            return _AssetOutcome(validation=validation, repaired=False)

        self._log.warning("asset_validation_failed", violations=list(validation.violations))
        await self._emit(
            EventType.ASSET_REPAIR_REQUESTED,
            {
                "case_id": case_id,
                "file_id": case_file.file_id,
                "violation_count": len(validation.violations),
            },
            context,
        )
        repair_prompt = build_repair_prompt(
            prompt.prompt,
            validation.violations,
            subject_name=case_file.file_name,
            subject_type=case_file.file_type.value,
            engine=self._prompts.engine,
        )
        try:
            second = await generate_with_timeout(
                self._generator,
                repair_prompt,
                system=prompt.system,
                options=context.options,
                timeout_seconds=self._call_timeout_seconds,
                phase=GenerationPhase.ASSET_REPAIR,
            )
        except Exception as exc:  # noqa: BLE001
            # The first attempt's content stands when the repair call itself fails.
            self._log.warning(
                "asset_repair_call_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return _AssetOutcome(validation=validation, repaired=False)

        revalidated = validate_asset(
            second.text, case_file.file_type, thresholds=self._thresholds
        )
        await self._emit(
            EventType.ASSET_VALIDATED,
            {
                "case_id": case_id,
                "file_id": case_file.file_id,
                "valid": revalidated.valid,
                "violation_count": len(revalidated.violations),
                "repair": True,
            },
            context,
        )
        return _AssetOutcome(validation=revalidated, repaired=True)

    async def _verify(self, case_id: str, record: CaseFileRecord) -> None:
        try:
            stored = await asyncio.to_thread(self._store.get_case_file, case_id, record.file_id)
        except Exception as exc:  # noqa: BLE001
            self._log.warning(
                "asset_verify_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return
        if stored is None:
            self._log.warning("asset_verify_failed", reason="row_missing")
        elif stored.content != record.content:
            self._log.warning(
                "asset_verify_failed",
                reason="content_mismatch",
                expected_size=record.size,
                stored_size=stored.size,
            )

    async def _mirror_copy(
        self,
        case_id: str,
        case_file: CaseFileDraft,
        content: str,
        context: AssetContext,
    ) -> bool:
        if self._mirror is None:
            return False
        try:
            path = await asyncio.to_thread(
                self._mirror.write,
                case_id,
                case_file.base_name,
                case_file.file_type.extension,
                content,
            )
        except Exception as exc:  # noqa: BLE001
            self._log.warning(
                "asset_mirror_failed", error_type=type(exc).__name__, error=str(exc)
            )
            await self._emit(
                EventType.ASSET_MIRROR_FAILED,
                {
                    "case_id": case_id,
                    "file_id": case_file.file_id,
                    "error_type": type(exc).__name__,
                },
                context,
            )
            return False
        self._log.debug("asset_mirrored", path=path.as_posix())
        return True

    async def _emit(
        self, event_type: EventType, payload: dict[str, object], context: AssetContext
    ) -> None:
        if self._events is None:
            return
        await self._events.emit_async(event_type, payload, correlation_id=context.correlation_id)


__all__ = ["AssetContext", "AssetMode", "AssetPipeline"]
