"""
case-forge — generation orchestrator

File: src/case_forge/orchestration/orchestrator.py
Last updated: 2026-10-18

Purpose
- Drive one generation request from blueprint to persisted case:
  outline, document attempts, whole-case validation with a single repair,
  atomic persistence, then the per-asset sub-pipeline.

Functional requirements
- Document attempts are bounded; structural failure after the last attempt
  is fatal and never routed to repair.
- The whole case is repaired at most once per run; a case still invalid
  after the repair is persisted with its violations attached.
- Failed outline and document calls are retried with backoff; permanent
  provider errors are not.
- Assets start only after the case and its file rows are committed.
- Every generator call is bounded by the call timeout; the run as a whole
  is bounded by ``max_run_seconds``, checked between phases.

Non-functional requirements
- Strictly sequential: one draft in flight, one asset at a time.
- Collaborators (generator, store, mirror, clock, sleep) are injected.
"""

from __future__ import annotations

import asyncio
import random as random_module
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final, NoReturn

import structlog

from case_forge.domain import ids
from case_forge.domain.errors import (
    CaseValidationError,
    DuplicateCaseError,
    GenerationCallError,
    InvalidRequestError,
    PermanentGenerationError,
    PipelineError,
    RunDeadlineExceededError,
    StructuralParseError,
    raw_preview,
)
from case_forge.domain.events import EventType
from case_forge.domain.models import (
    Blueprint,
    CaseDraft,
    CaseGenerationResult,
    GenerationOptions,
    GenerationPhase,
    GenerationRequest,
    RawGenerationOutput,
    TokenUsage,
)
from case_forge.observability.events import EventBus
from case_forge.observability.logging import correlation_scope
from case_forge.orchestration.asset_pipeline import AssetContext, AssetMode, AssetPipeline
from case_forge.orchestration.calls import generate_with_timeout
from case_forge.parsing.structural_parser import ParseOutcome, parse_structure
from case_forge.persistence.case_store import CaseFileRecord, CaseRecord, CaseStore
from case_forge.persistence.mirror import MirrorStore, case_storage_path
from case_forge.synthesis.case_prompts import CasePromptBuilder, PhasePrompt
from case_forge.synthesis.generator import GenerationResult, TextGenerator
from case_forge.synthesis.providers.base import BackoffConfig, compute_backoff_delay
from case_forge.synthesis.repair_prompt import CASE_SUBJECT_TYPE, build_repair_prompt
from case_forge.validation.case_rules import validate_case
from case_forge.validation.thresholds import DEFAULT_THRESHOLDS, ValidationThresholds

SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]
RandomFn = Callable[[], float]

_NOT_AN_OBJECT: Final[str] = "expected a JSON object at the document root"


class OrchestratorState(StrEnum):
    IDLE = "idle"
    OUTLINING = "outlining"
    GENERATING = "generating"
    VALIDATING = "validating"
    REPAIRING = "repairing"
    REVALIDATING_FINAL = "revalidating_final"
    PERSISTING = "persisting"
    ASSET_PIPELINE = "asset_pipeline"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Run limits and quality settings resolved from the ``generation``/``validation`` config."""

    max_document_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 8.0
    backoff_jitter_ratio: float = 0.1
    call_timeout_seconds: float = 120.0
    max_run_seconds: float = 1800.0
    parse_max_attempts: int = 3
    asset_mode: AssetMode = AssetMode.WARN
    thresholds: ValidationThresholds = DEFAULT_THRESHOLDS

    def __post_init__(self) -> None:
        if self.max_document_attempts < 1:
            raise ValueError("max_document_attempts must be >= 1")
        if self.parse_max_attempts < 1:
            raise ValueError("parse_max_attempts must be >= 1")
        if self.call_timeout_seconds <= 0 or self.max_run_seconds <= 0:
            raise ValueError("call_timeout_seconds and max_run_seconds must be > 0")
        object.__setattr__(self, "asset_mode", AssetMode(self.asset_mode))

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object],
        *,
        thresholds: ValidationThresholds | None = None,
    ) -> PipelineSettings:
        generation = _section(config, "generation")
        validation = _section(config, "validation")
        return cls(
            max_document_attempts=_as_int(
                generation.get("max_document_attempts"), default=3, minimum=1
            ),
            backoff_base_seconds=_as_float(
                generation.get("backoff_base_seconds"), default=1.0, minimum=0.0
            ),
            backoff_cap_seconds=_as_float(
                generation.get("backoff_cap_seconds"), default=8.0, minimum=0.0
            ),
            backoff_jitter_ratio=_as_float(
                generation.get("backoff_jitter_ratio"), default=0.1, minimum=0.0
            ),
            call_timeout_seconds=_as_float(
                generation.get("call_timeout_seconds"), default=120.0, minimum=0.001
            ),
            max_run_seconds=_as_float(
                generation.get("max_run_seconds"), default=1800.0, minimum=0.001
            ),
            parse_max_attempts=_as_int(generation.get("parse_max_attempts"), default=3, minimum=1),
            asset_mode=AssetMode(str(validation.get("asset_mode", AssetMode.WARN.value))),
            thresholds=thresholds if thresholds is not None else DEFAULT_THRESHOLDS,
        )

    @property
    def document_backoff(self) -> BackoffConfig:
        return BackoffConfig(
            max_retries=self.max_document_attempts - 1,
            initial_delay_seconds=min(self.backoff_base_seconds, self.backoff_cap_seconds),
            multiplier=2.0,
            max_delay_seconds=self.backoff_cap_seconds,
            jitter_ratio=min(self.backoff_jitter_ratio, 1.0),
        )


def worst_case_latency_seconds(
    settings: PipelineSettings | Mapping[str, object], file_count: int
) -> float:
    """Upper bound on a run's wall time.

    Counts every outline and document attempt, one repair round-trip and two
    calls per asset, each bounded by the call timeout, plus one capped backoff
    sleep per outline and document attempt.
    """
    resolved = (
        settings
        if isinstance(settings, PipelineSettings)
        else PipelineSettings.from_config(settings)
    )
    if file_count < 0:
        raise ValueError("file_count must be >= 0")
    calls = 2 * resolved.max_document_attempts + 1 + 2 * file_count
    sleeps = 2 * resolved.max_document_attempts * resolved.backoff_cap_seconds
    return calls * resolved.call_timeout_seconds + sleeps


class _UsageMeter:
    """TextGenerator wrapper that totals token usage across a run's calls."""

    def __init__(self, inner: TextGenerator) -> None:
        self._inner = inner
        self.total = TokenUsage()
        self.calls = 0

    async def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        options: GenerationOptions | None = None,
    ) -> GenerationResult:
        result = await self._inner.generate(prompt, system=system, options=options)
        self.calls += 1
        self.total = self.total + result.usage
        return result


class CaseGenerationOrchestrator:
    def __init__(
        self,
        *,
        generator: TextGenerator,
        store: CaseStore,
        mirror: MirrorStore | None = None,
        prompts: CasePromptBuilder | None = None,
        settings: PipelineSettings | None = None,
        events: EventBus | None = None,
        logger: Any | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
        random_fn: RandomFn = random_module.random,
    ) -> None:
        self._settings = settings if settings is not None else PipelineSettings()
        self._meter = _UsageMeter(generator)
        self._store = store
        if prompts is None:
            prompts = CasePromptBuilder(thresholds=self._settings.thresholds)
        self._prompts = prompts
        self._events = events
        self._log = logger if logger is not None else structlog.get_logger(__name__)
        self._sleep = sleep
        self._clock = clock
        self._random_fn = random_fn
        self._assets = AssetPipeline(
            generator=self._meter,
            store=store,
            prompts=self._prompts,
            mirror=mirror,
            thresholds=self._settings.thresholds,
            mode=self._settings.asset_mode,
            call_timeout_seconds=self._settings.call_timeout_seconds,
            events=events,
            logger=self._log,
        )
        self._state = OrchestratorState.IDLE
        self._started_at = 0.0
        self._correlation_id: str | None = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    async def run(
        self, request: GenerationRequest, *, run_id: str | None = None
    ) -> CaseGenerationResult:
        """Generate, validate, persist and fill one case; raises ``PipelineError`` on failure."""
        if not isinstance(request, GenerationRequest):
            raise InvalidRequestError(
                f"expected GenerationRequest, got {type(request).__name__}"
            )
        run_id = run_id if run_id is not None else ids.generate_run_id()
        self._correlation_id = run_id
        self._started_at = self._clock()
        usage_before = self._meter.total

        with correlation_scope(run_id=run_id):
            self._log.info(
                "run_started",
                blueprint_id=request.duplicate_key,
                arena_id=request.arena_id,
                competency=request.competency_name,
            )
            await self._emit(
                EventType.RUN_STARTED,
                {
                    "run_id": run_id,
                    "blueprint_id": request.duplicate_key,
                    "arena_id": request.arena_id,
                    "competency_name": request.competency_name,
                },
            )
            try:
                result = await self._run(request, usage_before)
            except Exception as exc:
                self._state = OrchestratorState.FAILED
                code = exc.code if isinstance(exc, PipelineError) else "unexpected_error"
                self._log.error(
                    "run_failed",
                    code=code,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                await self._emit(
                    EventType.RUN_FAILED,
                    {"run_id": run_id, "code": code, "error": str(exc)[:500]},
                )
                raise

            self._state = OrchestratorState.DONE
            self._log.info(
                "run_completed",
                case_id=result.case_id,
                repaired=result.repaired,
                asset_count=len(result.assets),
                failed_assets=list(result.failed_assets),
                total_tokens=result.usage.total_tokens,
            )
            await self._emit(
                EventType.RUN_COMPLETED,
                {
                    "run_id": run_id,
                    "case_id": result.case_id,
                    "repaired": result.repaired,
                    "asset_warnings": result.asset_warnings,
                    "failed_assets": list(result.failed_assets),
                },
            )
            return result

    async def _run(
        self, request: GenerationRequest, usage_before: TokenUsage
    ) -> CaseGenerationResult:
        blueprint = request.resolved_blueprint()
        case_id = self._resolve_case_id(request)
        existing = await asyncio.to_thread(self._store.find_by_blueprint, request.duplicate_key)
        if existing is not None:
            raise DuplicateCaseError(request.duplicate_key, existing_case_id=existing.id)

        with correlation_scope(case_id=case_id):
            self._state = OrchestratorState.OUTLINING
            outline = await self._generate_outline(request, blueprint)
            self._check_deadline("outline")

            case_prompt = self._prompts.case(
                blueprint,
                competency_name=request.competency_name,
                outline=outline,
                case_id=case_id,
            )
            payload = await self._generate_document(request, case_prompt)
            payload = _apply_overrides(payload, request, case_id)

            payload, repaired, violations = await self._validate_with_repair(
                request, blueprint, case_prompt, payload, case_id
            )
            draft = CaseDraft.from_payload(payload)
            self._check_deadline("validation")

            self._state = OrchestratorState.PERSISTING
            storage_path = case_storage_path(request.arena_id, request.competency_name, case_id)
            persisted, _files = await asyncio.to_thread(
                self._store.create_case_with_files,
                _case_record(request, blueprint, draft, case_id, storage_path, violations),
                [
                    CaseFileRecord(
                        file_id=item.file_id,
                        file_name=item.file_name,
                        file_type=item.file_type,
                        content=item.content,
                    )
                    for item in draft.files
                ],
            )
            await self._emit(
                EventType.CASE_PERSISTED,
                {
                    "case_id": persisted.id,
                    "storage_path": storage_path,
                    "file_count": len(draft.files),
                },
            )
            self._check_deadline("persistence")

            self._state = OrchestratorState.ASSET_PIPELINE
            assets = await self._assets.run(
                persisted.id,
                draft.files,
                AssetContext(
                    case_title=draft.title or blueprint.title,
                    blueprint=blueprint,
                    competency_name=request.competency_name,
                    options=request.options,
                    correlation_id=self._correlation_id,
                ),
            )
            final_draft = await self._fold_persisted_files(persisted.id, draft)

        usage = _usage_delta(self._meter.total, usage_before)
        return CaseGenerationResult(
            case_id=persisted.id,
            draft=final_draft,
            persisted=persisted,
            assets=assets,
            repaired=repaired,
            case_violations=violations,
            storage_path=storage_path,
            usage=usage,
        )

    async def _generate_outline(self, request: GenerationRequest, blueprint: Blueprint) -> str:
        prompt = self._prompts.outline(blueprint, competency_name=request.competency_name)
        attempts = self._settings.max_document_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._call(prompt, request.options, phase=GenerationPhase.OUTLINE)
                break
            except PermanentGenerationError:
                raise
            except GenerationCallError as exc:
                self._log_call_failure("outline", attempt, attempts, exc)
                if attempt >= attempts:
                    raise
            await self._back_off("outline", attempt)
        await self._emit(
            EventType.OUTLINE_GENERATED,
            {"chars": len(result.text), "model": result.model, "provider": result.provider},
        )
        return result.text

    async def _generate_document(
        self, request: GenerationRequest, prompt: PhasePrompt
    ) -> dict[str, Any]:
        settings = self._settings
        attempts = settings.max_document_attempts
        attempt = 0
        while True:
            attempt += 1
            self._state = OrchestratorState.GENERATING
            try:
                result = await self._call(prompt, request.options, phase=GenerationPhase.PRIMARY)
            except PermanentGenerationError:
                raise
            except GenerationCallError as exc:
                self._log_call_failure("document", attempt, attempts, exc)
                await self._emit(
                    EventType.DOCUMENT_ATTEMPT_FAILED,
                    {"attempt": attempt, "error": exc.message[:500], "truncated": False},
                )
                if attempt >= attempts:
                    raise
                await self._back_off("document", attempt)
                continue

            outcome = parse_structure(
                result.text, max_attempts=settings.parse_max_attempts, logger=self._log
            )
            if outcome.ok and isinstance(outcome.value, dict):
                await self._emit(
                    EventType.DOCUMENT_PARSED,
                    {
                        "attempt": attempt,
                        "parse_attempts": len(outcome.attempts),
                        "repaired": outcome.repaired,
                    },
                )
                return outcome.value

            message = outcome.error.message if outcome.error is not None else _NOT_AN_OBJECT
            self._log.warning(
                "document_attempt_failed",
                attempt=attempt,
                max_attempts=attempts,
                error=message,
                truncated=outcome.truncated,
            )
            await self._emit(
                EventType.DOCUMENT_ATTEMPT_FAILED,
                {
                    "attempt": attempt,
                    "error": message[:500],
                    "truncated": outcome.truncated,
                },
            )
            if attempt >= attempts:
                _raise_document_failure(outcome)
            await self._back_off("document", attempt)

    async def _back_off(self, phase: str, attempt: int) -> None:
        delay = compute_backoff_delay(
            retry_number=attempt, config=self._settings.document_backoff, random_fn=self._random_fn
        )
        await self._emit(
            EventType.GENERATION_RETRIED,
            {"phase": phase, "attempt": attempt, "delay_seconds": round(delay, 3)},
        )
        await self._sleep(delay)
        self._check_deadline(f"{phase} retry")

    def _log_call_failure(
        self, phase: str, attempt: int, attempts: int, exc: GenerationCallError
    ) -> None:
        self._log.warning(
            "generation_call_failed",
            phase=phase,
            attempt=attempt,
            max_attempts=attempts,
            code=exc.code,
            error=exc.message,
        )

    async def _validate_with_repair(
        self,
        request: GenerationRequest,
        blueprint: Blueprint,
        case_prompt: PhasePrompt,
        payload: dict[str, Any],
        case_id: str,
    ) -> tuple[dict[str, Any], bool, tuple[str, ...]]:
        """Validate once, repair at most once.

        Returns the payload to persist, whether a repair ran, and the violations
        still left on it. Only a repair that does not parse is fatal.
        """
        self._state = OrchestratorState.VALIDATING
        validation = validate_case(payload, thresholds=self._settings.thresholds)
        await self._emit_case_validated(
            case_id, validation.valid, validation.violations, repair=False
        )
        if validation.valid:
            return payload, False, ()

        self._state = OrchestratorState.REPAIRING
        self._log.warning("case_validation_failed", violations=list(validation.violations))
        await self._emit(
            EventType.CASE_REPAIR_REQUESTED,
            {"case_id": case_id, "violation_count": len(validation.violations)},
        )
        self._check_deadline("repair")
        title = payload.get("title")
        repair_prompt = PhasePrompt(
            system=case_prompt.system,
            prompt=build_repair_prompt(
                case_prompt.prompt,
                validation.violations,
                subject_name=title if isinstance(title, str) and title.strip() else blueprint.title,
                subject_type=CASE_SUBJECT_TYPE,
                engine=self._prompts.engine,
            ),
            prompt_hash="",
        )
        result = await self._call(repair_prompt, request.options, phase=GenerationPhase.REPAIR)
        outcome = parse_structure(
            result.text, max_attempts=self._settings.parse_max_attempts, logger=self._log
        )
        if not outcome.ok or not isinstance(outcome.value, dict):
            detail = outcome.error.message if outcome.error is not None else _NOT_AN_OBJECT
            raise CaseValidationError(
                "case still invalid after repair: repaired document did not parse",
                raw_preview=raw_preview(outcome.raw_text),
                violations=(*validation.violations, f"Repaired document did not parse: {detail}"),
            )

        self._state = OrchestratorState.REVALIDATING_FINAL
        repaired_payload = _apply_overrides(outcome.value, request, case_id)
        final = validate_case(repaired_payload, thresholds=self._settings.thresholds)
        await self._emit_case_validated(case_id, final.valid, final.violations, repair=True)
        if not final.valid:
            self._log.warning(
                "case_still_invalid_after_repair",
                violations=list(final.violations),
                initial_violations=len(validation.violations),
            )
            return repaired_payload, True, final.violations
        self._log.info("case_repaired", resolved_violations=len(validation.violations))
        return repaired_payload, True, ()

    async def _fold_persisted_files(self, case_id: str, draft: CaseDraft) -> CaseDraft:
        stored = await asyncio.to_thread(self._store.list_case_files, case_id)
        folded = draft
        declared = {item.file_id for item in draft.files}
        for item in stored:
            if item.file_id in declared and item.content:
                folded = folded.with_file_content(item.file_id, item.content)
        return folded

    async def _call(
        self, prompt: PhasePrompt, options: GenerationOptions, *, phase: GenerationPhase
    ) -> RawGenerationOutput:
        return await generate_with_timeout(
            self._meter,
            prompt.prompt,
            system=prompt.system,
            options=options,
            timeout_seconds=self._settings.call_timeout_seconds,
            phase=phase,
        )

    def _resolve_case_id(self, request: GenerationRequest) -> str:
        if request.case_id is not None:
            return request.case_id
        try:
            return ids.default_case_id(request.duplicate_key)
        except ValueError as exc:
            raise InvalidRequestError(
                f"cannot derive a case id from blueprint {request.duplicate_key!r}: {exc}"
            ) from exc

    def _check_deadline(self, phase: str) -> None:
        elapsed = self._clock() - self._started_at
        if elapsed > self._settings.max_run_seconds:
            raise RunDeadlineExceededError(
                f"run exceeded {self._settings.max_run_seconds:g}s after {phase} "
                f"(elapsed {elapsed:.1f}s)"
            )

    async def _emit_case_validated(
        self, case_id: str, valid: bool, violations: tuple[str, ...], *, repair: bool
    ) -> None:
        await self._emit(
            EventType.CASE_VALIDATED,
            {
                "case_id": case_id,
                "valid": valid,
                "violation_count": len(violations),
                "repair": repair,
            },
        )

    async def _emit(self, event_type: EventType, payload: dict[str, object]) -> None:
        if self._events is None:
            return
        await self._events.emit_async(event_type, payload, correlation_id=self._correlation_id)


def _apply_overrides(
    payload: Mapping[str, Any], request: GenerationRequest, case_id: str
) -> dict[str, Any]:
    document = dict(payload)
    document["caseId"] = case_id
    if request.difficulty is not None:
        document["difficulty"] = request.difficulty.value
    if request.estimated_duration is not None:
        document["estimatedDuration"] = request.estimated_duration
    document["status"] = "draft"
    return document


def _raise_document_failure(outcome: ParseOutcome) -> NoReturn:
    if not outcome.ok:
        outcome.raise_for_failure()
    raise StructuralParseError(_NOT_AN_OBJECT, raw_preview=raw_preview(outcome.raw_text))


def _case_record(
    request: GenerationRequest,
    blueprint: Blueprint,
    draft: CaseDraft,
    case_id: str,
    storage_path: str,
    violations: tuple[str, ...] = (),
) -> CaseRecord:
    minutes: int | None = None
    if draft.estimated_duration is not None and draft.estimated_duration >= 1:
        minutes = int(draft.estimated_duration)
    return CaseRecord(
        id=case_id,
        blueprint_id=request.duplicate_key,
        title=draft.title or blueprint.title,
        description=draft.description,
        arena_id=request.arena_id,
        competency_name=request.competency_name,
        storage_path=storage_path,
        document=draft.to_document(),
        difficulty=draft.difficulty,
        estimated_minutes=minutes,
        status="draft",
        created_by=request.created_by,
        violations=violations,
    )


def _usage_delta(after: TokenUsage, before: TokenUsage) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=max(0, after.prompt_tokens - before.prompt_tokens),
        completion_tokens=max(0, after.completion_tokens - before.completion_tokens),
        total_tokens=max(0, after.total_tokens - before.total_tokens),
    )


def _section(config: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = config.get(key)
    if isinstance(value, Mapping):
        return value
    return {}


def _as_int(value: object, *, default: int, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return max(value, minimum)


def _as_float(value: object, *, default: float, minimum: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(float(value), minimum)


__all__ = [
    "CaseGenerationOrchestrator",
    "OrchestratorState",
    "PipelineSettings",
    "worst_case_latency_seconds",
]
