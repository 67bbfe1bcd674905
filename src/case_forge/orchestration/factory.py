"""Build a wired orchestrator from effective config, and the ``generate_case`` entry point."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog

from case_forge.config.loader import ConfigLoadError, load_config, provider_api_key
from case_forge.config.schema import thresholds_from_config
from case_forge.domain.errors import InvalidRequestError
from case_forge.domain.models import CaseGenerationResult, GenerationRequest
from case_forge.observability.events import EventBus
from case_forge.orchestration.orchestrator import CaseGenerationOrchestrator, PipelineSettings
from case_forge.persistence.case_store import CaseStore
from case_forge.persistence.mirror import LocalMirrorStore, MirrorStore
from case_forge.persistence.repositories import TokenUsageRepo
from case_forge.persistence.state_db import StateDB
from case_forge.synthesis.case_prompts import CasePromptBuilder
from case_forge.synthesis.generator import ProviderTextGenerator, TextGenerator, UsageTracker
from case_forge.synthesis.prompt_templates import PromptTemplateEngine
from case_forge.synthesis.providers.anthropic_adapter import AnthropicProvider
from case_forge.synthesis.providers.base import BackoffConfig, BaseProvider
from case_forge.synthesis.providers.openai_adapter import OpenAIProvider
from case_forge.validation.thresholds import ValidationThresholds, load_rules_file

_PROVIDER_CLASSES: dict[str, type[AnthropicProvider] | type[OpenAIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
}


def resolve_thresholds(config: Mapping[str, object]) -> ValidationThresholds:
    """Config thresholds, then ``validation.rules_file`` overrides on top."""
    thresholds = thresholds_from_config(config)
    validation = config.get("validation")
    rules_file = validation.get("rules_file") if isinstance(validation, Mapping) else None
    if isinstance(rules_file, str) and rules_file:
        try:
            thresholds = thresholds.with_overrides(load_rules_file(rules_file))
        except ValueError as exc:
            raise ConfigLoadError(str(exc)) from exc
    return thresholds


def build_providers(
    config: Mapping[str, object],
    *,
    environ: Mapping[str, str] | None = None,
    logger: Any | None = None,
) -> list[BaseProvider]:
    """Instantiate providers in fallback order, skipping those without credentials."""
    log = logger if logger is not None else structlog.get_logger(__name__)
    env_map = os.environ if environ is None else environ
    providers_section = _mapping(config.get("providers"))
    generation = _mapping(config.get("generation"))
    order = providers_section.get("fallback_order")
    names = [item for item in order if isinstance(item, str)] if isinstance(order, list) else []
    default = providers_section.get("default")
    if isinstance(default, str) and default in names:
        names.remove(default)
        names.insert(0, default)

    retries = generation.get("provider_max_retries", 3)
    backoff = BackoffConfig(
        max_retries=retries if isinstance(retries, int) else 3,
        initial_delay_seconds=float(generation.get("backoff_base_seconds", 1.0)),
        max_delay_seconds=float(generation.get("backoff_cap_seconds", 8.0)),
        jitter_ratio=float(generation.get("backoff_jitter_ratio", 0.1)),
    )

    built: list[BaseProvider] = []
    for name in names:
        settings = _mapping(providers_section.get(name))
        api_key = provider_api_key(config, name, env_map)
        if api_key is None:
            log.warning("provider_skipped", provider=name, reason="missing_api_key")
            continue
        provider_cls = _PROVIDER_CLASSES[name]
        timeout = settings.get("timeout_seconds")
        built.append(
            provider_cls(
                model=str(settings.get("model")),
                api_key=api_key,
                timeout_seconds=float(timeout) if isinstance(timeout, (int, float)) else None,
                max_output_tokens=int(settings.get("max_output_tokens", 16000)),
                backoff=backoff,
            )
        )
    if not built:
        raise ConfigLoadError(
            "no provider has credentials; set the env var named by providers.<name>.api_key_env"
        )
    return built


def build_orchestrator(
    config: Mapping[str, object],
    *,
    generator: TextGenerator | None = None,
    store: CaseStore | None = None,
    mirror: MirrorStore | None = None,
    events: EventBus | None = None,
    environ: Mapping[str, str] | None = None,
    logger: Any | None = None,
) -> CaseGenerationOrchestrator:
    """Wire generator, store, mirror and prompts from ``config``; injected parts win."""
    log = logger if logger is not None else structlog.get_logger(__name__)
    thresholds = resolve_thresholds(config)
    settings = PipelineSettings.from_config(config, thresholds=thresholds)
    paths = _mapping(config.get("paths"))

    if store is None:
        state_db = StateDB(str(paths.get("state_db", "state/caseforge.sqlite")))
        store = CaseStore(state_db, logger=log)
    if mirror is None:
        mirror = LocalMirrorStore(str(paths.get("mirror_root", "content/sources")))
    if generator is None:
        generation = _mapping(config.get("generation"))
        tracker = None
        if generation.get("track_usage", True):
            tracker = UsageTracker(sink=TokenUsageRepo(store.db), logger=log)
        generator = ProviderTextGenerator(
            build_providers(config, environ=environ, logger=log),
            usage_tracker=tracker,
            logger=log,
        )

    templates_dir = paths.get("templates_dir")
    engine = PromptTemplateEngine(
        template_root=Path(templates_dir) if isinstance(templates_dir, str) else None
    )
    return CaseGenerationOrchestrator(
        generator=generator,
        store=store,
        mirror=mirror,
        prompts=CasePromptBuilder(engine=engine, thresholds=thresholds),
        settings=settings,
        events=events,
        logger=log,
    )


async def generate_case(
    request: GenerationRequest | Mapping[str, object],
    *,
    config: Mapping[str, object] | None = None,
    generator: TextGenerator | None = None,
    store: CaseStore | None = None,
    mirror: MirrorStore | None = None,
    events: EventBus | None = None,
    logger: Any | None = None,
    run_id: str | None = None,
) -> CaseGenerationResult:
    """Run the full pipeline for one request; raises ``PipelineError`` subclasses on failure."""
    if isinstance(request, GenerationRequest):
        resolved_request = request
    else:
        try:
            resolved_request = GenerationRequest.from_dict(request)
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc
    effective = load_config() if config is None else config
    orchestrator = build_orchestrator(
        effective,
        generator=generator,
        store=store,
        mirror=mirror,
        events=events,
        logger=logger,
    )
    return await orchestrator.run(resolved_request, run_id=run_id)


def _mapping(value: object) -> Mapping[str, object]:
    if isinstance(value, Mapping):
        return value
    return {}


__all__ = [
    "build_orchestrator",
    "build_providers",
    "generate_case",
    "resolve_thresholds",
]
