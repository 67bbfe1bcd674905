"""Text generation over an ordered set of providers with fallback and usage tracking.

``ProviderTextGenerator`` tries each candidate provider in order. Each adapter
owns its own bounded retries; a provider that still fails (or fails
permanently) hands over to the next candidate. When every candidate has
failed the call raises ``GenerationCallError`` (or ``PermanentGenerationError``
when every failure was permanent).
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Protocol, runtime_checkable

import structlog

from case_forge.domain.errors import GenerationCallError, PermanentGenerationError
from case_forge.domain.models import GenerationOptions, TokenUsage
from case_forge.synthesis.providers.base import (
    ProviderError,
    ProviderProtocol,
    ProviderRequest,
    ProviderResponse,
    ProviderServiceError,
    is_permanent_error,
)


@dataclass(frozen=True, slots=True)
class GenerationResult:
    content: str
    model: str
    provider: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@runtime_checkable
class TextGenerator(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        options: GenerationOptions | None = None,
    ) -> GenerationResult: ...


class UsageSink(Protocol):
    def record_usage(self, *, day: date, model: str, usage: TokenUsage) -> None: ...


class UsageTracker:
    """Accumulates token usage per UTC day and model.

    Totals are kept in memory and forwarded to an optional ``sink`` (the
    ``token_usage`` table in production). A failing sink is logged and never
    interrupts generation.
    """

    def __init__(
        self,
        *,
        sink: UsageSink | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._sink = sink
        self._clock = clock if clock is not None else (lambda: datetime.now(tz=UTC))
        self._log = logger if logger is not None else structlog.get_logger(__name__)
        self._totals: dict[tuple[date, str], TokenUsage] = {}

    def record(self, model: str, usage: TokenUsage) -> None:
        day = self._clock().astimezone(UTC).date()
        key = (day, model)
        self._totals[key] = self._totals.get(key, TokenUsage()) + usage
        if self._sink is None:
            return
        try:
            self._sink.record_usage(day=day, model=model, usage=usage)
        except Exception as exc:  # noqa: BLE001
            self._log.warning(
                "usage_tracking_failed",
                model=model,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def totals(self) -> dict[tuple[date, str], TokenUsage]:
        return dict(self._totals)

    def total(self) -> TokenUsage:
        combined = TokenUsage()
        for usage in self._totals.values():
            combined = combined + usage
        return combined


class ProviderTextGenerator:
    """TextGenerator over an ordered list of providers."""

    def __init__(
        self,
        providers: Sequence[ProviderProtocol],
        *,
        usage_tracker: UsageTracker | None = None,
        max_output_tokens: int | None = None,
        logger: Any | None = None,
    ) -> None:
        if not providers:
            raise ValueError("at least one provider is required")
        self._providers = tuple(providers)
        self._usage_tracker = usage_tracker
        self._max_output_tokens = max_output_tokens
        self._log = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def provider_names(self) -> tuple[str, ...]:
        return tuple(provider.provider_name for provider in self._providers)

    async def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        options: GenerationOptions | None = None,
    ) -> GenerationResult:
        resolved = options if options is not None else GenerationOptions()
        failures: list[ProviderError] = []

        for index, provider in enumerate(self._candidates(resolved.provider)):
            # A requested model only applies to the first-choice provider.
            model = resolved.model if resolved.model and index == 0 else provider.model
            request = ProviderRequest(
                model=model,
                user_prompt=prompt,
                system_prompt=system,
                max_tokens=self._max_output_tokens,
            )
            try:
                response = await provider.send(request)
            except ProviderError as exc:
                failures.append(exc)
                self._log.warning(
                    "provider_call_failed",
                    provider=provider.provider_name,
                    model=model,
                    code=exc.code,
                    permanent=is_permanent_error(exc),
                    detail=exc.detail,
                )
                continue
            except Exception as exc:  # noqa: BLE001
                wrapped = ProviderServiceError(
                    str(exc) or type(exc).__name__,
                    provider=provider.provider_name,
                    retryable=False,
                )
                failures.append(wrapped)
                self._log.warning(
                    "provider_call_failed",
                    provider=provider.provider_name,
                    model=model,
                    code=wrapped.code,
                    permanent=False,
                    detail=wrapped.detail,
                )
                continue

            return self._result(provider.provider_name, response, track=resolved.track_usage)

        summary = "; ".join(f"{item.provider}: {item.code}: {item.detail}" for item in failures)
        message = f"All providers failed ({summary})" if summary else "All providers failed"
        if failures and all(is_permanent_error(item) for item in failures):
            raise PermanentGenerationError(message)
        raise GenerationCallError(message)

    def _candidates(self, preferred: str | None) -> tuple[ProviderProtocol, ...]:
        if preferred is None:
            return self._providers
        first = [item for item in self._providers if item.provider_name == preferred.lower()]
        rest = [item for item in self._providers if item.provider_name != preferred.lower()]
        return tuple(first + rest)

    def _result(
        self, provider: str, response: ProviderResponse, *, track: bool
    ) -> GenerationResult:
        usage = TokenUsage(
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
            total_tokens=response.usage.total_tokens
            or response.usage.input_tokens + response.usage.output_tokens,
        )
        if track and self._usage_tracker is not None:
            self._usage_tracker.record(response.model, usage)
        self._log.info(
            "provider_call_succeeded",
            provider=provider,
            model=response.model,
            total_tokens=usage.total_tokens,
            latency_ms=response.usage.latency_ms,
        )
        return GenerationResult(
            content=response.raw_text,
            model=response.model,
            provider=provider,
            usage=usage,
        )


__all__ = [
    "GenerationResult",
    "ProviderTextGenerator",
    "TextGenerator",
    "UsageSink",
    "UsageTracker",
]
