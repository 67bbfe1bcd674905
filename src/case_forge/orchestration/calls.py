"""Timeout-bounded generator calls shared by the case and asset phases."""

from __future__ import annotations

import asyncio

from case_forge.domain.errors import GenerationTimeoutError
from case_forge.domain.models import GenerationOptions, GenerationPhase, RawGenerationOutput
from case_forge.synthesis.generator import TextGenerator


async def generate_with_timeout(
    generator: TextGenerator,
    prompt: str,
    *,
    system: str | None,
    options: GenerationOptions | None,
    timeout_seconds: float,
    phase: GenerationPhase,
) -> RawGenerationOutput:
    """Run one generator call and tag its verbatim text with ``phase``.

    An elapsed timeout becomes ``GenerationTimeoutError``.
    """
    try:
        result = await asyncio.wait_for(
            generator.generate(prompt, system=system, options=options),
            timeout=timeout_seconds,
        )
    except TimeoutError as exc:
        label = phase.value.replace("_", " ")
        raise GenerationTimeoutError(
            f"{label} generation exceeded {timeout_seconds:g}s call timeout"
        ) from exc
    return RawGenerationOutput(
        phase=phase,
        text=result.content,
        model=result.model,
        provider=result.provider,
        usage=result.usage,
    )


__all__ = ["generate_with_timeout"]
