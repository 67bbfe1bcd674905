from __future__ import annotations

import asyncio

import pytest

from case_forge.domain.errors import GenerationTimeoutError
from case_forge.domain.models import GenerationPhase
from case_forge.orchestration.calls import generate_with_timeout
from case_forge.synthesis.generator import GenerationResult
from tests.builders import FIXED_USAGE, ScriptedGenerator


class _StalledGenerator:
    async def generate(self, prompt: str, *, system=None, options=None) -> GenerationResult:
        await asyncio.sleep(5)
        return GenerationResult(content="never", model="stalled-1", provider="stalled")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_output_is_tagged_with_phase_and_source() -> None:
    generator = ScriptedGenerator(["## Outline"])

    output = await generate_with_timeout(
        generator, "outline please", system="sys", options=None, timeout_seconds=1.0, phase=GenerationPhase.OUTLINE
    )

    assert output.phase is GenerationPhase.OUTLINE
    assert output.text == "## Outline"
    assert (output.model, output.provider) == ("scripted-1", "scripted")
    assert output.usage == FIXED_USAGE
    assert generator.systems == ["sys"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_timeout_names_the_phase() -> None:
    with pytest.raises(GenerationTimeoutError, match="asset repair generation exceeded 0.01s call timeout"):
        await generate_with_timeout(
            _StalledGenerator(),
            "slow",
            system=None,
            options=None,
            timeout_seconds=0.01,
            phase=GenerationPhase.ASSET_REPAIR,
        )
