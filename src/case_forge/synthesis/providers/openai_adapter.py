"""
case-forge — OpenAI provider adapter

File: src/case_forge/synthesis/providers/openai_adapter.py
Last updated: 2026-10-18

Purpose
- Calls the OpenAI Responses API; also reads chat-completions shaped
  responses so compatible gateways can stand in.
"""

from __future__ import annotations

from typing import Protocol, cast

from case_forge.synthesis.providers.base import (
    BaseProvider,
    ProviderRequest,
    ProviderResponse,
    read_int,
    read_sequence,
    read_str,
    read_value,
)

_TEXT_PART_TYPES = frozenset({"output_text", "text"})


class _ResponsesEndpoint(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class OpenAIProvider(BaseProvider):
    provider_name = "openai"
    sdk_module = "openai"
    sdk_client = "AsyncOpenAI"
    fallback_key_envs = ("OPENAI_API_KEY", "CASEFORGE_OPENAI_API_KEY")

    async def _call(self, client: object, request: ProviderRequest) -> object:
        endpoint = cast("_ResponsesEndpoint", read_value(client, "responses"))
        body: dict[str, object] = {
            "model": request.model,
            "input": request.user_prompt,
            "max_output_tokens": request.max_tokens or self.max_output_tokens,
        }
        if request.system_prompt:
            body["instructions"] = request.system_prompt
        if request.temperature is not None:
            body["temperature"] = request.temperature
        return await endpoint.create(**body)

    def _normalize(
        self, raw: object, *, request: ProviderRequest, latency_ms: int
    ) -> ProviderResponse:
        text = _response_text(raw)
        if not text.strip():
            raise self._empty_response()
        usage = read_value(raw, "usage")
        prompt = read_int(usage, "input_tokens")
        completion = read_int(usage, "output_tokens")
        if prompt is None:
            prompt = read_int(usage, "prompt_tokens") or 0
        if completion is None:
            completion = read_int(usage, "completion_tokens") or 0
        return ProviderResponse(
            model=read_str(raw, "model") or request.model,
            raw_text=text,
            usage=self._usage(prompt, completion, read_int(usage, "total_tokens"), latency_ms),
            finish_reason=read_str(raw, "status"),
            request_id=read_str(raw, "id"),
        )


def _response_text(raw: object) -> str:
    shortcut = read_str(raw, "output_text")
    if shortcut:
        return shortcut
    chunks = [
        read_str(part, "text") or read_str(part, "value") or ""
        for item in read_sequence(raw, "output")
        if (read_str(item, "type") or "").lower() == "message"
        for part in read_sequence(item, "content")
        if (read_str(part, "type") or "").lower() in _TEXT_PART_TYPES
    ]
    # Chat-completions shape.
    chunks.extend(
        read_str(read_value(choice, "message"), "content") or ""
        for choice in read_sequence(raw, "choices")
    )
    return "\n".join(chunk for chunk in chunks if chunk.strip())


__all__ = ["OpenAIProvider"]
