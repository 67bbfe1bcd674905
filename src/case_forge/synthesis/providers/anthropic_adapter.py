"""
case-forge — Anthropic provider adapter

File: src/case_forge/synthesis/providers/anthropic_adapter.py
Last updated: 2026-10-18

Purpose
- Calls the Anthropic Messages API and joins the text blocks of the reply.
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


class _MessagesEndpoint(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class AnthropicProvider(BaseProvider):
    provider_name = "anthropic"
    sdk_module = "anthropic"
    sdk_client = "AsyncAnthropic"
    fallback_key_envs = ("ANTHROPIC_API_KEY", "CASEFORGE_ANTHROPIC_API_KEY")

    async def _call(self, client: object, request: ProviderRequest) -> object:
        endpoint = cast("_MessagesEndpoint", read_value(client, "messages"))
        body: dict[str, object] = {
            "model": request.model,
            "max_tokens": request.max_tokens or self.max_output_tokens,
            "messages": [{"role": "user", "content": request.user_prompt}],
        }
        if request.system_prompt:
            body["system"] = request.system_prompt
        if request.temperature is not None:
            body["temperature"] = request.temperature
        return await endpoint.create(**body)

    def _normalize(
        self, raw: object, *, request: ProviderRequest, latency_ms: int
    ) -> ProviderResponse:
        # Tool-use and thinking blocks carry no reply text.
        text = "\n".join(
            read_str(block, "text") or ""
            for block in read_sequence(raw, "content")
            if (read_str(block, "type") or "").lower() == "text" and read_str(block, "text")
        )
        if not text.strip():
            raise self._empty_response()
        usage = read_value(raw, "usage")
        return ProviderResponse(
            model=read_str(raw, "model") or request.model,
            raw_text=text,
            usage=self._usage(
                read_int(usage, "input_tokens") or 0,
                read_int(usage, "output_tokens") or 0,
                None,
                latency_ms,
            ),
            finish_reason=read_str(raw, "stop_reason"),
            request_id=read_str(raw, "id"),
        )


__all__ = ["AnthropicProvider"]
