"""Adapter behavior against fake SDK clients; no network access."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from case_forge.synthesis.providers import (
    AnthropicProvider,
    BackoffConfig,
    OpenAIProvider,
    ProviderAuthenticationError,
    ProviderRateLimitError,
    ProviderRequest,
    ProviderServiceError,
    compute_backoff_delay,
    is_permanent_error,
    run_with_retries,
)
from case_forge.synthesis.providers.base import (
    ProviderModelNotFoundError,
    ProviderResponseError,
    map_provider_exception,
)
from tests.builders import RecordingSleep


class StatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class _Endpoint:
    def __init__(self, outcomes: list[Any]) -> None:
        self._outcomes = outcomes
        self.calls: list[dict[str, object]] = []

    async def create(self, **kwargs: object) -> object:
        self.calls.append(kwargs)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def openai_client(*outcomes: Any) -> SimpleNamespace:
    return SimpleNamespace(responses=_Endpoint(list(outcomes)))


def anthropic_client(*outcomes: Any) -> SimpleNamespace:
    return SimpleNamespace(messages=_Endpoint(list(outcomes)))


def openai_response(text: str = "generated") -> SimpleNamespace:
    return SimpleNamespace(
        output_text=text,
        usage={"input_tokens": 11, "output_tokens": 22},
        model="gpt-4o-2024",
        status="completed",
        id="resp_1",
    )


def anthropic_response(*texts: str) -> dict[str, object]:
    return {
        "content": [{"type": "text", "text": item} for item in texts] + [{"type": "tool_use"}],
        "usage": {"input_tokens": 3, "output_tokens": 4},
        "model": "claude-3-5-sonnet-latest",
        "stop_reason": "end_turn",
        "id": "msg_1",
    }


FAST_BACKOFF = BackoffConfig(max_retries=2, initial_delay_seconds=0.5, max_delay_seconds=4.0, jitter_ratio=0.0)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_openai_adapter_builds_responses_payload() -> None:
    client = openai_client(openai_response())
    provider = OpenAIProvider(model="gpt-4o", client=client, max_output_tokens=1234)

    response = await provider.send(ProviderRequest(model="gpt-4o", user_prompt="hi", system_prompt="sys"))

    assert client.responses.calls == [
        {"model": "gpt-4o", "input": "hi", "max_output_tokens": 1234, "instructions": "sys"}
    ]
    assert response.raw_text == "generated"
    assert response.model == "gpt-4o-2024"
    assert (response.usage.input_tokens, response.usage.output_tokens, response.usage.total_tokens) == (
        11,
        22,
        33,
    )
    assert response.request_id == "resp_1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_openai_adapter_retries_rate_limits_with_backoff() -> None:
    sleep = RecordingSleep()
    client = openai_client(StatusError("rate limited", 429), StatusError("overloaded", 503), openai_response())
    provider = OpenAIProvider(model="gpt-4o", client=client, backoff=FAST_BACKOFF, sleep=sleep)

    response = await provider.send(ProviderRequest(model="gpt-4o", user_prompt="hi"))

    assert response.raw_text == "generated"
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_openai_adapter_never_retries_auth_failures() -> None:
    sleep = RecordingSleep()
    client = openai_client(StatusError("invalid api key", 401), openai_response())
    provider = OpenAIProvider(model="gpt-4o", client=client, backoff=FAST_BACKOFF, sleep=sleep)

    with pytest.raises(ProviderAuthenticationError) as excinfo:
        await provider.send(ProviderRequest(model="gpt-4o", user_prompt="hi"))

    assert excinfo.value.http_status == 401
    assert sleep.delays == []
    assert len(client.responses.calls) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_openai_adapter_gives_up_after_bounded_retries() -> None:
    sleep = RecordingSleep()
    client = openai_client(*(StatusError("rate limited", 429) for _ in range(3)))
    provider = OpenAIProvider(model="gpt-4o", client=client, backoff=FAST_BACKOFF, sleep=sleep)

    with pytest.raises(ProviderRateLimitError):
        await provider.send(ProviderRequest(model="gpt-4o", user_prompt="hi"))

    assert len(client.responses.calls) == 3
    assert len(sleep.delays) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_openai_adapter_rejects_empty_text() -> None:
    provider = OpenAIProvider(model="gpt-4o", client=openai_client(openai_response("   ")))

    with pytest.raises(ProviderResponseError):
        await provider.send(ProviderRequest(model="gpt-4o", user_prompt="hi"))


@pytest.mark.unit
@pytest.mark.asyncio
async def test_anthropic_adapter_joins_text_blocks() -> None:
    client = anthropic_client(anthropic_response("part one", "part two"))
    provider = AnthropicProvider(model="claude-3-5-sonnet-latest", client=client)

    response = await provider.send(
        ProviderRequest(model="claude-3-5-sonnet-latest", user_prompt="hi", system_prompt="sys", max_tokens=50)
    )

    call = client.messages.calls[0]
    assert call["system"] == "sys"
    assert call["max_tokens"] == 50
    assert call["messages"] == [{"role": "user", "content": "hi"}]
    assert response.raw_text == "part one\npart two"
    assert response.usage.total_tokens == 7
    assert response.finish_reason == "end_turn"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_anthropic_adapter_maps_missing_model_to_permanent_error() -> None:
    client = anthropic_client(StatusError("model not found: claude-9", 404))
    provider = AnthropicProvider(model="claude-9", client=client, backoff=FAST_BACKOFF, sleep=RecordingSleep())

    with pytest.raises(ProviderModelNotFoundError) as excinfo:
        await provider.send(ProviderRequest(model="claude-9", user_prompt="hi"))

    assert is_permanent_error(excinfo.value)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("status", "code", "retryable"),
    [(401, "auth", False), (403, "auth", False), (429, "rate_limit", True), (500, "service", True), (404, "model_not_found", False), (400, "invalid_request", False)],
)
def test_map_provider_exception_by_status(status: int, code: str, retryable: bool) -> None:
    mapped = map_provider_exception(StatusError("boom", status), provider="openai")

    assert mapped.code == code
    assert mapped.retryable is retryable
    assert mapped.provider == "openai"


@pytest.mark.unit
def test_permanent_phrases_are_recognized_in_messages() -> None:
    assert is_permanent_error(ProviderServiceError("API key expired. Please renew", provider="openai"))
    assert not is_permanent_error(ProviderServiceError("upstream hiccup", provider="openai"))


@pytest.mark.unit
def test_backoff_delay_is_exponential_bounded_and_jittered() -> None:
    config = BackoffConfig(max_retries=5, initial_delay_seconds=1.0, multiplier=2.0, max_delay_seconds=8.0, jitter_ratio=0.1)

    delays = [compute_backoff_delay(retry_number=n, config=config, random_fn=lambda: 0.0) for n in range(1, 6)]
    jittered = compute_backoff_delay(retry_number=2, config=config, random_fn=lambda: 1.0)

    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]
    assert jittered == pytest.approx(2.2)
    with pytest.raises(ValueError):
        compute_backoff_delay(retry_number=0, config=config)


@pytest.mark.unit
def test_backoff_config_validation() -> None:
    with pytest.raises(ValueError):
        BackoffConfig(initial_delay_seconds=10.0, max_delay_seconds=1.0)
    with pytest.raises(ValueError):
        BackoffConfig(jitter_ratio=1.5)
    assert BackoffConfig(max_retries=2, initial_delay_seconds=1.0, max_delay_seconds=8.0, jitter_ratio=0.0).worst_case_delay_seconds == 3.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_run_with_retries_reports_each_retry() -> None:
    attempts: list[int] = []
    seen: list[tuple[int, str, float]] = []

    async def operation() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise StatusError("busy", 503)
        return "done"

    result = await run_with_retries(
        operation,
        map_exception=lambda exc: map_provider_exception(exc, provider="openai"),
        backoff=FAST_BACKOFF,
        sleep=RecordingSleep(),
        on_retry=lambda n, error, delay: seen.append((n, error.code, delay)),
    )

    assert result == "done"
    assert seen == [(1, "service", 0.5), (2, "service", 1.0)]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_openai_adapter_reads_chat_completions_shape() -> None:
    raw = {
        "choices": [{"message": {"content": "from a gateway"}}],
        "usage": {"prompt_tokens": 5, "completion_tokens": 6, "total_tokens": 11},
    }
    provider = OpenAIProvider(model="gpt-4o", client=openai_client(raw))

    response = await provider.send(ProviderRequest(model="gpt-4o", user_prompt="hi"))

    assert response.raw_text == "from a gateway"
    assert response.model == "gpt-4o"
    assert (response.usage.input_tokens, response.usage.total_tokens) == (5, 11)


@pytest.mark.unit
def test_api_key_falls_back_to_provider_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.setenv("CASEFORGE_ANTHROPIC_API_KEY", "sk-ant-from-env")
    monkeypatch.delenv("MY_KEY", raising=False)

    assert AnthropicProvider(model="claude")._resolve_api_key() == "sk-ant-from-env"
    with pytest.raises(ProviderAuthenticationError, match="MY_KEY"):
        AnthropicProvider(model="claude", api_key_env="MY_KEY")._resolve_api_key()
