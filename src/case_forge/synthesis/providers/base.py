"""
case-forge — provider contract, error taxonomy and retry policy

File: src/case_forge/synthesis/providers/base.py
Last updated: 2026-10-18

Purpose
- One request/response contract for every text-generation SDK, plus the
  pieces each adapter shares: lazy SDK client construction, credential
  lookup, bounded exponential backoff and exception classification.

Functional requirements
- An adapter only describes its payload and how to read the SDK response.
- Rate limits, timeouts and 5xx responses are retried; authentication and
  unknown-model failures are permanent and never retried.

Non-functional requirements
- The SDKs are optional imports; a missing SDK is a ProviderUnavailableError.
- Error details never include the API key.
"""

from __future__ import annotations

import abc
import asyncio
import importlib
import os
import random as random_module
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import ClassVar, Final, Protocol, TypeAlias, TypeVar, runtime_checkable

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RandomFn: TypeAlias = Callable[[], float]

DEFAULT_MAX_OUTPUT_TOKENS: Final[int] = 16_000

PERMANENT_ERROR_PHRASES: Final[tuple[str, ...]] = (
    "api key expired",
    "api key not valid",
    "api_key_invalid",
    "invalid api key",
    "model not found",
    "model does not exist",
)


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProviderUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    latency_ms: int | None = None

    def __post_init__(self) -> None:
        counts = (self.input_tokens, self.output_tokens, self.total_tokens, self.latency_ms or 0)
        if min(counts) < 0:
            raise ValueError("token counts and latency_ms must be >= 0")


@dataclass(frozen=True, slots=True)
class ProviderRequest:
    model: str
    user_prompt: str
    system_prompt: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "model", _required_text(self.model, "ProviderRequest.model"))
        _required_text(self.user_prompt, "ProviderRequest.user_prompt")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("ProviderRequest.max_tokens must be > 0")
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ValueError("ProviderRequest.temperature must be between 0.0 and 2.0")


@dataclass(frozen=True, slots=True)
class ProviderResponse:
    """Normalized SDK response; ``raw_text`` is the model's text, unparsed."""

    model: str
    raw_text: str
    usage: ProviderUsage = field(default_factory=ProviderUsage)
    finish_reason: str | None = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        _required_text(self.model, "ProviderResponse.model")
        if not isinstance(self.raw_text, str) or not self.raw_text:
            raise ValueError("ProviderResponse.raw_text must be a non-empty string")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProviderError(RuntimeError):
    """A provider failure in a fixed taxonomy.

    Subclasses only pick ``code`` and whether the failure is ``retryable``
    or ``permanent``; the message is a stable ``key=value`` line.
    """

    code: ClassVar[str] = "provider_error"
    retryable: bool = False
    permanent: ClassVar[bool] = False
    default_status: ClassVar[int | None] = None

    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.provider = _required_text(provider, "provider")
        self.detail = " ".join(str(detail).split()) or "unknown error"
        self.http_status = http_status if http_status is not None else self.default_status
        if retryable is not None:
            self.retryable = retryable
        status = f" http_status={self.http_status}" if self.http_status is not None else ""
        super().__init__(
            f"provider={self.provider} code={self.code} "
            f"retryable={str(self.retryable).lower()}{status} detail={self.detail}"
        )


class ProviderUnavailableError(ProviderError):
    """The SDK is missing or does not expose the expected client."""

    code = "unavailable"


class ProviderAuthenticationError(ProviderError):
    code = "auth"
    permanent = True


class ProviderModelNotFoundError(ProviderError):
    code = "model_not_found"
    permanent = True


class ProviderInvalidRequestError(ProviderError):
    code = "invalid_request"


class ProviderRateLimitError(ProviderError):
    code = "rate_limit"
    retryable = True
    default_status = 429


class ProviderTimeoutError(ProviderError):
    code = "timeout"
    retryable = True


class ProviderServiceError(ProviderError):
    code = "service"
    retryable = True


class ProviderResponseError(ProviderError):
    """The SDK answered but the response carried no usable text."""

    code = "response_invalid"


_STATUS_ERRORS: Final[dict[int, type[ProviderError]]] = {
    400: ProviderInvalidRequestError,
    401: ProviderAuthenticationError,
    403: ProviderAuthenticationError,
    404: ProviderModelNotFoundError,
    409: ProviderInvalidRequestError,
    413: ProviderInvalidRequestError,
    422: ProviderInvalidRequestError,
    429: ProviderRateLimitError,
}
# Matched against the lowercased SDK exception class name, in order.
_CLASS_NAME_ERRORS: Final[tuple[tuple[str, type[ProviderError]], ...]] = (
    ("auth", ProviderAuthenticationError),
    ("permission", ProviderAuthenticationError),
    ("ratelimit", ProviderRateLimitError),
    ("timeout", ProviderTimeoutError),
    ("notfound", ProviderModelNotFoundError),
    ("badrequest", ProviderInvalidRequestError),
    ("invalidrequest", ProviderInvalidRequestError),
)


def map_provider_exception(exc: Exception, *, provider: str) -> ProviderError:
    """Classify an SDK exception; message phrases win over status, status over class name."""
    if isinstance(exc, ProviderError):
        return exc
    status = read_status_code(exc)
    detail = exception_detail(exc)
    lowered = detail.lower()

    error_type: type[ProviderError] = ProviderServiceError
    if "model not found" in lowered or "model does not exist" in lowered:
        error_type = ProviderModelNotFoundError
    elif is_permanent_message(detail):
        error_type = ProviderAuthenticationError
    elif isinstance(exc, asyncio.TimeoutError):
        error_type = ProviderTimeoutError
    elif status in _STATUS_ERRORS:
        error_type = _STATUS_ERRORS[status]
    else:
        class_name = type(exc).__name__.lower()
        error_type = next(
            (mapped for hint, mapped in _CLASS_NAME_ERRORS if hint in class_name),
            ProviderServiceError,
        )
    if error_type is ProviderTimeoutError:
        return ProviderTimeoutError(detail, provider=provider)
    return error_type(detail, provider=provider, http_status=status)


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


def is_permanent_error(error: BaseException) -> bool:
    """True for failures no retry or later call can fix."""
    if isinstance(error, ProviderError) and error.permanent:
        return True
    return is_permanent_message(str(error))


def is_permanent_message(message: str) -> bool:
    lowered = message.lower()
    return any(phrase in lowered for phrase in PERMANENT_ERROR_PHRASES)


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Delay before retry ``n`` is ``min(initial * multiplier**(n-1), max)`` plus jitter."""

    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 8.0
    jitter_ratio: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= self.initial_delay_seconds <= self.max_delay_seconds:
            raise ValueError("require 0 <= initial_delay_seconds <= max_delay_seconds")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")

    def base_delay(self, retry_number: int) -> float:
        return min(
            self.initial_delay_seconds * self.multiplier ** (retry_number - 1),
            self.max_delay_seconds,
        )

    @property
    def worst_case_delay_seconds(self) -> float:
        """Summed sleeps across every retry with full jitter."""
        return sum(
            self.base_delay(retry) * (1.0 + self.jitter_ratio)
            for retry in range(1, self.max_retries + 1)
        )


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")
    delay = config.base_delay(retry_number)
    if config.jitter_ratio == 0.0:
        return delay
    sample = random_fn()
    if not 0.0 <= sample <= 1.0:
        raise ValueError("random_fn must return values in [0.0, 1.0]")
    return delay * (1.0 + sample * config.jitter_ratio)


_ResultT = TypeVar("_ResultT")
RetryCallback: TypeAlias = Callable[[int, ProviderError, float], None]


async def run_with_retries(
    operation: Callable[[], Awaitable[_ResultT]],
    *,
    map_exception: Callable[[Exception], ProviderError],
    backoff: BackoffConfig,
    sleep: SleepFn = asyncio.sleep,
    random_fn: RandomFn = random_module.random,
    on_retry: RetryCallback | None = None,
) -> _ResultT:
    """Await ``operation`` until it succeeds, fails permanently or runs out of retries."""
    retries_used = 0
    while True:
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            error = map_exception(exc)
            exhausted = retries_used >= backoff.max_retries
            if exhausted or not error.retryable or is_permanent_error(error):
                if error is exc:
                    raise
                raise error from exc
            retries_used += 1
            delay = compute_backoff_delay(
                retry_number=retries_used, config=backoff, random_fn=random_fn
            )
            if on_retry is not None:
                on_retry(retries_used, error, delay)
            await sleep(delay)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


@runtime_checkable
class ProviderProtocol(Protocol):
    provider_name: str
    model: str

    async def send(self, request: ProviderRequest) -> ProviderResponse: ...


class BaseProvider(abc.ABC):
    """SDK adapter skeleton.

    Subclasses name the SDK (``sdk_module``, ``sdk_client``), the env vars
    consulted when no key is configured, and implement ``_call`` and
    ``_normalize``. ``send`` owns client creation, timing and retries.
    """

    provider_name: ClassVar[str] = "provider"
    sdk_module: ClassVar[str] = ""
    sdk_client: ClassVar[str] = ""
    fallback_key_envs: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        api_key_env: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        client: object | None = None,
        backoff: BackoffConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
        random_fn: RandomFn = random_module.random,
    ) -> None:
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be > 0")
        self.model = _required_text(model, "model")
        self.max_output_tokens = max_output_tokens
        self._api_key = api_key
        self._api_key_env = api_key_env
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._client = client
        self._backoff = backoff if backoff is not None else BackoffConfig()
        self._sleep = sleep
        self._random_fn = random_fn

    @property
    def name(self) -> str:
        return self.provider_name

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        async def attempt() -> ProviderResponse:
            client = self._client if self._client is not None else self._connect()
            self._client = client
            started = time.perf_counter()
            raw = await self._call(client, request)
            latency_ms = int((time.perf_counter() - started) * 1000)
            return self._normalize(raw, request=request, latency_ms=latency_ms)

        return await run_with_retries(
            attempt,
            map_exception=lambda exc: map_provider_exception(exc, provider=self.provider_name),
            backoff=self._backoff,
            sleep=self._sleep,
            random_fn=self._random_fn,
        )

    @abc.abstractmethod
    async def _call(self, client: object, request: ProviderRequest) -> object:
        """Issue one SDK call and return its raw response."""

    @abc.abstractmethod
    def _normalize(
        self, raw: object, *, request: ProviderRequest, latency_ms: int
    ) -> ProviderResponse: ...

    def _connect(self) -> object:
        try:
            module = importlib.import_module(self.sdk_module)
        except ImportError as exc:
            raise ProviderUnavailableError(
                f"{self.sdk_module} SDK is not installed; install case-forge[providers]",
                provider=self.provider_name,
            ) from exc
        client_cls = getattr(module, self.sdk_client, None)
        if client_cls is None:
            raise ProviderUnavailableError(
                f"{self.sdk_module} SDK does not expose {self.sdk_client}",
                provider=self.provider_name,
            )
        # run_with_retries owns retries, so the SDK must not retry on its own.
        options: dict[str, object] = {"api_key": self._resolve_api_key(), "max_retries": 0}
        if self._base_url is not None:
            options["base_url"] = self._base_url
        if self._timeout_seconds is not None:
            options["timeout"] = self._timeout_seconds
        return client_cls(**options)

    def _resolve_api_key(self) -> str:
        if self._api_key is not None:
            return self._api_key
        names = (self._api_key_env,) if self._api_key_env else self.fallback_key_envs
        for env_name in names:
            value = os.getenv(env_name, "").strip()
            if value:
                return value
        raise ProviderAuthenticationError(
            f"missing {self.provider_name} API key; set {' or '.join(names)}",
            provider=self.provider_name,
            http_status=401,
        )

    def _usage(
        self, input_tokens: int, output_tokens: int, total_tokens: int | None, latency_ms: int
    ) -> ProviderUsage:
        return ProviderUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens if total_tokens is not None else input_tokens + output_tokens,
            latency_ms=latency_ms,
        )

    def _empty_response(self) -> ProviderResponseError:
        return ProviderResponseError("response does not contain text", provider=self.provider_name)


# ---------------------------------------------------------------------------
# SDK object readers; SDK responses may be models or plain mappings
# ---------------------------------------------------------------------------


def exception_detail(exc: BaseException) -> str:
    return " ".join(str(exc).split()) or type(exc).__name__


def read_status_code(exc: BaseException) -> int | None:
    candidates = [getattr(exc, key, None) for key in ("status_code", "status", "http_status")]
    candidates.append(getattr(getattr(exc, "response", None), "status_code", None))
    return next((value for value in candidates if isinstance(value, int)), None)


def read_value(value: object, key: str, *, default: object | None = None) -> object | None:
    if isinstance(value, Mapping):
        return value.get(key, default)
    return getattr(value, key, default)


def read_sequence(value: object, key: str) -> tuple[object, ...]:
    candidate = read_value(value, key)
    if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes, bytearray)):
        return tuple(candidate)
    return ()


def read_str(value: object, key: str) -> str | None:
    candidate = read_value(value, key)
    return candidate if isinstance(candidate, str) and candidate.strip() else None


def read_int(value: object, key: str) -> int | None:
    candidate = read_value(value, key)
    if isinstance(candidate, int) and not isinstance(candidate, bool):
        return candidate
    return None


def _required_text(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{label} must be a string")
    if not value.strip():
        raise ValueError(f"{label} cannot be empty")
    return value.strip()


__all__ = [
    "BackoffConfig",
    "BaseProvider",
    "DEFAULT_MAX_OUTPUT_TOKENS",
    "PERMANENT_ERROR_PHRASES",
    "ProviderAuthenticationError",
    "ProviderError",
    "ProviderInvalidRequestError",
    "ProviderModelNotFoundError",
    "ProviderProtocol",
    "ProviderRateLimitError",
    "ProviderRequest",
    "ProviderResponse",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ProviderUsage",
    "RandomFn",
    "RetryCallback",
    "SleepFn",
    "compute_backoff_delay",
    "exception_detail",
    "is_permanent_error",
    "is_permanent_message",
    "is_retryable_error",
    "map_provider_exception",
    "read_int",
    "read_sequence",
    "read_status_code",
    "read_str",
    "read_value",
    "run_with_retries",
]
