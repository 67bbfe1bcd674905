"""
case-forge — provider adapters and shared provider API

File: src/case_forge/synthesis/providers/__init__.py
Last updated: 2026-10-17

Purpose
- Provider adapters (Anthropic, OpenAI) behind one request/response contract.

Non-functional requirements
- Must never log secrets or raw API keys.
"""

from case_forge.synthesis.providers.anthropic_adapter import AnthropicProvider
from case_forge.synthesis.providers.base import (
    BackoffConfig,
    BaseProvider,
    ProviderAuthenticationError,
    ProviderError,
    ProviderModelNotFoundError,
    ProviderProtocol,
    ProviderRateLimitError,
    ProviderRequest,
    ProviderResponse,
    ProviderServiceError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderUsage,
    compute_backoff_delay,
    is_permanent_error,
    is_retryable_error,
    run_with_retries,
)
from case_forge.synthesis.providers.openai_adapter import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "BackoffConfig",
    "BaseProvider",
    "OpenAIProvider",
    "ProviderAuthenticationError",
    "ProviderError",
    "ProviderModelNotFoundError",
    "ProviderProtocol",
    "ProviderRateLimitError",
    "ProviderRequest",
    "ProviderResponse",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ProviderUsage",
    "compute_backoff_delay",
    "is_permanent_error",
    "is_retryable_error",
    "run_with_retries",
]
