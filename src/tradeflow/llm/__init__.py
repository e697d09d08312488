"""
LLM clients used by agents.
"""

from __future__ import annotations

from tradeflow.config import Settings
from tradeflow.exceptions import ConfigurationError
from tradeflow.llm.base import (
    AuthenticationError,
    EmptyResponseError,
    LLMClient,
    LLMError,
    LLMRequest,
    LLMResponse,
    LLMTimeoutError,
    RateLimitError,
)
from tradeflow.llm.dry_run import DryRunClient


def create_llm_client(settings: Settings, dry_run: bool | None = None) -> LLMClient:
    """Build the configured LLM client.

    Raises:
        ConfigurationError: If no API key is configured outside dry-run mode.
    """
    if dry_run if dry_run is not None else settings.DRY_RUN:
        return DryRunClient()
    if not settings.anthropic_api_key:
        raise ConfigurationError(
            "ANTHROPIC_API_KEY must be set unless DRY_RUN is enabled",
            context={"setting": "ANTHROPIC_API_KEY"},
        )
    from tradeflow.llm.anthropic_client import AnthropicClient

    return AnthropicClient(
        api_key=settings.anthropic_api_key,
        timeout_s=settings.AGENT_TIMEOUT_MS / 1000,
    )


__all__ = [
    "AuthenticationError",
    "DryRunClient",
    "EmptyResponseError",
    "LLMClient",
    "LLMError",
    "LLMRequest",
    "LLMResponse",
    "LLMTimeoutError",
    "RateLimitError",
    "create_llm_client",
]
