"""
Base classes and interfaces for LLM clients.

This module defines:
- LLMRequest: Standardized request format
- LLMResponse: Standardized response format
- LLMClient: Protocol every provider implements
- The LLM error hierarchy agents classify failures from
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass
class LLMRequest:
    """Standardized LLM request format."""

    messages: list[dict[str, Any]]  # [{"role": "system"|"user"|"assistant", "content": "..."}]
    model: str
    temperature: float = 0.7
    max_tokens: int | None = None
    stop: list[str] | None = None
    role: str = "default"  # selects canned responses in dry-run mode


@dataclass
class LLMResponse:
    """Standardized LLM response format."""

    content: str
    model: str
    provider: str
    input_tokens: int
    output_tokens: int
    finish_reason: str = "stop"
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@runtime_checkable
class LLMClient(Protocol):
    """Protocol for LLM clients."""

    @property
    def provider(self) -> str:
        """Name of this provider (e.g., 'anthropic', 'dry_run')."""
        ...

    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Send a completion request.

        Raises:
            LLMError: If the request fails.
        """
        ...

    async def close(self) -> None:
        """Close any open connections."""
        ...


class LLMError(Exception):
    """Base exception for LLM errors."""

    pass


class RateLimitError(LLMError):
    """Rate limit or quota exceeded."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AuthenticationError(LLMError):
    """Authentication failed (bad or missing API key)."""

    pass


class LLMTimeoutError(LLMError):
    """The provider did not answer in time."""

    pass


class EmptyResponseError(LLMError):
    """The model returned empty or unusable output."""

    pass
