"""
Anthropic LLM client implementation using AsyncAnthropic.
"""

from __future__ import annotations

import time
from typing import Any

from anthropic import APIError, APITimeoutError, AsyncAnthropic
from anthropic import AuthenticationError as AnthropicAuthenticationError
from anthropic import RateLimitError as AnthropicRateLimitError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tradeflow.llm.base import (
    AuthenticationError,
    EmptyResponseError,
    LLMError,
    LLMRequest,
    LLMResponse,
    LLMTimeoutError,
    RateLimitError,
)
from tradeflow.logging import get_logger

logger = get_logger(__name__)


class AnthropicClient:
    """Anthropic LLM client.

    Rate limits are retried briefly here; longer outages surface as
    RateLimitError and are handled by the agent retry protocol.
    """

    def __init__(self, api_key: str | None = None, timeout_s: float | None = None) -> None:
        """Initialize the Anthropic client.

        Args:
            api_key: Anthropic API key. If None, uses ANTHROPIC_API_KEY env var.
            timeout_s: Per-request timeout.
        """
        kwargs: dict[str, Any] = {"api_key": api_key}
        if timeout_s is not None:
            kwargs["timeout"] = timeout_s
        self._client = AsyncAnthropic(**kwargs)
        self._provider = "anthropic"

    @property
    def provider(self) -> str:
        return self._provider

    def _convert_messages(
        self, messages: list[dict[str, Any]]
    ) -> tuple[str | None, list[dict[str, Any]]]:
        """Split out the system prompt, which Anthropic takes separately."""
        system_parts: list[str] = []
        converted: list[dict[str, Any]] = []
        for msg in messages:
            if msg["role"] == "system":
                system_parts.append(msg["content"])
            else:
                converted.append({"role": msg["role"], "content": msg["content"]})
        return ("\n\n".join(system_parts) or None), converted

    @retry(
        retry=retry_if_exception_type(RateLimitError),
        wait=wait_exponential(multiplier=1, min=1, max=20),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Send a completion request.

        Raises:
            RateLimitError: Rate limit persisted across local retries.
            AuthenticationError: Invalid API key.
            LLMTimeoutError: Request timed out.
            EmptyResponseError: No text in the response.
            LLMError: Any other API failure.
        """
        start_time = time.monotonic()
        system_message, messages = self._convert_messages(request.messages)
        params: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or 4096,
            "temperature": request.temperature,
        }
        if system_message:
            params["system"] = system_message
        if request.stop:
            params["stop_sequences"] = request.stop

        try:
            response = await self._client.messages.create(**params)
        except AnthropicRateLimitError as e:
            retry_after = None
            if getattr(e, "response", None) is not None:
                header = e.response.headers.get("retry-after")
                if header:
                    retry_after = float(header)
            logger.warning("Anthropic rate limit hit", model=request.model, retry_after=retry_after)
            raise RateLimitError(str(e), retry_after=retry_after) from e
        except AnthropicAuthenticationError as e:
            raise AuthenticationError(f"Anthropic authentication failed: {e}") from e
        except APITimeoutError as e:
            raise LLMTimeoutError(f"Anthropic request timed out: {e}") from e
        except APIError as e:
            raise LLMError(f"Anthropic API error: {e}") from e

        content = "".join(block.text for block in response.content if block.type == "text")
        if not content.strip():
            raise EmptyResponseError(f"Empty response from {request.model}")

        return LLMResponse(
            content=content,
            model=response.model,
            provider=self._provider,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            finish_reason=response.stop_reason or "stop",
            latency_ms=int((time.monotonic() - start_time) * 1000),
        )

    async def close(self) -> None:
        await self._client.close()
