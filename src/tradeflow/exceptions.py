"""
Custom exception hierarchy for the orchestration core.

All exceptions inherit from TradeflowError, which provides optional context
for structured error handling and logging. `classify_error` maps any
exception onto the escalation error taxonomy.
"""

from __future__ import annotations

import asyncio
from typing import Any

from tradeflow.types import ErrorType


class TradeflowError(Exception):
    """Base exception for all orchestration errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    error_type: ErrorType = ErrorType.OTHER

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(TradeflowError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing ANTHROPIC_API_KEY outside dry-run mode
        - Agent timeout at or above the host execution ceiling
    """

    error_type = ErrorType.API_KEY


class StoreError(TradeflowError):
    """Raised when the state store is unavailable or a statement fails.

    Context should include:
        - run_id: The run being read or written
        - operation: The store operation that failed
    """

    error_type = ErrorType.DATABASE


class RunNotFoundError(StoreError):
    """Raised when a run id does not exist in the store."""

    pass


class ConcurrentModificationError(StoreError):
    """Raised when a conditional write affected zero rows.

    Used internally as the CAS retry signal.

    Context should include:
        - run_id: The contended run
        - expected_version: The version token the write was conditioned on
    """

    pass


class TerminalStateError(TradeflowError):
    """Raised when a write would override a COMPLETED or CANCELLED run."""

    pass


class UnknownPhaseError(TradeflowError):
    """Raised when a phase id is not in the phase table."""

    pass


class UnknownAgentError(TradeflowError):
    """Raised when an agent is not part of the phase it claims to be in.

    Sequencing fails closed on this error instead of stalling the run.
    """

    pass


class DispatchError(TradeflowError):
    """Raised when an invocation could not be dispatched at all.

    Distinguishes "invocation never happened" from a worker that crashed
    mid-run.

    Context should include:
        - function_name: The target function
    """

    pass


class AgentError(TradeflowError):
    """Raised by agent logic with an explicit error class.

    Context should include:
        - agent: The agent function name
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.OTHER,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context)
        self.error_type = error_type


class DataFetchError(TradeflowError):
    """Raised when an upstream data source fails.

    Context should include:
        - source: The data source
        - ticker: The subject being fetched
    """

    error_type = ErrorType.DATA_FETCH


def classify_error(exc: BaseException) -> ErrorType:
    """Map an exception onto the escalation error taxonomy.

    Known exception classes carry their own error type; anything else is
    classified from its message.

    Args:
        exc: The exception raised by agent work.

    Returns:
        The matching ErrorType.
    """
    # Imported lazily: llm.base does not depend on this module.
    from tradeflow.llm.base import (
        AuthenticationError,
        EmptyResponseError,
        LLMError,
        LLMTimeoutError,
        RateLimitError,
    )

    if isinstance(exc, TradeflowError):
        return exc.error_type
    if isinstance(exc, RateLimitError):
        return ErrorType.RATE_LIMIT
    if isinstance(exc, AuthenticationError):
        return ErrorType.API_KEY
    if isinstance(exc, (LLMTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(exc, EmptyResponseError):
        return ErrorType.AI_ERROR

    text = str(exc).lower()
    if "rate limit" in text or "quota" in text:
        return ErrorType.RATE_LIMIT
    if "api key" in text or "authentication" in text:
        return ErrorType.API_KEY
    if "timeout" in text or "timed out" in text:
        return ErrorType.TIMEOUT
    if isinstance(exc, LLMError):
        return ErrorType.AI_ERROR
    return ErrorType.OTHER
