"""
Configuration management using pydantic-settings.

Settings holds process-wide defaults loaded from environment variables and
.env files. RunSettings is the narrow, validated view of a run's opaque
settings bag: the only fields the orchestration core interprets.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BackoffCurve = Literal["linear", "exponential"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Optional:
        ANTHROPIC_API_KEY: Required unless DRY_RUN is enabled
        DATABASE_PATH: SQLite file holding runs and messages
        AGENT_TIMEOUT_MS / AGENT_MAX_RETRIES / AGENT_RETRY_DELAY_MS: per-agent retry defaults
        CAS_MAX_ATTEMPTS / CAS_BACKOFF_BASE_MS: optimistic write retry loop
        DEFAULT_DEBATE_ROUNDS: bull/bear rounds when a run does not say
        LOG_LEVEL / LOG_FILE: logging
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # LLM
    ANTHROPIC_API_KEY: str | None = Field(default=None, description="Anthropic API key")
    DEFAULT_MODEL: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Model used by agents unless the run settings name one",
    )
    AGENT_MAX_TOKENS: int = Field(default=2000, ge=64, description="Max output tokens per agent call")
    DRY_RUN: bool = Field(default=False, description="Use canned LLM responses")

    # Storage
    DATABASE_PATH: Path = Field(
        default=Path(".tradeflow/runs.db"), description="SQLite database path"
    )
    ENABLE_STORE_PROCEDURES: bool = Field(
        default=True,
        description="Use atomic store procedures for step status and debate rounds",
    )
    MESSAGE_DEDUP_WINDOW_S: float = Field(
        default=60.0, ge=0.0, description="Identical messages within this window are dropped"
    )

    # Optimistic concurrency
    CAS_MAX_ATTEMPTS: int = Field(default=5, ge=1, le=50, description="Conditional write attempts")
    CAS_BACKOFF_BASE_MS: int = Field(default=100, ge=0, description="CAS backoff base delay")
    CAS_BACKOFF: BackoffCurve = Field(default="exponential", description="CAS backoff curve")

    # Agent retry/timeout
    AGENT_TIMEOUT_MS: int = Field(default=180_000, ge=1, description="Per-attempt agent timeout")
    AGENT_MAX_RETRIES: int = Field(default=3, ge=0, le=10, description="Self-retries per agent")
    AGENT_RETRY_DELAY_MS: int = Field(default=3_000, ge=0, description="Self-retry base delay")
    AGENT_RETRY_BACKOFF: BackoffCurve = Field(default="linear", description="Self-retry curve")
    HOST_EXECUTION_CEILING_MS: int = Field(
        default=400_000, ge=1, description="Hard execution ceiling of the hosting runtime"
    )

    # Coordinator
    DEFAULT_DEBATE_ROUNDS: int = Field(default=2, ge=1, le=10, description="Bull/bear rounds")
    WATCHDOG_FACTOR: float = Field(
        default=1.5, gt=1.0, description="Watchdog window as a multiple of the agent timeout"
    )
    NOTIFY_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=10, description="Notification attempts")
    NOTIFY_RETRY_DELAY_MS: int = Field(default=1_000, ge=0, description="Notification retry delay")

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="Optional JSON Lines log file")

    @property
    def anthropic_api_key(self) -> str | None:
        """Get Anthropic API key (lowercase alias)."""
        return self.ANTHROPIC_API_KEY

    @property
    def database_path(self) -> Path:
        """Get database path (lowercase alias)."""
        return self.DATABASE_PATH

    @model_validator(mode="after")
    def validate_timeout_below_ceiling(self) -> Settings:
        """The agent timer must fire before the host kills the worker."""
        if self.AGENT_TIMEOUT_MS >= self.HOST_EXECUTION_CEILING_MS:
            raise ValueError(
                "AGENT_TIMEOUT_MS must be below HOST_EXECUTION_CEILING_MS "
                f"({self.AGENT_TIMEOUT_MS} >= {self.HOST_EXECUTION_CEILING_MS})"
            )
        return self

    def ensure_directories(self) -> None:
        """Create the database directory if it doesn't exist."""
        self.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)

    def redacted_display(self) -> dict[str, Any]:
        """Return settings with API keys redacted for display."""
        key = self.ANTHROPIC_API_KEY
        if key:
            key = f"{key[:8]}...{key[-4:]}" if len(key) > 12 else "***"
        values = self.model_dump()
        values["ANTHROPIC_API_KEY"] = key
        return {name: str(v) if isinstance(v, Path) else v for name, v in values.items()}


# Accepted spellings of the fields the core reads from a run's settings bag.
_BAG_ALIASES: dict[str, tuple[str, ...]] = {
    "timeout_ms": ("timeout_ms", "timeoutMs"),
    "max_retries": ("max_retries", "maxRetries"),
    "retry_delay_ms": ("retry_delay_ms", "retryDelay", "retry_delay"),
    "retry_backoff": ("retry_backoff", "retryBackoff"),
    "debate_rounds": ("debate_rounds", "research_debate_rounds", "debateRounds"),
}


class RunSettings(BaseModel):
    """Narrow struct of per-run settings the orchestration core reads.

    Everything else in the bag (model provider, token budgets, ...) is kept
    verbatim in `extra` and forwarded to downstream invocations untouched.
    """

    model_config = ConfigDict(frozen=True)

    timeout_ms: int = Field(ge=1)
    max_retries: int = Field(ge=0, le=10)
    retry_delay_ms: int = Field(ge=0)
    retry_backoff: BackoffCurve = "linear"
    debate_rounds: int = Field(ge=1, le=10)
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_bag(
        cls,
        bag: dict[str, Any] | None,
        defaults: Settings | None = None,
    ) -> RunSettings:
        """Build from an opaque settings bag, falling back to process defaults.

        A timeout at or above the host ceiling is clamped just below it.

        Args:
            bag: The run's settings bag (may be None or empty).
            defaults: Process settings; uses get_settings() if None.

        Returns:
            Validated RunSettings.
        """
        defaults = defaults or get_settings()
        bag = dict(bag or {})

        values: dict[str, Any] = {
            "timeout_ms": defaults.AGENT_TIMEOUT_MS,
            "max_retries": defaults.AGENT_MAX_RETRIES,
            "retry_delay_ms": defaults.AGENT_RETRY_DELAY_MS,
            "retry_backoff": defaults.AGENT_RETRY_BACKOFF,
            "debate_rounds": defaults.DEFAULT_DEBATE_ROUNDS,
        }
        for field_name, aliases in _BAG_ALIASES.items():
            for alias in aliases:
                if alias in bag:
                    value = bag.pop(alias)
                    if value is not None:
                        values[field_name] = value

        ceiling = defaults.HOST_EXECUTION_CEILING_MS
        if int(values["timeout_ms"]) >= ceiling:
            # Imported lazily to keep config importable before logging is set up.
            from tradeflow.logging import get_logger

            get_logger(__name__).warning(
                "Run timeout clamped below host execution ceiling",
                requested_ms=values["timeout_ms"],
                ceiling_ms=ceiling,
            )
            values["timeout_ms"] = ceiling - 1

        return cls(**values, extra=bag)

    def to_bag(self) -> dict[str, Any]:
        """Reproduce a settings bag for forwarding to the next invocation."""
        return {
            **self.extra,
            "timeout_ms": self.timeout_ms,
            "max_retries": self.max_retries,
            "retry_delay_ms": self.retry_delay_ms,
            "retry_backoff": self.retry_backoff,
            "debate_rounds": self.debate_rounds,
        }

    def retry_delay_seconds(self, attempt: int) -> float:
        """Delay before self-retry number `attempt` (1-based)."""
        base = self.retry_delay_ms / 1000
        if self.retry_backoff == "exponential":
            return base * (2 ** max(attempt - 1, 0))
        return base * max(attempt, 1)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
