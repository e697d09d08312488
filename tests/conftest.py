"""
Pytest configuration and fixtures for orchestration tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Generator
from unittest.mock import patch

import pytest

from tradeflow.config import Settings, clear_settings_cache
from tradeflow.coordinator import AnalysisPipeline, PipelineConfig
from tradeflow.llm.base import LLMRequest, LLMResponse
from tradeflow.llm.dry_run import DRY_RUN_RESPONSES
from tradeflow.state.atomic import AtomicUpdater
from tradeflow.state.store import SQLiteRunStore
from tradeflow.types import (
    CoordinatorNotification,
    Invocation,
    InvocationResult,
    RunStatus,
    WorkflowRun,
)
from tradeflow.workflow.phases import PhaseSequencer


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Never leak cached settings between tests."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def mock_env_vars(tmp_path: Path) -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "ANTHROPIC_API_KEY": "sk-ant-REDACTED",
        "DATABASE_PATH": str(tmp_path / "env.db"),
        "AGENT_MAX_RETRIES": "2",
        "DEFAULT_DEBATE_ROUNDS": "3",
        "LOG_LEVEL": "DEBUG",
    }
    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Fast settings: short delays, no API key, dry-run LLM."""
    return Settings(
        _env_file=None,
        ANTHROPIC_API_KEY=None,
        DRY_RUN=True,
        DATABASE_PATH=tmp_path / "runs.db",
        CAS_MAX_ATTEMPTS=10,
        CAS_BACKOFF_BASE_MS=1,
        AGENT_TIMEOUT_MS=5_000,
        AGENT_MAX_RETRIES=2,
        AGENT_RETRY_DELAY_MS=10,
        NOTIFY_MAX_ATTEMPTS=2,
        NOTIFY_RETRY_DELAY_MS=10,
        DEFAULT_DEBATE_ROUNDS=2,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
async def store(tmp_path: Path) -> AsyncGenerator[SQLiteRunStore, None]:
    """Provide an initialized run store."""
    run_store = SQLiteRunStore(tmp_path / "runs.db")
    await run_store.init()
    yield run_store
    await run_store.close()


@pytest.fixture
def updater(store: SQLiteRunStore) -> AtomicUpdater:
    return AtomicUpdater(store, max_attempts=10, backoff_base_ms=1)


@pytest.fixture
def sequencer() -> PhaseSequencer:
    return PhaseSequencer()


@pytest.fixture
def make_run(store: SQLiteRunStore) -> Callable[..., Awaitable[WorkflowRun]]:
    """Factory that inserts a run into the store."""

    async def _make(
        sequencer: PhaseSequencer | None = None,
        ticker: str = "aapl",
        status: RunStatus = RunStatus.RUNNING,
        settings: dict[str, Any] | None = None,
        current_phase: str | None = None,
    ) -> WorkflowRun:
        run = WorkflowRun.create(
            ticker=ticker,
            user_id="user-1",
            workflow_steps=(sequencer or PhaseSequencer()).initial_workflow_steps(),
            settings=settings,
        )
        run.status = status
        run.current_phase = current_phase
        await store.create_run(run.to_payload())
        return run

    return _make


def invocation_for(run: WorkflowRun) -> Invocation:
    return Invocation(run_id=run.run_id, ticker=run.ticker, user_id=run.user_id, settings=run.settings)


class ScriptedLLM:
    """LLM client with canned responses per role and queued failures.

    Falls back to the dry-run responses for roles that are not scripted.
    """

    def __init__(
        self,
        responses: dict[str, str] | None = None,
        failures: dict[str, list[Exception]] | None = None,
    ) -> None:
        self.responses = responses or {}
        self.failures = {role: list(errors) for role, errors in (failures or {}).items()}
        self.calls: list[LLMRequest] = []

    @property
    def provider(self) -> str:
        return "scripted"

    async def complete(self, request: LLMRequest) -> LLMResponse:
        self.calls.append(request)
        queued = self.failures.get(request.role)
        if queued:
            raise queued.pop(0)
        content = self.responses.get(request.role)
        if content is None:
            content = DRY_RUN_RESPONSES.get(request.role, DRY_RUN_RESPONSES["default"]).content
        return LLMResponse(
            content=content,
            model=request.model,
            provider=self.provider,
            input_tokens=10,
            output_tokens=10,
        )

    def roles(self) -> list[str]:
        return [call.role for call in self.calls]

    async def close(self) -> None:
        return None


class NotificationRecorder:
    """Stands in for the coordinator function and records what it receives."""

    def __init__(self) -> None:
        self.notifications: list[CoordinatorNotification] = []

    async def __call__(self, notification: CoordinatorNotification) -> InvocationResult:
        self.notifications.append(notification)
        return InvocationResult.ok()

    def of_type(self, completion_type: Any) -> list[CoordinatorNotification]:
        return [n for n in self.notifications if n.completion_type == completion_type]


@pytest.fixture
def recorder() -> NotificationRecorder:
    return NotificationRecorder()


@pytest.fixture
async def make_pipeline(
    settings: Settings, store: SQLiteRunStore
) -> AsyncGenerator[Callable[..., AnalysisPipeline], None]:
    """Factory for pipelines sharing the test store; runtimes are shut down afterwards."""
    pipelines: list[AnalysisPipeline] = []

    def _make(
        config: PipelineConfig | None = None,
        llm: Any = None,
        pipeline_settings: Settings | None = None,
    ) -> AnalysisPipeline:
        pipeline = AnalysisPipeline(
            pipeline_settings or settings,
            llm=llm or ScriptedLLM(),
            store=store,
            config=config or PipelineConfig(poll_interval_s=0.02),
        )
        pipelines.append(pipeline)
        return pipeline

    yield _make
    for pipeline in pipelines:
        await pipeline.dispatcher.shutdown()
