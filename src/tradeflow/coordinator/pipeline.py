"""
Analysis pipeline wiring.

Builds the store, atomic update layer, in-process function runtime,
coordinator and agents, registers every agent and the coordinator as named
functions, and offers start/wait helpers on top. The pipeline itself holds
no run state: everything lives in the store and moves through detached
invocations.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable

from tradeflow.agents import AgentContext, PipelineAgent, build_agents
from tradeflow.config import Settings, get_settings
from tradeflow.coordinator.coordinator import AnalysisCoordinator
from tradeflow.llm import LLMClient, create_llm_client
from tradeflow.logging import get_logger
from tradeflow.runtime.dispatcher import Dispatcher
from tradeflow.runtime.guards import ExecutionGuard
from tradeflow.runtime.handoff import Handoff
from tradeflow.runtime.notify import CoordinatorNotifier
from tradeflow.runtime.retry import TimeoutManager
from tradeflow.state.atomic import AtomicUpdater
from tradeflow.state.store import SQLiteRunStore
from tradeflow.types import (
    CompletionType,
    CoordinatorNotification,
    Message,
    RunStatus,
    WorkflowRun,
)
from tradeflow.workflow.debate import DebateController, EarlyStopHook
from tradeflow.workflow.phases import COORDINATOR_FUNCTION, WORKFLOW_PHASES, PhaseSequencer, PhaseSpec

logger = get_logger(__name__)


@dataclass
class PipelineConfig:
    """Optional overrides for the pipeline wiring."""

    phases: Iterable[PhaseSpec] = WORKFLOW_PHASES
    agent_classes: dict[str, type[PipelineAgent]] | None = None
    early_stop: EarlyStopHook | None = None
    poll_interval_s: float = 0.2


@dataclass
class PipelineResult:
    """Outcome of waiting for a run."""

    run: WorkflowRun
    messages: list[Message] = field(default_factory=list)
    timed_out: bool = False

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def decision(self) -> str | None:
        return self.run.decision


class AnalysisPipeline:
    """Wires the orchestration core together.

    Usage:
        async with AnalysisPipeline(settings) as pipeline:
            result = await pipeline.run("AAPL", "user-1")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        llm: LLMClient | None = None,
        store: SQLiteRunStore | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings (loads from env if None).
            llm: LLM client (built from settings if None).
            store: Run store (SQLite at DATABASE_PATH if None).
            config: Wiring overrides.
        """
        self.settings = settings or get_settings()
        self.config = config or PipelineConfig()
        self.llm = llm or create_llm_client(self.settings)
        self.store = store or SQLiteRunStore(
            self.settings.DATABASE_PATH,
            procedures_enabled=self.settings.ENABLE_STORE_PROCEDURES,
            dedup_window_s=self.settings.MESSAGE_DEDUP_WINDOW_S,
        )

        self.sequencer = PhaseSequencer(self.config.phases)
        self.updater = AtomicUpdater.from_settings(self.store, self.settings)
        self.dispatcher = Dispatcher()
        self.notifier = CoordinatorNotifier(
            self.dispatcher,
            self.updater,
            max_attempts=self.settings.NOTIFY_MAX_ATTEMPTS,
            retry_delay_ms=self.settings.NOTIFY_RETRY_DELAY_MS,
        )
        self.guard = ExecutionGuard(self.updater)
        self.timeouts = TimeoutManager(self.dispatcher, self.updater, self.notifier, self.sequencer)
        self.handoff = Handoff(self.sequencer, self.updater, self.dispatcher, self.notifier)
        self.debate = DebateController(
            self.sequencer, self.updater, self.handoff, early_stop=self.config.early_stop
        )
        self.coordinator = AnalysisCoordinator(
            self.settings,
            self.sequencer,
            self.updater,
            self.dispatcher,
            self.handoff,
            self.debate,
            store=self.store,
        )

        self.agent_context = AgentContext(
            settings=self.settings,
            sequencer=self.sequencer,
            updater=self.updater,
            guard=self.guard,
            timeouts=self.timeouts,
            handoff=self.handoff,
            notifier=self.notifier,
            debate=self.debate,
            llm=self.llm,
        )
        self.agents = build_agents(self.agent_context, self.config.agent_classes)

        self.dispatcher.register(COORDINATOR_FUNCTION, self.coordinator.handle)
        for name, agent in self.agents.items():
            self.dispatcher.register(name, agent.invoke)

    async def __aenter__(self) -> AnalysisPipeline:
        await self.init()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def init(self) -> None:
        """Initialize the store."""
        await self.store.init()

    async def close(self) -> None:
        """Cancel detached work and release resources."""
        await self.dispatcher.shutdown()
        await self.llm.close()
        await self.store.close()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def start(
        self,
        ticker: str,
        user_id: str,
        settings_bag: dict[str, Any] | None = None,
        phase_context: dict[str, Any] | None = None,
    ) -> str:
        """Create a run and notify the coordinator to start it.

        Returns immediately; the run proceeds as detached work.

        Returns:
            The new run ID.
        """
        run = WorkflowRun.create(
            ticker=ticker,
            user_id=user_id,
            workflow_steps=self.sequencer.initial_workflow_steps(),
            settings=settings_bag,
            phase_context=phase_context,
        )
        await self.store.create_run(run.to_payload())
        logger.info("Run created", run_id=run.run_id, ticker=run.ticker, user_id=user_id)

        self.notifier.notify(
            CoordinatorNotification(
                run_id=run.run_id,
                phase=self.sequencer.first_phase.phase_id,
                agent=COORDINATOR_FUNCTION,
                completion_type=CompletionType.START,
                ticker=run.ticker,
                user_id=user_id,
                settings=run.settings,
            )
        )
        return run.run_id

    async def wait(self, run_id: str, timeout_s: float | None = None) -> PipelineResult:
        """Poll the store until the run reaches COMPLETED, ERROR or CANCELLED.

        Args:
            run_id: Run to wait for.
            timeout_s: Give up after this long (None waits forever).

        Returns:
            PipelineResult; `timed_out` is set if the run was still active.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s if timeout_s is not None else None
        while True:
            run = (await self.updater.read(run_id)).run
            if run.status in (RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.CANCELLED):
                return PipelineResult(run=run, messages=await self.store.list_messages(run_id))
            if deadline is not None and loop.time() >= deadline:
                return PipelineResult(
                    run=run, messages=await self.store.list_messages(run_id), timed_out=True
                )
            await asyncio.sleep(self.config.poll_interval_s)

    async def run(
        self,
        ticker: str,
        user_id: str,
        settings_bag: dict[str, Any] | None = None,
        phase_context: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> PipelineResult:
        """Start a run and wait for it to finish."""
        run_id = await self.start(ticker, user_id, settings_bag, phase_context)
        result = await self.wait(run_id, timeout_s)
        logger.info(
            "Run finished",
            run_id=run_id,
            status=result.status.value,
            decision=result.decision,
            timed_out=result.timed_out,
        )
        return result

    async def cancel(self, run_id: str, reason: str = "cancelled by user") -> bool:
        return await self.coordinator.cancel_run(run_id, reason)

    async def retry(self, run_id: str) -> bool:
        return await self.coordinator.retry_failed(run_id)

    async def status(self, run_id: str) -> WorkflowRun:
        return (await self.updater.read(run_id)).run

    async def messages(self, run_id: str) -> list[Message]:
        return await self.store.list_messages(run_id)


async def run_analysis(
    ticker: str,
    user_id: str = "cli",
    settings_bag: dict[str, Any] | None = None,
    settings: Settings | None = None,
    llm: LLMClient | None = None,
    timeout_s: float | None = None,
) -> PipelineResult:
    """Run one analysis end to end.

    Args:
        ticker: Stock ticker symbol (e.g., "AAPL").
        user_id: Owner of the run.
        settings_bag: Per-run settings (timeouts, retries, debate rounds, model).
        settings: Application settings.
        llm: LLM client override.
        timeout_s: Wall-clock limit for waiting.

    Returns:
        PipelineResult with the final run.
    """
    async with AnalysisPipeline(settings, llm=llm) as pipeline:
        return await pipeline.run(ticker, user_id, settings_bag, timeout_s=timeout_s)
