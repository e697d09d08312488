"""
Base classes for pipeline agents.

This module implements:
- AgentContext: shared resources every agent needs
- AgentDraft / AgentOutput: the private in-memory draft an agent works on
  and the result it records
- PipelineAgent: the invoke() template every agent follows

Concrete agents live in analysts.py, researchers.py and managers.py and
only implement analyze() (and, where needed, record() / complete()).
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from tradeflow.config import RunSettings, Settings
from tradeflow.exceptions import classify_error
from tradeflow.llm.base import EmptyResponseError, LLMClient, LLMRequest
from tradeflow.logging import get_logger, log_context
from tradeflow.runtime.guards import ExecutionGuard
from tradeflow.runtime.handoff import Handoff
from tradeflow.runtime.notify import CoordinatorNotifier
from tradeflow.runtime.retry import ArmedTimeout, TimeoutManager
from tradeflow.state.atomic import AtomicUpdater
from tradeflow.types import (
    CompletionType,
    CoordinatorNotification,
    ErrorType,
    Invocation,
    InvocationResult,
    MessageType,
    RetryEnvelope,
    StepStatus,
    WorkflowRun,
    utc_now,
)
from tradeflow.workflow.debate import DebateController
from tradeflow.workflow.phases import AgentSpec, PhaseSequencer


@dataclass
class AgentContext:
    """Runtime context for agents.

    Contains shared resources that all agents need access to.
    """

    settings: Settings
    sequencer: PhaseSequencer
    updater: AtomicUpdater
    guard: ExecutionGuard
    timeouts: TimeoutManager
    handoff: Handoff
    notifier: CoordinatorNotifier
    debate: DebateController
    llm: LLMClient


@dataclass
class AgentDraft:
    """Snapshot an agent works on between store reads and writes."""

    run: WorkflowRun
    debate_round: int = 0


@dataclass
class AgentOutput:
    """What an agent records for the run."""

    text: str
    insight: dict[str, Any]
    points: list[str] = field(default_factory=list)


class PipelineAgent(ABC):
    """Abstract base class for pipeline agents.

    invoke() runs the shared protocol:
        arm timer -> completion guard -> cancellation guard -> mark running
        -> analyze() on a private draft -> re-check guards -> record()
        -> complete() (mark completed, hand off) -> disarm timer

    No lock or store transaction is held across analyze().
    """

    role: str = "default"

    def __init__(self, function_name: str, context: AgentContext) -> None:
        """Initialize agent with context.

        Args:
            function_name: Function name in the phase table.
            context: Runtime context with shared resources.

        Raises:
            UnknownAgentError: If the function is not in the phase table.
        """
        self.context = context
        self.spec: AgentSpec = context.sequencer.agent_spec(function_name)
        self.phase: str = context.sequencer.phase_of(function_name).phase_id
        self._logger = get_logger(f"agent.{function_name}")

    @property
    def name(self) -> str:
        """Function name of this agent."""
        return self.spec.function_name

    @property
    def display_name(self) -> str:
        return self.spec.display_name

    @property
    def updater(self) -> AtomicUpdater:
        return self.context.updater

    @property
    def settings(self) -> Settings:
        return self.context.settings

    @abstractmethod
    async def analyze(
        self,
        draft: AgentDraft,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> AgentOutput:
        """Do the expensive work on the private draft.

        Args:
            draft: Run snapshot read before the call.
            invocation: Current invocation.
            run_settings: Narrow per-run settings.

        Returns:
            The output to record.
        """
        ...

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def invoke(self, invocation: Invocation) -> InvocationResult:
        """Run one attempt of this agent. Never raises.

        Args:
            invocation: Invocation contract; a missing retry envelope means
                this is the first attempt.

        Returns:
            Invocation result contract.
        """
        run_settings = RunSettings.from_bag(invocation.settings, self.settings)
        envelope = invocation.retry or RetryEnvelope.first(
            self.name,
            run_settings.max_retries,
            self.spec.timeout_ms or run_settings.timeout_ms,
        )
        invocation = invocation.with_retry(envelope)

        with log_context(
            run_id=invocation.run_id, phase=self.phase, agent=self.name, attempt=envelope.attempt
        ):
            self._logger.info("Agent invoked", retry_status=envelope.status_text())
            timer = self.context.timeouts.arm(invocation, run_settings)
            try:
                return await self._execute(invocation, run_settings, timer)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                return await self._on_failure(invocation, run_settings, e, timer)
            finally:
                timer.disarm("returned")

    async def _execute(
        self,
        invocation: Invocation,
        run_settings: RunSettings,
        timer: ArmedTimeout,
    ) -> InvocationResult:
        guard = self.context.guard

        completion = await guard.check_completion(invocation.run_id, self.phase, self.spec)
        if completion.has_completed:
            self._logger.info("Agent already completed, returning cached result")
            return InvocationResult.skip(completion.reason, insight=completion.existing_insight)
        if completion.blocked:
            self._logger.info("Agent invocation blocked", reason=completion.reason)
            return InvocationResult.skip(completion.reason)

        cancellation = await guard.check_cancellation(invocation.run_id)
        if not cancellation.should_continue:
            self._logger.info("Agent stopping before work", reason=cancellation.reason)
            if cancellation.is_canceled:
                return InvocationResult.cancelled(cancellation.reason)
            return InvocationResult.skip(cancellation.reason)

        await self.updater.update_step_status(
            invocation.run_id,
            self.phase,
            self.name,
            StepStatus.RUNNING,
            attempt=invocation.retry.attempt if invocation.retry else 0,
        )
        draft = await self.load_draft(invocation)

        output = await self.analyze(draft, invocation, run_settings)

        cancellation = await guard.check_cancellation(invocation.run_id)
        if not cancellation.should_continue:
            self._logger.info("Run stopped during analysis, discarding result", reason=cancellation.reason)
            if cancellation.is_canceled:
                return InvocationResult.cancelled(cancellation.reason)
            return InvocationResult.skip(cancellation.reason)
        completion = await guard.check_completion(invocation.run_id, self.phase, self.spec)
        if completion.has_completed or completion.blocked:
            self._logger.info("Another attempt already finished, discarding result")
            return InvocationResult.skip(completion.reason, insight=completion.existing_insight)

        await self.record(invocation, draft, output)
        timer.disarm("recorded")
        await self.complete(invocation, draft, run_settings)

        self._logger.info("Agent completed")
        return InvocationResult.ok(insight=output.insight)

    async def load_draft(self, invocation: Invocation) -> AgentDraft:
        run = (await self.updater.read(invocation.run_id)).run
        return AgentDraft(run=run, debate_round=run.current_debate_round or 1)

    # ------------------------------------------------------------------
    # Recording and hand-off (overridable)
    # ------------------------------------------------------------------

    async def record(self, invocation: Invocation, draft: AgentDraft, output: AgentOutput) -> None:
        """Write the insight and a message for the log."""
        await self.updater.update_agent_insights(invocation.run_id, self.spec.insight_key, output.insight)
        await self.updater.append_message(
            invocation.run_id, self.display_name, output.text, MessageType.ANALYSIS
        )

    async def complete(self, invocation: Invocation, draft: AgentDraft, run_settings: RunSettings) -> None:
        """Mark the step completed, then hand off.

        Only the attempt that actually moved the step to completed hands
        off; a duplicate attempt stops here.
        """
        transition = await self.updater.update_step_status(
            invocation.run_id, self.phase, self.name, StepStatus.COMPLETED
        )
        if not transition.changed:
            self._logger.info(
                "Completion not applied, skipping hand-off",
                previous=transition.previous.value if transition.previous else None,
            )
            return
        await self.context.handoff.advance(invocation, self.phase, self.name)

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _on_failure(
        self,
        invocation: Invocation,
        run_settings: RunSettings,
        error: Exception,
        timer: ArmedTimeout,
    ) -> InvocationResult:
        error_type = classify_error(error)
        message = str(error) or type(error).__name__
        self._logger.error("Agent failed", error=message, error_type=error_type.value)

        timer.disarm("failed")
        if timer.fired:
            # The timeout path already owns the retry or escalation.
            return InvocationResult.retrying(message, error_type)

        if error_type.is_transient and self.context.timeouts.schedule_retry(invocation, run_settings):
            return InvocationResult.retrying(message, error_type)

        await self.escalate(invocation, message, error_type)
        return InvocationResult.failed(message, error_type)

    async def escalate(self, invocation: Invocation, message: str, error_type: ErrorType) -> None:
        """Record the failure and notify the coordinator."""
        try:
            await self.updater.set_agent_error(
                invocation.run_id, self.display_name, self.spec.insight_key, message, error_type
            )
        except Exception as e:
            self._logger.error("Could not record agent error", error=str(e))

        self.context.notifier.notify(
            CoordinatorNotification.from_invocation(
                invocation,
                self.phase,
                self.name,
                CompletionType.AGENT_ERROR,
                error=message,
                error_type=error_type,
            )
        )

    # ------------------------------------------------------------------
    # LLM helper
    # ------------------------------------------------------------------

    async def ask(self, system: str, user: str, run_settings: RunSettings) -> str:
        """Call the LLM and return non-empty text.

        Model and token budget come from the opaque settings bag when the
        caller set them (`ai_model`, `<phase>_max_tokens`).
        """
        extra = run_settings.extra
        request = LLMRequest(
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            model=extra.get("ai_model") or self.settings.DEFAULT_MODEL,
            max_tokens=extra.get(f"{self.phase}_max_tokens") or self.settings.AGENT_MAX_TOKENS,
            role=self.role,
        )
        response = await self.context.llm.complete(request)
        if not response.content.strip():
            raise EmptyResponseError(f"{self.display_name} received an empty response")
        self._logger.debug(
            "LLM call finished",
            model=response.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
        return response.content

    @staticmethod
    def timestamp() -> str:
        return utc_now().isoformat()
