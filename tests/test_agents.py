"""
Tests for the agent invocation protocol.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import pytest

from conftest import NotificationRecorder, ScriptedLLM, invocation_for
from tradeflow.agents import AGENT_CLASSES, AgentContext, build_agents
from tradeflow.agents.base import AgentDraft, AgentOutput, PipelineAgent
from tradeflow.agents.prompts import extract_points, parse_decision
from tradeflow.config import RunSettings
from tradeflow.coordinator import AnalysisPipeline, PipelineConfig
from tradeflow.exceptions import AgentError, UnknownAgentError
from tradeflow.llm.base import RateLimitError
from tradeflow.state.store import SQLiteRunStore
from tradeflow.types import (
    CompletionType,
    ErrorType,
    Invocation,
    MessageType,
    RetryEnvelope,
    StepStatus,
    WorkflowRun,
)
from tradeflow.workflow.phases import COORDINATOR_FUNCTION, AgentSpec, PhaseSequencer, PhaseSpec

MakeRun = Callable[..., Awaitable[WorkflowRun]]
MakePipeline = Callable[..., AnalysisPipeline]


class StaticAgent(PipelineAgent):
    """Asks the LLM once and records the answer."""

    role = "analyst"

    async def analyze(
        self,
        draft: AgentDraft,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> AgentOutput:
        text = await self.ask("You are a test agent.", f"Analyze {draft.run.ticker}.", run_settings)
        return AgentOutput(
            text=f"{self.display_name}: {text}",
            insight={"agent": self.display_name, "analysis": text},
        )


class FailingAgent(PipelineAgent):
    async def analyze(
        self,
        draft: AgentDraft,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> AgentOutput:
        raise AgentError("model returned nonsense", error_type=ErrorType.AI_ERROR)


class CancellingAgent(PipelineAgent):
    """The run gets cancelled while this agent is working."""

    async def analyze(
        self,
        draft: AgentDraft,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> AgentOutput:
        await self.updater.mark_cancelled(invocation.run_id, "user pressed stop")
        return AgentOutput(text="late result", insight={"analysis": "late result"})


ABC_PHASE = PhaseSpec(
    "analysis",
    agents=(
        AgentSpec("agent-a", "Agent A", "agentA"),
        AgentSpec("agent-b", "Agent B", "agentB"),
        AgentSpec("agent-c", "Agent C", "agentC"),
    ),
    min_successes=2,
)

STATIC_CLASSES: dict[str, type[PipelineAgent]] = {
    "agent-a": StaticAgent,
    "agent-b": StaticAgent,
    "agent-c": StaticAgent,
}


def abc_pipeline(
    make_pipeline: MakePipeline,
    recorder: NotificationRecorder,
    classes: dict[str, type[PipelineAgent]] | None = None,
    llm: ScriptedLLM | None = None,
) -> AnalysisPipeline:
    pipeline = make_pipeline(
        PipelineConfig(phases=(ABC_PHASE,), agent_classes={**STATIC_CLASSES, **(classes or {})}),
        llm=llm,
    )
    pipeline.dispatcher.register(COORDINATOR_FUNCTION, recorder)
    return pipeline


class TestHandoffOrdering:
    """Tests that a phase runs as a single chain."""

    @pytest.mark.asyncio
    async def test_chain_ends_with_one_phase_notification(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        """Test A -> B -> C with exactly one last-in-phase notification from C."""
        pipeline = abc_pipeline(make_pipeline, recorder)
        run = await make_run(pipeline.sequencer)

        result = await pipeline.agents["agent-a"].invoke(invocation_for(run))
        assert await pipeline.dispatcher.drain(timeout_s=5)

        assert result.success
        assert [name for name, _ in pipeline.dispatcher.history] == ["agent-b", "agent-c", COORDINATOR_FUNCTION]
        [notification] = recorder.notifications
        assert notification.completion_type == CompletionType.LAST_IN_PHASE
        assert notification.agent == "agent-c"

        stored = await pipeline.status(run.run_id)
        assert all(step.status == StepStatus.COMPLETED for step in stored.phase_state("analysis").agents)
        assert set(stored.agent_insights) == {"agentA", "agentB", "agentC"}

    @pytest.mark.asyncio
    async def test_model_and_budget_from_settings_bag(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        llm = ScriptedLLM()
        pipeline = abc_pipeline(make_pipeline, recorder, llm=llm)
        run = await make_run(pipeline.sequencer, settings={"ai_model": "claude-test", "analysis_max_tokens": 321})
        pipeline.dispatcher.unregister("agent-b")

        await pipeline.agents["agent-a"].invoke(invocation_for(run))

        assert llm.calls[0].model == "claude-test"
        assert llm.calls[0].max_tokens == 321


class TestIdempotency:
    """Tests that duplicate invocations never duplicate effects."""

    @pytest.mark.asyncio
    async def test_second_invocation_returns_cached_result(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        llm = ScriptedLLM()
        pipeline = abc_pipeline(make_pipeline, recorder, llm=llm)
        run = await make_run(pipeline.sequencer)
        agent_a = pipeline.agents["agent-a"]

        first = await agent_a.invoke(invocation_for(run))
        await pipeline.dispatcher.drain(timeout_s=5)
        second = await agent_a.invoke(invocation_for(run))
        await pipeline.dispatcher.drain(timeout_s=5)

        assert first.success and not first.skipped
        assert second.skipped
        assert second.insight == first.insight
        assert len(llm.calls) == 3
        messages = await pipeline.messages(run.run_id)
        assert [m.agent for m in messages].count("Agent A") == 1
        assert len(recorder.of_type(CompletionType.LAST_IN_PHASE)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_hand_off_once(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        pipeline = abc_pipeline(make_pipeline, recorder)
        pipeline.dispatcher.unregister("agent-b")
        handed_off: list[Invocation] = []

        async def agent_b(invocation: Invocation) -> None:
            handed_off.append(invocation)

        pipeline.dispatcher.register("agent-b", agent_b)
        run = await make_run(pipeline.sequencer)
        agent_a = pipeline.agents["agent-a"]

        await asyncio.gather(agent_a.invoke(invocation_for(run)), agent_a.invoke(invocation_for(run)))
        await pipeline.dispatcher.drain(timeout_s=5)

        assert len(handed_off) == 1
        stored = await pipeline.status(run.run_id)
        assert stored.find_step("analysis", "agent-a").status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_late_retry_of_errored_step_is_skipped(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        """Test that a stale retry cannot overwrite the degraded insight of an errored step."""
        llm = ScriptedLLM()
        pipeline = abc_pipeline(make_pipeline, recorder, llm=llm)
        run = await make_run(pipeline.sequencer)
        degraded = {"agent": "Agent A", "status": "unavailable", "analysis": ""}
        await pipeline.updater.update_step_status(run.run_id, "analysis", "agent-a", StepStatus.ERROR)
        await pipeline.updater.update_agent_insights(run.run_id, "agentA", degraded)

        late = invocation_for(run).with_retry(RetryEnvelope.first("agent-a", 2, 50).next())
        result = await pipeline.agents["agent-a"].invoke(late)
        await pipeline.dispatcher.drain(timeout_s=5)

        assert result.skipped
        assert llm.calls == []
        stored = await pipeline.status(run.run_id)
        assert stored.find_step("analysis", "agent-a").status == StepStatus.ERROR
        assert stored.agent_insights["agentA"] == degraded


class TestCancellation:
    """Tests that cancelled runs receive no agent writes."""

    @pytest.mark.asyncio
    async def test_cancelled_before_work(
        self,
        make_pipeline: MakePipeline,
        make_run: MakeRun,
        recorder: NotificationRecorder,
        store: SQLiteRunStore,
    ) -> None:
        llm = ScriptedLLM()
        pipeline = abc_pipeline(make_pipeline, recorder, llm=llm)
        run = await make_run(pipeline.sequencer)
        await pipeline.cancel(run.run_id, "user request")
        _, version_before = await store.read_run(run.run_id)
        messages_before = len(await store.list_messages(run.run_id))

        result = await pipeline.agents["agent-a"].invoke(invocation_for(run))
        await pipeline.dispatcher.drain(timeout_s=5)

        _, version_after = await store.read_run(run.run_id)
        assert result.canceled
        assert not result.success
        assert version_after == version_before
        assert len(await store.list_messages(run.run_id)) == messages_before
        assert llm.calls == []
        assert recorder.notifications == []

    @pytest.mark.asyncio
    async def test_cancelled_during_work_discards_result(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        pipeline = abc_pipeline(make_pipeline, recorder, classes={"agent-a": CancellingAgent})
        run = await make_run(pipeline.sequencer)

        result = await pipeline.agents["agent-a"].invoke(invocation_for(run))
        await pipeline.dispatcher.drain(timeout_s=5)

        stored = await pipeline.status(run.run_id)
        assert result.canceled
        assert "agentA" not in stored.agent_insights
        assert stored.find_step("analysis", "agent-a").status == StepStatus.RUNNING
        assert [name for name, _ in pipeline.dispatcher.history] == []


class TestFailures:
    """Tests for the agent failure path."""

    @pytest.mark.asyncio
    async def test_permanent_error_escalates_once(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        pipeline = abc_pipeline(make_pipeline, recorder, classes={"agent-b": FailingAgent})
        run = await make_run(pipeline.sequencer)

        result = await pipeline.agents["agent-b"].invoke(invocation_for(run))
        await pipeline.dispatcher.drain(timeout_s=5)

        assert not result.success
        assert not result.retry_scheduled
        assert result.error_type == ErrorType.AI_ERROR
        [notification] = recorder.notifications
        assert notification.completion_type == CompletionType.AGENT_ERROR
        assert notification.error_type == ErrorType.AI_ERROR

        stored = await pipeline.status(run.run_id)
        assert stored.agent_insights["agentB_error"]["status"] == "failed"
        assert stored.messages[-1].type == MessageType.ERROR
        # Step status is the coordinator's decision.
        assert stored.find_step("analysis", "agent-b").status == StepStatus.RUNNING

    @pytest.mark.asyncio
    async def test_transient_error_retries_itself(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        llm = ScriptedLLM(failures={"analyst": [RateLimitError("429 too many requests")]})
        pipeline = abc_pipeline(make_pipeline, recorder, llm=llm)
        run = await make_run(pipeline.sequencer)

        result = await pipeline.agents["agent-a"].invoke(invocation_for(run))
        assert await pipeline.dispatcher.drain(timeout_s=5)

        assert result.retry_scheduled
        assert result.error_type == ErrorType.RATE_LIMIT
        assert [name for name, _ in pipeline.dispatcher.history][:3] == ["agent-a", "agent-b", "agent-c"]
        assert [n.completion_type for n in recorder.notifications] == [CompletionType.LAST_IN_PHASE]

        retried = pipeline.dispatcher.history[0][1]
        assert retried.retry.attempt == 1
        stored = await pipeline.status(run.run_id)
        assert stored.find_step("analysis", "agent-a").attempt == 1

    @pytest.mark.asyncio
    async def test_empty_response_is_an_ai_error(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        pipeline = abc_pipeline(make_pipeline, recorder, llm=ScriptedLLM(responses={"analyst": "   "}))
        run = await make_run(pipeline.sequencer)

        result = await pipeline.agents["agent-a"].invoke(invocation_for(run))

        assert result.error_type == ErrorType.AI_ERROR
        assert not result.retry_scheduled


class TestRiskManager:
    """Tests for the final decision agent."""

    @pytest.mark.asyncio
    async def test_records_decision(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        pipeline = make_pipeline()
        pipeline.dispatcher.register(COORDINATOR_FUNCTION, recorder)
        run = await make_run(pipeline.sequencer)

        result = await pipeline.agents["agent-risk-manager"].invoke(invocation_for(run))
        await pipeline.dispatcher.drain(timeout_s=5)

        stored = await pipeline.status(run.run_id)
        assert result.success
        assert stored.decision == "BUY"
        assert stored.confidence == 72.0
        decisions = [m for m in stored.messages if m.type == MessageType.DECISION]
        assert [m.text for m in decisions] == ["Final decision: BUY (confidence 72)"]
        assert [n.completion_type for n in recorder.notifications] == [CompletionType.LAST_IN_PHASE]

    @pytest.mark.asyncio
    async def test_missing_decision_fails(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        pipeline = make_pipeline(llm=ScriptedLLM(responses={"risk_manager": "Looks fine to me."}))
        pipeline.dispatcher.register(COORDINATOR_FUNCTION, recorder)
        run = await make_run(pipeline.sequencer)

        result = await pipeline.agents["agent-risk-manager"].invoke(invocation_for(run))
        await pipeline.dispatcher.drain(timeout_s=5)

        stored = await pipeline.status(run.run_id)
        assert result.error_type == ErrorType.AI_ERROR
        assert stored.decision is None
        assert "riskManager_error" in stored.agent_insights


class TestAgentRegistry:
    """Tests for building agents from the phase table."""

    @pytest.mark.asyncio
    async def test_every_function_has_a_class(self, make_pipeline: MakePipeline) -> None:
        pipeline = make_pipeline()

        assert set(pipeline.agents) == set(AGENT_CLASSES)
        assert pipeline.agents["agent-bull-researcher"].side == "bull"

    @pytest.mark.asyncio
    async def test_missing_class_fails_closed(self, make_pipeline: MakePipeline) -> None:
        pipeline = make_pipeline()
        context = AgentContext(
            settings=pipeline.settings,
            sequencer=PhaseSequencer((ABC_PHASE,)),
            updater=pipeline.updater,
            guard=pipeline.guard,
            timeouts=pipeline.timeouts,
            handoff=pipeline.handoff,
            notifier=pipeline.notifier,
            debate=pipeline.debate,
            llm=pipeline.llm,
        )

        with pytest.raises(UnknownAgentError):
            build_agents(context)


class TestPromptHelpers:
    """Tests for parsing model output."""

    def test_parse_decision(self) -> None:
        assert parse_decision("decision: sell\nConfidence: 55.5") == ("SELL", 55.5)
        assert parse_decision("no call") == (None, None)

    def test_extract_points(self) -> None:
        text = "Summary line\n- first\n* second\n1. third\nplain"

        assert extract_points(text) == ["first", "second", "third"]
