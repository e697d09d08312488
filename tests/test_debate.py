"""
Tests for the bull/bear debate rounds.
"""

from __future__ import annotations

from typing import Awaitable, Callable

import pytest

from conftest import NotificationRecorder, ScriptedLLM, invocation_for
from tradeflow.config import RunSettings, Settings
from tradeflow.coordinator import AnalysisPipeline, PipelineConfig
from tradeflow.types import CompletionType, MessageType, StepStatus, WorkflowRun
from tradeflow.workflow.debate import DebateOutcome
from tradeflow.workflow.phases import COORDINATOR_FUNCTION, WORKFLOW_PHASES, PhaseSpec

MakeRun = Callable[..., Awaitable[WorkflowRun]]
MakePipeline = Callable[..., AnalysisPipeline]

BULL, BEAR = WORKFLOW_PHASES[1].agents
DEBATE_ONLY = PhaseSpec("research", agents=(BULL, BEAR))


def debate_pipeline(
    make_pipeline: MakePipeline,
    recorder: NotificationRecorder,
    llm: ScriptedLLM,
    early_stop: object = None,
) -> AnalysisPipeline:
    pipeline = make_pipeline(PipelineConfig(phases=(DEBATE_ONLY,), early_stop=early_stop), llm=llm)
    pipeline.dispatcher.register(COORDINATOR_FUNCTION, recorder)
    return pipeline


async def start_debate(pipeline: AnalysisPipeline, run: WorkflowRun) -> None:
    await pipeline.debate.start(run.run_id)
    await pipeline.handoff.dispatch_agent(
        invocation_for(run), "research", BULL, from_agent=COORDINATOR_FUNCTION
    )
    assert await pipeline.dispatcher.drain(timeout_s=5)


class TestDebateRounds:
    """Tests for alternating rounds and conclusion."""

    @pytest.mark.asyncio
    async def test_two_rounds_then_phase_completion(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        """Test bull, bear, bull, bear, then one research-phase notification."""
        llm = ScriptedLLM()
        pipeline = debate_pipeline(make_pipeline, recorder, llm)
        run = await make_run(pipeline.sequencer, settings={"debate_rounds": 2})

        await start_debate(pipeline, run)

        assert llm.roles() == ["bull", "bear", "bull", "bear"]
        assert [name for name, _ in pipeline.dispatcher.history] == [
            BULL.function_name,
            BEAR.function_name,
            BULL.function_name,
            BEAR.function_name,
            COORDINATOR_FUNCTION,
        ]
        [notification] = recorder.notifications
        assert notification.completion_type == CompletionType.LAST_IN_PHASE
        assert notification.phase == "research"

        stored = await pipeline.status(run.run_id)
        assert [r.round for r in stored.debate_rounds] == [1, 2]
        assert all(r.is_complete for r in stored.debate_rounds)
        assert stored.debate_rounds[0].bull_points == ["Revenue growth remains above peers", "Margins are expanding"]
        assert stored.find_step("research", BULL.function_name).status == StepStatus.COMPLETED
        assert stored.find_step("research", BEAR.function_name).status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_single_round(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        llm = ScriptedLLM()
        pipeline = debate_pipeline(make_pipeline, recorder, llm)
        run = await make_run(pipeline.sequencer, settings={"debate_rounds": 1})

        await start_debate(pipeline, run)

        stored = await pipeline.status(run.run_id)
        assert llm.roles() == ["bull", "bear"]
        assert len(stored.debate_rounds) == 1
        assert len(recorder.of_type(CompletionType.LAST_IN_PHASE)) == 1

    @pytest.mark.asyncio
    async def test_early_stop_hook_ends_debate(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        async def settled(run: WorkflowRun) -> bool:
            return True

        llm = ScriptedLLM()
        pipeline = debate_pipeline(make_pipeline, recorder, llm, early_stop=settled)
        run = await make_run(pipeline.sequencer, settings={"debate_rounds": 3})

        await start_debate(pipeline, run)

        stored = await pipeline.status(run.run_id)
        assert llm.roles() == ["bull", "bear"]
        assert stored.debate_concluded
        assert any(
            m.type == MessageType.SYSTEM and m.text.startswith("Debate concluded") for m in stored.messages
        )
        assert len(recorder.of_type(CompletionType.LAST_IN_PHASE)) == 1

    @pytest.mark.asyncio
    async def test_concluding_early_stops_after_current_round(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        """Test that an external conclusion lets the open round finish and no more."""
        llm = ScriptedLLM()
        pipeline = debate_pipeline(make_pipeline, recorder, llm)
        run = await make_run(pipeline.sequencer, settings={"debate_rounds": 3})

        await pipeline.debate.start(run.run_id)
        await pipeline.debate.conclude_early(run.run_id, "analyst consensus")
        await pipeline.handoff.dispatch_agent(
            invocation_for(run), "research", BULL, from_agent=COORDINATOR_FUNCTION
        )
        assert await pipeline.dispatcher.drain(timeout_s=5)

        stored = await pipeline.status(run.run_id)
        assert llm.roles() == ["bull", "bear"]
        assert stored.debate_concluded
        assert [r.round for r in stored.debate_rounds] == [1]
        assert stored.debate_rounds[0].is_complete
        assert "Debate concluded: analyst consensus" in [m.text for m in stored.messages]
        assert len(recorder.of_type(CompletionType.LAST_IN_PHASE)) == 1

    @pytest.mark.asyncio
    async def test_repeated_bear_turn_is_a_no_op(
        self,
        make_pipeline: MakePipeline,
        make_run: MakeRun,
        recorder: NotificationRecorder,
        settings: Settings,
    ) -> None:
        """Test that only one caller concludes a round."""
        pipeline = debate_pipeline(make_pipeline, recorder, ScriptedLLM())
        run = await make_run(pipeline.sequencer, settings={"debate_rounds": 2})
        await start_debate(pipeline, run)
        run_settings = RunSettings.from_bag(run.settings, settings)

        latest = await pipeline.debate.after_bear(invocation_for(run), 2, run_settings)
        stale = await pipeline.debate.after_bear(invocation_for(run), 1, run_settings)
        await pipeline.dispatcher.drain(timeout_s=5)

        assert latest == DebateOutcome.DUPLICATE
        assert stale == DebateOutcome.DUPLICATE
        assert len(recorder.notifications) == 1

    @pytest.mark.asyncio
    async def test_duplicate_bull_invocation_skipped(
        self, make_pipeline: MakePipeline, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        llm = ScriptedLLM()
        pipeline = debate_pipeline(make_pipeline, recorder, llm)
        pipeline.dispatcher.unregister(BEAR.function_name)
        run = await make_run(pipeline.sequencer, settings={"debate_rounds": 2})
        await pipeline.debate.start(run.run_id)
        bull = pipeline.agents[BULL.function_name]

        first = await bull.invoke(invocation_for(run))
        second = await bull.invoke(invocation_for(run))

        assert first.success and not first.skipped
        assert second.skipped
        assert llm.roles() == ["bull"]
