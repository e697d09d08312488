"""
Tests for the function runtime: dispatch, notifications, guards and hand-off.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import pytest

from conftest import NotificationRecorder, invocation_for
from tradeflow.exceptions import DispatchError, StoreError
from tradeflow.runtime.dispatcher import Dispatcher
from tradeflow.runtime.guards import ExecutionGuard
from tradeflow.runtime.handoff import Handoff
from tradeflow.runtime.notify import CoordinatorNotifier
from tradeflow.state.atomic import AtomicUpdater
from tradeflow.types import (
    CompletionType,
    CoordinatorNotification,
    MessageType,
    RunStatus,
    StepStatus,
    WorkflowRun,
)
from tradeflow.workflow.phases import COORDINATOR_FUNCTION, PhaseSequencer

MakeRun = Callable[..., Awaitable[WorkflowRun]]


def start_notification(run: WorkflowRun) -> CoordinatorNotification:
    return CoordinatorNotification(
        run_id=run.run_id,
        phase="analysis",
        agent=COORDINATOR_FUNCTION,
        completion_type=CompletionType.START,
    )


class TestDispatcher:
    """Tests for the in-process function registry."""

    @pytest.mark.asyncio
    async def test_submit_runs_detached(self) -> None:
        dispatcher = Dispatcher()
        seen: list[Any] = []

        async def handler(payload: Any) -> None:
            seen.append(payload)

        dispatcher.register("echo", handler)
        dispatcher.submit("echo", 1)
        dispatcher.submit("echo", 2)

        assert await dispatcher.drain(timeout_s=1)
        assert sorted(seen) == [1, 2]
        assert [name for name, _ in dispatcher.history] == ["echo", "echo"]

    @pytest.mark.asyncio
    async def test_unknown_function(self) -> None:
        with pytest.raises(DispatchError):
            Dispatcher().submit("missing", {})

    @pytest.mark.asyncio
    async def test_task_errors_do_not_propagate(self) -> None:
        dispatcher = Dispatcher()

        async def broken(payload: Any) -> None:
            raise RuntimeError("boom")

        dispatcher.register("broken", broken)
        dispatcher.submit("broken", None)

        assert await dispatcher.drain(timeout_s=1)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_and_refuses_work(self) -> None:
        dispatcher = Dispatcher()
        never = asyncio.Event()

        async def hang(payload: Any) -> None:
            await never.wait()

        dispatcher.register("hang", hang)
        task = dispatcher.submit("hang", None)
        await dispatcher.shutdown()

        assert task.cancelled()
        with pytest.raises(DispatchError):
            dispatcher.submit("hang", None)

    @pytest.mark.asyncio
    async def test_drain_ignores_daemons(self) -> None:
        dispatcher = Dispatcher()
        dispatcher.spawn(asyncio.sleep(60), name="watchdog", daemon=True)

        assert await dispatcher.drain(timeout_s=0.5)
        await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_invoke_with_retry(self) -> None:
        dispatcher = Dispatcher()
        calls = {"n": 0}

        async def flaky(payload: Any) -> str:
            calls["n"] += 1
            if calls["n"] < 3:
                raise RuntimeError("not yet")
            return "ok"

        dispatcher.register("flaky", flaky)

        assert await dispatcher.invoke_with_retry("flaky", None, attempts=3, delay_s=0) == "ok"
        assert calls["n"] == 3


class TestCoordinatorNotifier:
    """Tests for fire-and-forget notification delivery."""

    @pytest.mark.asyncio
    async def test_delivers_to_coordinator(
        self, updater: AtomicUpdater, make_run: MakeRun, recorder: NotificationRecorder
    ) -> None:
        dispatcher = Dispatcher()
        dispatcher.register(COORDINATOR_FUNCTION, recorder)
        notifier = CoordinatorNotifier(dispatcher, updater, max_attempts=2, retry_delay_ms=1)
        run = await make_run()

        task = notifier.notify(start_notification(run))

        assert task is not None
        assert await task
        assert [n.completion_type for n in recorder.notifications] == [CompletionType.START]

    @pytest.mark.asyncio
    async def test_failure_is_recorded_on_run(self, updater: AtomicUpdater, make_run: MakeRun) -> None:
        """Test that a lost notification leaves a visible error message."""
        dispatcher = Dispatcher()
        attempts = {"n": 0}

        async def unavailable(payload: Any) -> None:
            attempts["n"] += 1
            raise RuntimeError("coordinator down")

        dispatcher.register(COORDINATOR_FUNCTION, unavailable)
        notifier = CoordinatorNotifier(dispatcher, updater, max_attempts=3, retry_delay_ms=1)
        run = await make_run()

        delivered = await notifier.deliver(start_notification(run))
        stored = (await updater.read(run.run_id)).run

        assert not delivered
        assert attempts["n"] == 3
        assert stored.messages[-1].type == MessageType.ERROR
        assert stored.messages[-1].text.startswith("COORDINATOR_NOTIFICATION_FAILED")


class TestExecutionGuard:
    """Tests for completion and cancellation guards."""

    @pytest.mark.asyncio
    async def test_completed_step_returns_cached_insight(
        self, updater: AtomicUpdater, make_run: MakeRun, sequencer: PhaseSequencer
    ) -> None:
        run = await make_run()
        await updater.update_agent_insights(run.run_id, "trader", {"analysis": "buy"})
        await updater.update_step_status(run.run_id, "trading", "agent-trader", StepStatus.COMPLETED)

        check = await ExecutionGuard(updater).check_completion(
            run.run_id, "trading", sequencer.agent_spec("agent-trader")
        )

        assert check.has_completed
        assert check.existing_insight == {"analysis": "buy"}

    @pytest.mark.asyncio
    async def test_running_step_does_not_block(
        self, updater: AtomicUpdater, make_run: MakeRun, sequencer: PhaseSequencer
    ) -> None:
        run = await make_run()
        await updater.update_step_status(run.run_id, "trading", "agent-trader", StepStatus.RUNNING)

        check = await ExecutionGuard(updater).check_completion(
            run.run_id, "trading", sequencer.agent_spec("agent-trader")
        )

        assert not check.has_completed
        assert not check.blocked

    @pytest.mark.asyncio
    async def test_errored_step_blocks_until_reset(
        self, updater: AtomicUpdater, make_run: MakeRun, sequencer: PhaseSequencer
    ) -> None:
        run = await make_run()
        await updater.update_step_status(run.run_id, "trading", "agent-trader", StepStatus.ERROR)
        guard = ExecutionGuard(updater)
        trader = sequencer.agent_spec("agent-trader")

        check = await guard.check_completion(run.run_id, "trading", trader)
        assert check.blocked
        assert check.status == StepStatus.ERROR

        await updater.reset_step_to_pending(run.run_id, "trading", "agent-trader")
        assert not (await guard.check_completion(run.run_id, "trading", trader)).blocked

    @pytest.mark.asyncio
    async def test_debate_agents_checked_per_round(
        self, updater: AtomicUpdater, make_run: MakeRun, sequencer: PhaseSequencer
    ) -> None:
        run = await make_run()
        await updater.initialize_debate_round(run.run_id, 1)
        await updater.update_debate_round(run.run_id, 1, "bull", "case", [], agent="Bull Researcher")
        guard = ExecutionGuard(updater)
        bull = sequencer.agent_spec("agent-bull-researcher")

        assert (await guard.check_completion(run.run_id, "research", bull)).has_completed

        await updater.advance_debate_round(run.run_id, 1)
        assert not (await guard.check_completion(run.run_id, "research", bull)).has_completed

    @pytest.mark.asyncio
    async def test_cancellation(self, updater: AtomicUpdater, make_run: MakeRun) -> None:
        guard = ExecutionGuard(updater)
        running = await make_run()
        cancelled = await make_run()
        failed = await make_run(status=RunStatus.ERROR)
        await updater.mark_cancelled(cancelled.run_id, "user request")

        assert (await guard.check_cancellation(running.run_id)).should_continue
        assert (await guard.check_cancellation(failed.run_id)).should_continue
        check = await guard.check_cancellation(cancelled.run_id)
        assert check.is_canceled
        assert check.reason == "user request"

    @pytest.mark.asyncio
    async def test_missing_run_stops_work(self, updater: AtomicUpdater) -> None:
        check = await ExecutionGuard(updater).check_cancellation("run_missing")

        assert not check.should_continue
        assert not check.is_canceled

    @pytest.mark.asyncio
    async def test_store_outage_proceeds(self, updater: AtomicUpdater, sequencer: PhaseSequencer) -> None:
        """Test that a failing check lets the agent do its work."""

        class UnavailableUpdater(AtomicUpdater):
            async def read(self, run_id: str) -> Any:
                raise StoreError("database is locked")

        guard = ExecutionGuard(UnavailableUpdater(updater.store))

        completion = await guard.check_completion("run_x", "trading", sequencer.agent_spec("agent-trader"))
        cancellation = await guard.check_cancellation("run_x")

        assert not completion.has_completed
        assert not completion.blocked
        assert cancellation.should_continue


class TestHandoff:
    """Tests for agent-to-agent hand-off."""

    @pytest.mark.asyncio
    async def test_marks_next_running_then_dispatches(
        self, updater: AtomicUpdater, make_run: MakeRun, sequencer: PhaseSequencer
    ) -> None:
        dispatcher = Dispatcher()
        received: list[Any] = []

        async def market(payload: Any) -> None:
            received.append(payload)

        dispatcher.register("agent-market-analyst", market)
        notifier = CoordinatorNotifier(dispatcher, updater)
        run = await make_run()

        await Handoff(sequencer, updater, dispatcher, notifier).advance(
            invocation_for(run), "analysis", "agent-macro-analyst"
        )
        await dispatcher.drain(timeout_s=1)
        stored = (await updater.read(run.run_id)).run

        assert stored.find_step("analysis", "agent-market-analyst").status == StepStatus.RUNNING
        assert len(received) == 1
        assert received[0].retry is None

    @pytest.mark.asyncio
    async def test_failed_dispatch_resets_and_notifies(
        self,
        updater: AtomicUpdater,
        make_run: MakeRun,
        sequencer: PhaseSequencer,
        recorder: NotificationRecorder,
    ) -> None:
        """Test that a hand-off that never happened is reported, not lost."""
        dispatcher = Dispatcher()
        dispatcher.register(COORDINATOR_FUNCTION, recorder)
        notifier = CoordinatorNotifier(dispatcher, updater, max_attempts=1, retry_delay_ms=1)
        run = await make_run()

        dispatched = await Handoff(sequencer, updater, dispatcher, notifier).dispatch_agent(
            invocation_for(run),
            "analysis",
            sequencer.agent_spec("agent-market-analyst"),
            from_agent="agent-macro-analyst",
        )
        await dispatcher.drain(timeout_s=1)
        stored = (await updater.read(run.run_id)).run

        assert not dispatched
        assert stored.find_step("analysis", "agent-market-analyst").status == StepStatus.PENDING
        [notification] = recorder.notifications
        assert notification.completion_type == CompletionType.INVOCATION_FAILED
        assert notification.failed_to_invoke == "agent-market-analyst"

    @pytest.mark.asyncio
    async def test_last_in_phase_notifies_coordinator(
        self,
        updater: AtomicUpdater,
        make_run: MakeRun,
        sequencer: PhaseSequencer,
        recorder: NotificationRecorder,
    ) -> None:
        dispatcher = Dispatcher()
        dispatcher.register(COORDINATOR_FUNCTION, recorder)
        notifier = CoordinatorNotifier(dispatcher, updater)
        run = await make_run()

        await Handoff(sequencer, updater, dispatcher, notifier).advance(
            invocation_for(run), "trading", "agent-trader"
        )
        await dispatcher.drain(timeout_s=1)

        [notification] = recorder.notifications
        assert notification.completion_type == CompletionType.LAST_IN_PHASE
        assert notification.phase == "trading"

    @pytest.mark.asyncio
    async def test_completed_agents_are_passed_over(
        self,
        updater: AtomicUpdater,
        make_run: MakeRun,
        sequencer: PhaseSequencer,
        recorder: NotificationRecorder,
    ) -> None:
        dispatcher = Dispatcher()
        dispatcher.register(COORDINATOR_FUNCTION, recorder)
        notifier = CoordinatorNotifier(dispatcher, updater)
        run = await make_run()
        for name in ("agent-social-media-analyst", "agent-fundamentals-analyst"):
            await updater.update_step_status(run.run_id, "analysis", name, StepStatus.COMPLETED)

        await Handoff(sequencer, updater, dispatcher, notifier).advance(
            invocation_for(run), "analysis", "agent-news-analyst"
        )
        await dispatcher.drain(timeout_s=1)

        assert [n.completion_type for n in recorder.notifications] == [CompletionType.LAST_IN_PHASE]
