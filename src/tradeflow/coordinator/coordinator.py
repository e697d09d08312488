"""
Analysis coordinator.

The coordinator is the only component that decides what a phase boundary
or an agent failure means for the run. It is invoked through the
`analysis-coordinator` function with a CoordinatorNotification:

- start: move the run to RUNNING and start the first phase
- last_in_phase: check phase health, then start the next phase or finish
- agent_error: apply the error policy (skip an optional agent with a
  degraded insight, or abort the run) and keep the chain moving
- invocation_failed: re-dispatch a hand-off or self-retry that never
  happened; a lost self-retry keeps its attempt count

Every notification may arrive more than once; handling a notification for
an already-resolved step or a finished run is a no-op. The one exception
is an ERROR run whose phase synthesis agent completes: that completion
reactivates the run. The coordinator also arms a diagnostic watchdog for
each agent it dispatches.
"""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime, timedelta
from typing import Any

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from tradeflow.config import RunSettings, Settings
from tradeflow.exceptions import (
    ConfigurationError,
    DispatchError,
    RunNotFoundError,
    TerminalStateError,
    UnknownAgentError,
    UnknownPhaseError,
)
from tradeflow.logging import get_logger, log_context
from tradeflow.runtime.dispatcher import Dispatcher
from tradeflow.runtime.handoff import Handoff
from tradeflow.state.atomic import SYSTEM_AGENT, AtomicUpdater
from tradeflow.state.store import SQLiteRunStore
from tradeflow.types import (
    CompletionType,
    CoordinatorNotification,
    ErrorType,
    Invocation,
    InvocationResult,
    MessageType,
    RetryEnvelope,
    RunStatus,
    StepStatus,
    WorkflowRun,
    utc_now,
)
from tradeflow.workflow.debate import DebateController
from tradeflow.workflow.health import (
    RecoveryAction,
    check_phase_health,
    determine_recovery_strategy,
    evaluate_readiness,
    is_phase_still_viable,
)
from tradeflow.workflow.phases import (
    COORDINATOR_FUNCTION,
    AgentSpec,
    LastInPhase,
    PhaseSequencer,
)

logger = get_logger(__name__)


class AnalysisCoordinator:
    """Decision-making component invoked at phase boundaries and on failure."""

    def __init__(
        self,
        settings: Settings,
        sequencer: PhaseSequencer,
        updater: AtomicUpdater,
        dispatcher: Dispatcher,
        handoff: Handoff,
        debate: DebateController,
        store: SQLiteRunStore | None = None,
    ) -> None:
        self.settings = settings
        self.sequencer = sequencer
        self.updater = updater
        self.dispatcher = dispatcher
        self.handoff = handoff
        self.debate = debate
        self.store = store

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(self, notification: CoordinatorNotification) -> InvocationResult:
        """Handle one coordinator notification.

        Store failures propagate so the notifier's bounded retry can redeliver.

        Args:
            notification: What happened.

        Returns:
            Invocation result; `skipped` for duplicate or stale notifications.
        """
        with log_context(run_id=notification.run_id, phase=notification.phase, agent=COORDINATOR_FUNCTION):
            logger.info(
                "Coordinator notified",
                completion_type=notification.completion_type.value,
                from_agent=notification.agent,
                error_type=notification.error_type.value if notification.error_type else None,
            )
            try:
                run = (await self.updater.read(notification.run_id)).run
            except RunNotFoundError:
                logger.warning("Notification for unknown run ignored")
                return InvocationResult.skip("run not found")

            if run.status == RunStatus.ERROR and self._recovers_run(run, notification):
                run = await self._recover(run, notification)
            if run.status.is_final or run.status == RunStatus.ERROR:
                # Otherwise ERROR runs move again only through retry_failed().
                logger.info("Run already finished, ignoring notification", status=run.status.value)
                return InvocationResult.skip(f"run is {run.status.value}")

            try:
                if notification.completion_type == CompletionType.START:
                    return await self._on_start(run)
                if notification.completion_type == CompletionType.LAST_IN_PHASE:
                    return await self._on_last_in_phase(run, notification)
                if notification.completion_type == CompletionType.AGENT_ERROR:
                    return await self._on_agent_error(run, notification)
                return await self._on_invocation_failed(run, notification)
            except (UnknownPhaseError, UnknownAgentError) as e:
                logger.error("Workflow configuration error", error=str(e))
                await self._fail_run(run.run_id, f"Workflow configuration error: {e}", ErrorType.OTHER)
                return InvocationResult.failed(str(e), ErrorType.OTHER)

    def _recovers_run(self, run: WorkflowRun, notification: CoordinatorNotification) -> bool:
        """A synthesis agent that completed its phase after the run failed brings it back."""
        if notification.completion_type != CompletionType.LAST_IN_PHASE or notification.error:
            return False
        if run.current_phase is None or run.current_phase != notification.phase:
            return False
        final = self.sequencer.get_phase(notification.phase).final_agent
        if final is None or notification.agent != final.function_name:
            return False
        step = run.find_step(notification.phase, final.function_name)
        return step is not None and step.status == StepStatus.COMPLETED

    async def _recover(self, run: WorkflowRun, notification: CoordinatorNotification) -> WorkflowRun:
        if await self.updater.set_run_status(run.run_id, RunStatus.RUNNING, reactivate=True):
            display_name = self.sequencer.agent_spec(notification.agent).display_name
            logger.warning("Run recovered from error", recovered_by=notification.agent, previous_error=run.error)
            await self.updater.append_message(
                run.run_id,
                SYSTEM_AGENT,
                f"Recovered from error after {display_name} completed",
                MessageType.SYSTEM,
                metadata={"previous_error": run.error},
            )
        return (await self.updater.read(run.run_id)).run

    # ------------------------------------------------------------------
    # Phase boundaries
    # ------------------------------------------------------------------

    async def _on_start(self, run: WorkflowRun) -> InvocationResult:
        if run.current_phase is not None:
            return InvocationResult.skip("run already started")
        await self.updater.set_run_status(run.run_id, RunStatus.RUNNING)
        await self._enter_phase(run, self.sequencer.first_phase.phase_id)
        return InvocationResult.ok(message="run started")

    async def _enter_phase(self, run: WorkflowRun, phase_id: str) -> bool:
        """Point the run at `phase_id` and dispatch its first agent.

        Returns:
            False if another coordinator call already entered the phase.
        """
        if not await self.updater.update_phase(run.run_id, phase_id, f"Starting {phase_id} phase"):
            logger.info("Phase already entered", phase=phase_id)
            return False

        phase = self.sequencer.get_phase(phase_id)
        if phase_id == self.debate.phase_id:
            await self.debate.start(run.run_id)

        first = phase.agents[0] if phase.agents else phase.final_agent
        if first is None:
            raise UnknownPhaseError(f"Phase {phase_id} has no agents", context={"phase": phase_id})
        logger.info("Phase started", phase=phase_id, first_agent=first.function_name)
        await self._dispatch(run, phase_id, first)
        return True

    async def _on_last_in_phase(
        self, run: WorkflowRun, notification: CoordinatorNotification
    ) -> InvocationResult:
        if run.current_phase != notification.phase:
            logger.info("Stale phase completion ignored", current_phase=run.current_phase)
            return InvocationResult.skip("phase already left")
        return await self._complete_phase(run.run_id, notification.phase)

    async def _complete_phase(
        self,
        run_id: str,
        phase_id: str,
        error_type: ErrorType = ErrorType.OTHER,
    ) -> InvocationResult:
        """Advance past `phase_id` if its health allows it."""
        run = (await self.updater.read(run_id)).run
        phase = self.sequencer.get_phase(phase_id)
        health = check_phase_health(run, phase)
        readiness = evaluate_readiness(health, phase)
        logger.info(
            "Phase health checked",
            phase=phase_id,
            completed=len(health.completed),
            failed=len(health.failed),
            running=len(health.running),
            pending=len(health.pending),
            can_proceed=readiness.can_proceed,
        )

        if readiness.waiting:
            return InvocationResult.skip(readiness.reason)
        if not readiness.can_proceed:
            await self._fail_run(run_id, f"Phase {phase_id} failed: {readiness.reason}", error_type)
            return InvocationResult.failed(readiness.reason, error_type)

        next_phase = self.sequencer.next_phase(phase_id)
        if next_phase is not None:
            await self._enter_phase(run, next_phase.phase_id)
            return InvocationResult.ok(message=f"entered {next_phase.phase_id}")
        return await self._finish(run)

    async def _finish(self, run: WorkflowRun) -> InvocationResult:
        if run.decision is None:
            await self._fail_run(run.run_id, "Workflow finished without a decision", ErrorType.AI_ERROR)
            return InvocationResult.failed("no decision", ErrorType.AI_ERROR)

        outcome = await self.updater.mark_completed(run.run_id)
        if not outcome.success:
            return InvocationResult.skip(outcome.reason or "completion refused")
        if not outcome.already_completed:
            await self.updater.append_message(
                run.run_id,
                SYSTEM_AGENT,
                f"Analysis complete for {run.ticker}: {run.decision}",
                MessageType.SYSTEM,
            )
        return InvocationResult.ok(message="run completed")

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    async def _on_agent_error(
        self, run: WorkflowRun, notification: CoordinatorNotification
    ) -> InvocationResult:
        agent = self.sequencer.agent_spec(notification.agent)
        phase_id = notification.phase
        step = run.find_step(phase_id, agent.function_name)
        if step is None or step.status.is_resolved:
            logger.info("Failure for resolved step ignored", step_status=step.status.value if step else None)
            return InvocationResult.skip("step already resolved")

        message = notification.error or f"{agent.display_name} failed"
        error_type = notification.error_type or ErrorType.OTHER
        transition = await self.updater.update_step_status(
            run.run_id, phase_id, agent.function_name, StepStatus.ERROR, error=message
        )
        if not transition.changed:
            return InvocationResult.skip("step already resolved")

        run_settings = RunSettings.from_bag(run.settings, self.settings)
        strategy = determine_recovery_strategy(
            agent, error_type, notification.attempt, run_settings.max_retries
        )
        logger.warning(
            "Agent failed",
            failed_agent=agent.function_name,
            error_type=error_type.value,
            action=strategy.action.value,
            reason=strategy.reason,
        )

        if strategy.action == RecoveryAction.ABORT:
            await self._fail_run(run.run_id, f"{agent.display_name} failed: {message}", error_type)
            return InvocationResult.failed(message, error_type)

        if strategy.action == RecoveryAction.RETRY and await self._redispatch_attempt(
            run, phase_id, agent, notification.attempt, run_settings, strategy.wait_seconds
        ):
            return InvocationResult.ok(message="retry dispatched")

        return await self._skip_agent(run, phase_id, agent, message, error_type)

    async def _skip_agent(
        self,
        run: WorkflowRun,
        phase_id: str,
        agent: AgentSpec,
        message: str,
        error_type: ErrorType,
    ) -> InvocationResult:
        """Continue without an optional agent."""
        await self._record_degraded_insight(run.run_id, agent, message, error_type)

        current = (await self.updater.read(run.run_id)).run
        phase = self.sequencer.get_phase(phase_id)
        if not is_phase_still_viable(check_phase_health(current, phase), phase):
            reason = f"Phase {phase_id} can no longer reach its success threshold"
            await self._fail_run(run.run_id, reason, error_type)
            return InvocationResult.failed(reason, error_type)

        invocation = self._invocation(current)
        if agent.debate_side:
            await self.debate.abandon(invocation, agent.function_name, f"{agent.display_name} failed")
            return InvocationResult.ok(message="debate abandoned")

        resolution = self.sequencer.resolve_next(phase_id, agent.function_name)
        if isinstance(resolution, LastInPhase):
            return await self._complete_phase(run.run_id, phase_id, error_type)
        await self._dispatch(current, phase_id, resolution.agent)
        return InvocationResult.ok(message=f"continued with {resolution.agent.function_name}")

    async def _record_degraded_insight(
        self, run_id: str, agent: AgentSpec, message: str, error_type: ErrorType
    ) -> None:
        """Downstream agents read this in place of the missing insight."""
        run = (await self.updater.read(run_id)).run
        if agent.insight_key in run.agent_insights:
            return
        await self.updater.update_agent_insights(
            run_id,
            agent.insight_key,
            {
                "agent": agent.display_name,
                "status": "unavailable",
                "analysis": "",
                "error": message,
                "error_type": error_type.value,
                "timestamp": utc_now().isoformat(),
            },
        )

    @staticmethod
    def _continued_envelope(agent: AgentSpec, attempt: int, run_settings: RunSettings) -> RetryEnvelope:
        return RetryEnvelope(
            attempt=attempt + 1,
            max_retries=run_settings.max_retries,
            timeout_ms=agent.timeout_ms or run_settings.timeout_ms,
            original_start_time=utc_now(),
            function_name=agent.function_name,
        )

    async def _redispatch_attempt(
        self,
        run: WorkflowRun,
        phase_id: str,
        agent: AgentSpec,
        attempt: int,
        run_settings: RunSettings,
        wait_seconds: float,
    ) -> bool:
        """Re-run an agent whose own retry could not be scheduled.

        The envelope continues from `attempt`, so the retry budget still bounds it.
        """
        envelope = self._continued_envelope(agent, attempt, run_settings)
        await self.updater.reset_step_to_pending(run.run_id, phase_id, agent.function_name)
        await self.updater.update_step_status(run.run_id, phase_id, agent.function_name, StepStatus.RUNNING)
        if wait_seconds:
            await asyncio.sleep(wait_seconds)
        try:
            self.dispatcher.submit(agent.function_name, self._invocation(run).with_retry(envelope))
        except DispatchError as e:
            logger.error("Coordinator retry not dispatched", target=agent.function_name, error=str(e))
            await self.updater.update_step_status(
                run.run_id, phase_id, agent.function_name, StepStatus.ERROR, error=str(e)
            )
            return False
        await self._arm_watchdog(run, phase_id, agent)
        return True

    async def _on_invocation_failed(
        self, run: WorkflowRun, notification: CoordinatorNotification
    ) -> InvocationResult:
        target_name = notification.failed_to_invoke or notification.agent
        agent = self.sequencer.agent_spec(target_name)
        phase_id = self.sequencer.phase_of(target_name).phase_id
        step = run.find_step(phase_id, target_name)
        if step is not None and step.status.is_resolved:
            return InvocationResult.skip("target already resolved")

        invocation = self._invocation(run)
        if notification.failed_to_invoke == notification.agent:
            # An agent's own retry was lost; keep counting from its attempt.
            run_settings = RunSettings.from_bag(run.settings, self.settings)
            invocation = invocation.with_retry(
                self._continued_envelope(agent, notification.attempt, run_settings)
            )
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(DispatchError),
            stop=stop_after_attempt(self.settings.NOTIFY_MAX_ATTEMPTS),
            wait=wait_fixed(self.settings.NOTIFY_RETRY_DELAY_MS / 1000),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self.updater.update_step_status(run.run_id, phase_id, target_name, StepStatus.RUNNING)
                    self.dispatcher.submit(target_name, invocation)
        except DispatchError as e:
            logger.error("Re-dispatch failed, treating as agent failure", target=target_name, error=str(e))
            failure = dataclasses.replace(
                notification,
                phase=phase_id,
                agent=target_name,
                completion_type=CompletionType.AGENT_ERROR,
                error=f"{agent.display_name} could not be invoked: {e}",
                error_type=ErrorType.OTHER,
                failed_to_invoke=None,
            )
            current = (await self.updater.read(run.run_id)).run
            return await self._on_agent_error(current, failure)

        logger.info("Re-dispatched agent after invocation failure", target=target_name)
        await self._arm_watchdog(run, phase_id, agent)
        return InvocationResult.ok(message=f"re-dispatched {target_name}")

    async def _fail_run(self, run_id: str, message: str, error_type: ErrorType) -> None:
        if await self.updater.set_run_status(run_id, RunStatus.ERROR, error=message, error_type=error_type):
            logger.error("Run failed", error=message, error_type=error_type.value)
            await self.updater.append_message(
                run_id,
                SYSTEM_AGENT,
                f"Analysis failed: {message}",
                MessageType.ERROR,
                metadata={"error_type": error_type.value},
            )

    # ------------------------------------------------------------------
    # Dispatch and watchdog
    # ------------------------------------------------------------------

    def _invocation(self, run: WorkflowRun) -> Invocation:
        return Invocation(
            run_id=run.run_id,
            ticker=run.ticker,
            user_id=run.user_id,
            settings=run.settings,
            phase_context=run.phase_context or None,
        )

    async def _dispatch(self, run: WorkflowRun, phase_id: str, agent: AgentSpec) -> bool:
        dispatched = await self.handoff.dispatch_agent(
            self._invocation(run), phase_id, agent, from_agent=COORDINATOR_FUNCTION
        )
        if dispatched:
            await self._arm_watchdog(run, phase_id, agent)
        return dispatched

    async def _arm_watchdog(self, run: WorkflowRun, phase_id: str, agent: AgentSpec) -> None:
        """Snapshot the version token now; check for progress after the window."""
        try:
            version = (await self.updater.read(run.run_id)).version
        except RunNotFoundError:
            return
        run_settings = RunSettings.from_bag(run.settings, self.settings)
        window_s = (agent.timeout_ms or run_settings.timeout_ms) / 1000 * self.settings.WATCHDOG_FACTOR
        try:
            self.dispatcher.spawn(
                self._watchdog(run.run_id, phase_id, agent.function_name, version, window_s),
                name=f"watchdog:{agent.function_name}",
                daemon=True,
            )
        except DispatchError as e:
            logger.debug("Watchdog not armed", target=agent.function_name, error=str(e))

    async def _watchdog(
        self,
        run_id: str,
        phase_id: str,
        function_name: str,
        version: int,
        window_s: float,
    ) -> None:
        await asyncio.sleep(window_s)
        try:
            snapshot = await self.updater.read(run_id)
        except RunNotFoundError:
            return
        if snapshot.run.status.is_final or snapshot.version != version:
            return

        logger.warning(
            "No progress since dispatch, worker may be stuck",
            run_id=run_id,
            phase=phase_id,
            target=function_name,
            window_s=window_s,
        )
        await self.updater.record_watchdog_alert(
            run_id,
            {
                "phase": phase_id,
                "agent": function_name,
                "version": version,
                "window_s": window_s,
                "timestamp": utc_now().isoformat(),
            },
        )

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def cancel_run(self, run_id: str, reason: str = "cancelled by user") -> bool:
        """Cancel a run. In-flight agents stop at their next guard check.

        Returns:
            True if the run is cancelled.
        """
        return await self.updater.mark_cancelled(run_id, reason)

    async def retry_failed(self, run_id: str) -> bool:
        """Reactivate an ERROR run from its current phase.

        Errored steps of the phase are reset to pending and the first
        pending agent is dispatched; completed agents are not re-run.

        Returns:
            True if the run was reactivated.

        Raises:
            RunNotFoundError: If the run does not exist.
            TerminalStateError: If the run is completed or cancelled.
        """
        run = (await self.updater.read(run_id)).run
        if run.status.is_final:
            raise TerminalStateError(
                f"Run {run_id} is {run.status.value} and cannot be retried",
                context={"run_id": run_id, "status": run.status.value},
            )
        if run.status != RunStatus.ERROR:
            logger.info("Retry requested for a run that has not failed", run_id=run_id, status=run.status.value)
            return False

        phase_id = run.current_phase or self.sequencer.first_phase.phase_id
        phase = self.sequencer.get_phase(phase_id)
        if not await self.updater.set_run_status(run_id, RunStatus.RUNNING, reactivate=True):
            return False
        await self.updater.append_message(
            run_id, SYSTEM_AGENT, f"Retrying {phase_id} phase", MessageType.SYSTEM
        )

        state = run.phase_state(phase_id)
        for step in state.agents if state else []:
            if step.status == StepStatus.ERROR:
                await self.updater.reset_step_to_pending(run_id, phase_id, step.function_name)

        current = (await self.updater.read(run_id)).run
        if current.current_phase is None:
            await self._enter_phase(current, phase_id)
            return True
        for agent in phase.all_agents:
            step = current.find_step(phase_id, agent.function_name)
            if step is not None and step.status == StepStatus.PENDING:
                await self._dispatch(current, phase_id, agent)
                return True

        await self._complete_phase(run_id, phase_id)
        return True

    async def find_stale_runs(self, max_age_s: float) -> list[dict[str, Any]]:
        """Active runs whose record has not changed for `max_age_s` seconds."""
        if self.store is None:
            raise ConfigurationError("Stale-run lookup needs a store that can list runs")
        cutoff = utc_now() - timedelta(seconds=max_age_s)
        stale: list[dict[str, Any]] = []
        for status in (RunStatus.PENDING, RunStatus.RUNNING):
            for row in await self.store.list_runs(status=status, limit=500):
                if datetime.fromisoformat(row["updated_at"]) < cutoff:
                    stale.append(row)
        return stale

    async def sweep_stale_runs(self, max_age_s: float, *, mark_error: bool = False) -> list[str]:
        """Flag stale runs with a watchdog alert, or fail them.

        Args:
            max_age_s: Inactivity threshold.
            mark_error: Move stale runs to ERROR (timeout) instead of only alerting.

        Returns:
            Run IDs that were swept.
        """
        swept: list[str] = []
        for row in await self.find_stale_runs(max_age_s):
            run_id = row["run_id"]
            if mark_error:
                await self._fail_run(
                    run_id, f"No progress for more than {int(max_age_s)} seconds", ErrorType.TIMEOUT
                )
            else:
                await self.updater.record_watchdog_alert(
                    run_id,
                    {
                        "phase": None,
                        "agent": None,
                        "version": row["version"],
                        "window_s": max_age_s,
                        "timestamp": utc_now().isoformat(),
                        "source": "sweep",
                    },
                )
            logger.warning("Stale run swept", run_id=run_id, mark_error=mark_error)
            swept.append(run_id)
        return swept
