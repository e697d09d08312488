"""
Direct agent-to-agent hand-off within a phase.

An agent hands off only after durably recording its own completion: the
next agent's step is marked running first, then its invocation is
dispatched. If dispatch fails, the step goes back to pending and the
coordinator is told about the invocation failure.
"""

from __future__ import annotations

from tradeflow.exceptions import DispatchError
from tradeflow.logging import get_logger
from tradeflow.runtime.dispatcher import Dispatcher
from tradeflow.runtime.notify import CoordinatorNotifier
from tradeflow.state.atomic import AtomicUpdater
from tradeflow.types import (
    CompletionType,
    CoordinatorNotification,
    ErrorType,
    Invocation,
    StepStatus,
)
from tradeflow.workflow.phases import AgentSpec, LastInPhase, PhaseSequencer

logger = get_logger(__name__)


class Handoff:
    """Resolves and performs the next step after an agent finishes."""

    def __init__(
        self,
        sequencer: PhaseSequencer,
        updater: AtomicUpdater,
        dispatcher: Dispatcher,
        notifier: CoordinatorNotifier,
    ) -> None:
        self.sequencer = sequencer
        self.updater = updater
        self.dispatcher = dispatcher
        self.notifier = notifier

    async def dispatch_agent(
        self,
        invocation: Invocation,
        phase: str,
        agent: AgentSpec,
        *,
        from_agent: str,
    ) -> bool:
        """Mark `agent` running and dispatch a fresh invocation to it.

        Args:
            invocation: The caller's invocation; run identity and settings
                are forwarded, the retry envelope is not.
            phase: Phase of the target agent.
            agent: Target agent.
            from_agent: Caller's function name, for the failure notification.

        Returns:
            True if the invocation was dispatched.
        """
        await self.updater.update_step_status(
            invocation.run_id, phase, agent.function_name, StepStatus.RUNNING
        )
        try:
            self.dispatcher.submit(agent.function_name, invocation.with_retry(None))
        except DispatchError as e:
            logger.error(
                "Hand-off dispatch failed",
                run_id=invocation.run_id,
                target=agent.function_name,
                error=str(e),
            )
            await self.updater.reset_step_to_pending(invocation.run_id, phase, agent.function_name)
            self.notifier.notify(
                CoordinatorNotification.from_invocation(
                    invocation,
                    phase,
                    from_agent,
                    CompletionType.INVOCATION_FAILED,
                    error=str(e),
                    error_type=ErrorType.OTHER,
                    failed_to_invoke=agent.function_name,
                )
            )
            return False

        logger.info("Handed off", run_id=invocation.run_id, from_agent=from_agent, to_agent=agent.function_name)
        return True

    async def advance(self, invocation: Invocation, phase: str, current_agent: str) -> None:
        """Invoke the next agent of the phase, or notify the coordinator.

        Raises:
            UnknownPhaseError / UnknownAgentError: Sequencing fails closed.
        """
        resolution = self.sequencer.resolve_next(phase, current_agent)
        run = None
        while not isinstance(resolution, LastInPhase):
            # Agents already completed (a rerun after retry_failed) are passed over.
            if run is None:
                run = (await self.updater.read(invocation.run_id)).run
            step = run.find_step(phase, resolution.agent.function_name)
            if step is None or step.status != StepStatus.COMPLETED:
                await self.dispatch_agent(invocation, phase, resolution.agent, from_agent=current_agent)
                return
            resolution = self.sequencer.resolve_next(phase, resolution.agent.function_name)
        self.notify_last_in_phase(invocation, phase, current_agent)

    def notify_last_in_phase(self, invocation: Invocation, phase: str, agent: str) -> None:
        self.notifier.notify(
            CoordinatorNotification.from_invocation(
                invocation, phase, agent, CompletionType.LAST_IN_PHASE
            )
        )
