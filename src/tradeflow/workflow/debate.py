"""
Bull/bear debate rounds of the research phase.

Bull and bear alternate for up to N rounds, bull first within a round and
rounds strictly sequential. After every bear turn the controller either
starts the next round (back to bull) or concludes the debate and hands
off to the phase's final agent. An external hook may end the debate early.
"""

from __future__ import annotations

from enum import Enum
from typing import Awaitable, Callable

from tradeflow.config import RunSettings
from tradeflow.logging import get_logger
from tradeflow.runtime.handoff import Handoff
from tradeflow.state.atomic import AtomicUpdater
from tradeflow.types import Invocation, StepStatus, WorkflowRun
from tradeflow.workflow.phases import PhaseSequencer, PhaseSpec

logger = get_logger(__name__)

EarlyStopHook = Callable[[WorkflowRun], Awaitable[bool]]


class DebateOutcome(str, Enum):
    NEXT_ROUND = "next_round"
    CONCLUDED = "concluded"
    DUPLICATE = "duplicate"


class DebateController:
    """Decides what follows a bear turn."""

    def __init__(
        self,
        sequencer: PhaseSequencer,
        updater: AtomicUpdater,
        handoff: Handoff,
        *,
        phase_id: str = "research",
        early_stop: EarlyStopHook | None = None,
    ) -> None:
        self.sequencer = sequencer
        self.updater = updater
        self.handoff = handoff
        self.phase_id = phase_id
        self.early_stop = early_stop

    @property
    def phase(self) -> PhaseSpec:
        return self.sequencer.get_phase(self.phase_id)

    def _side_agent(self, side: str) -> str:
        for agent in self.phase.agents:
            if agent.debate_side == side:
                return agent.function_name
        raise ValueError(f"Phase {self.phase_id} has no {side} agent")

    async def start(self, run_id: str) -> None:
        """Open round 1."""
        await self.updater.initialize_debate_round(run_id, 1)

    async def after_bear(
        self,
        invocation: Invocation,
        round_number: int,
        run_settings: RunSettings,
    ) -> DebateOutcome:
        """Start the next round or conclude the debate.

        Safe to call more than once for the same round: only one caller
        advances the round or concludes the phase.

        Args:
            invocation: The bear agent's invocation.
            round_number: The round the bear just contributed to.
            run_settings: Supplies the configured round count.
        """
        run = (await self.updater.read(invocation.run_id)).run
        if run.current_debate_round != round_number:
            logger.info(
                "Stale bear turn ignored",
                run_id=invocation.run_id,
                round=round_number,
                current_round=run.current_debate_round,
            )
            return DebateOutcome.DUPLICATE

        wants_more = round_number < run_settings.debate_rounds and not run.debate_concluded
        if wants_more and self.early_stop is not None and await self.early_stop(run):
            await self.updater.conclude_debate(invocation.run_id, "settled before the round limit")
            wants_more = False

        bull = self._side_agent("bull")
        bear = self._side_agent("bear")

        if wants_more:
            if not await self.updater.advance_debate_round(invocation.run_id, round_number):
                return DebateOutcome.DUPLICATE
            logger.info(
                "Starting next debate round",
                run_id=invocation.run_id,
                round=round_number + 1,
                max_rounds=run_settings.debate_rounds,
            )
            await self.handoff.dispatch_agent(
                invocation, self.phase_id, self.sequencer.agent_spec(bull), from_agent=bear
            )
            return DebateOutcome.NEXT_ROUND

        return await self._conclude(invocation, round_number, bull, bear)

    async def _conclude(
        self,
        invocation: Invocation,
        round_number: int,
        bull: str,
        bear: str,
    ) -> DebateOutcome:
        run_id = invocation.run_id
        await self.updater.update_step_status(run_id, self.phase_id, bull, StepStatus.COMPLETED)
        transition = await self.updater.update_step_status(
            run_id, self.phase_id, bear, StepStatus.COMPLETED
        )
        if transition.applied and not transition.changed:
            return DebateOutcome.DUPLICATE

        logger.info("Debate concluded", run_id=run_id, rounds=round_number)
        await self.handoff.advance(invocation, self.phase_id, bear)
        return DebateOutcome.CONCLUDED

    async def abandon(self, invocation: Invocation, failed_agent: str, reason: str) -> None:
        """End the debate after a debate agent failed for good.

        The other side keeps COMPLETED if it contributed to any round and
        is marked ERROR otherwise; the phase then moves on to its final
        agent.
        """
        run_id = invocation.run_id
        await self.updater.conclude_debate(run_id, reason)
        run = (await self.updater.read(run_id)).run
        for side in ("bull", "bear"):
            agent = self._side_agent(side)
            if agent == failed_agent:
                continue
            contributed = any(rnd.has_side(side) for rnd in run.debate_rounds)
            if contributed:
                await self.updater.update_step_status(run_id, self.phase_id, agent, StepStatus.COMPLETED)
            else:
                await self.updater.update_step_status(
                    run_id, self.phase_id, agent, StepStatus.ERROR, error=reason
                )
        logger.warning("Debate abandoned", run_id=run_id, failed_agent=failed_agent, reason=reason)
        await self.handoff.advance(invocation, self.phase_id, self._side_agent("bear"))

    async def conclude_early(self, run_id: str, reason: str) -> None:
        """External synthesis step: stop after the current round."""
        await self.updater.conclude_debate(run_id, reason)
