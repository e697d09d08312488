"""
Bull and bear researchers.

Debate agents contribute one side of the current round. They never mark
their own steps completed: the bull hands off to the bear, and after the
bear the debate controller decides whether another round follows or the
debate concludes.
"""

from __future__ import annotations

from tradeflow.agents.base import AgentContext, AgentDraft, AgentOutput, PipelineAgent
from tradeflow.agents.prompts import (
    extract_points,
    format_debate,
    format_insights,
    system_prompt,
)
from tradeflow.config import RunSettings
from tradeflow.types import Invocation

ANALYSIS_KEYS = [
    "macroAnalyst",
    "marketAnalyst",
    "newsAnalyst",
    "socialMediaAnalyst",
    "fundamentalsAnalyst",
]


class DebateResearcher(PipelineAgent):
    """One side of the bull/bear debate."""

    def __init__(self, function_name: str, context: AgentContext) -> None:
        super().__init__(function_name, context)
        if not self.spec.debate_side:
            raise ValueError(f"{function_name} is not a debate agent")
        self.side: str = self.spec.debate_side
        self.role = self.side

    @property
    def opponent(self) -> str:
        return "bear" if self.side == "bull" else "bull"

    async def analyze(
        self,
        draft: AgentDraft,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> AgentOutput:
        run = draft.run
        system = system_prompt(self.role, run.ticker)
        user = (
            f"Debate round {draft.debate_round} of {run_settings.debate_rounds}.\n\n"
            f"# Analyst reports\n{format_insights(run, ANALYSIS_KEYS)}\n\n"
            f"# Debate so far\n{format_debate(run)}"
        )
        text = await self.ask(system, user, run_settings)
        points = extract_points(text)
        return AgentOutput(
            text=text,
            insight={
                "agent": self.display_name,
                "side": self.side,
                "round": draft.debate_round,
                "analysis": text,
                "key_points": points,
                "timestamp": self.timestamp(),
            },
            points=points,
        )

    async def record(self, invocation: Invocation, draft: AgentDraft, output: AgentOutput) -> None:
        await self.updater.update_debate_round(
            invocation.run_id,
            draft.debate_round,
            self.side,
            output.text,
            output.points,
            agent=self.display_name,
        )
        await self.updater.update_agent_insights(invocation.run_id, self.spec.insight_key, output.insight)

    async def complete(self, invocation: Invocation, draft: AgentDraft, run_settings: RunSettings) -> None:
        if self.side == "bull":
            await self.context.handoff.advance(invocation, self.phase, self.name)
            return
        outcome = await self.context.debate.after_bear(invocation, draft.debate_round, run_settings)
        self._logger.info("Bear turn handled", round=draft.debate_round, outcome=outcome.value)


class BullResearcherAgent(DebateResearcher):
    pass


class BearResearcherAgent(DebateResearcher):
    pass
