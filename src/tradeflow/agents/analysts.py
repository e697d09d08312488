"""
Analyst agents.

AnalystAgent covers the analysis phase (macro, market, news, social
media, fundamentals); each instance differs only in its focus.
RiskAnalystAgent covers the risky/safe/neutral reviewers of the risk
phase; each instance differs only in its stance.
"""

from __future__ import annotations

from tradeflow.agents.base import AgentContext, AgentDraft, AgentOutput, PipelineAgent
from tradeflow.agents.prompts import (
    ANALYST_FOCUS,
    RISK_STANCES,
    extract_points,
    format_insights,
    system_prompt,
)
from tradeflow.config import RunSettings
from tradeflow.types import Invocation


class AnalystAgent(PipelineAgent):
    """Single-topic analyst in the analysis phase."""

    role = "analyst"

    def __init__(self, function_name: str, context: AgentContext) -> None:
        super().__init__(function_name, context)
        self.focus = ANALYST_FOCUS.get(function_name, "overall investment picture")

    async def analyze(
        self,
        draft: AgentDraft,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> AgentOutput:
        system = system_prompt(self.role, draft.run.ticker, focus=self.focus)
        user = f"Analyze {draft.run.ticker}."
        context = (invocation.phase_context or {}).get(self.spec.insight_key)
        if context:
            user += f"\n\nAdditional context:\n{context}"

        text = await self.ask(system, user, run_settings)
        points = extract_points(text)
        return AgentOutput(
            text=text,
            insight={
                "agent": self.display_name,
                "analysis": text,
                "key_points": points,
                "timestamp": self.timestamp(),
            },
            points=points,
        )


class RiskAnalystAgent(PipelineAgent):
    """Reviews the trader's plan from one risk stance."""

    role = "risk_analyst"

    def __init__(self, function_name: str, context: AgentContext) -> None:
        super().__init__(function_name, context)
        self.stance = RISK_STANCES.get(function_name, "balanced")

    async def analyze(
        self,
        draft: AgentDraft,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> AgentOutput:
        ticker = draft.run.ticker
        system = system_prompt(self.role, ticker, stance=self.stance)
        user = (
            f"Trader plan and research view for {ticker}:\n\n"
            f"{format_insights(draft.run, ['researchManager', 'trader'])}"
        )
        text = await self.ask(system, user, run_settings)
        return AgentOutput(
            text=text,
            insight={
                "agent": self.display_name,
                "stance": self.stance.split(":", 1)[0],
                "analysis": text,
                "timestamp": self.timestamp(),
            },
        )
