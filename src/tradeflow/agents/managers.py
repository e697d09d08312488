"""
Synthesis agents: research manager, trader and risk manager.

The risk manager writes the run's final decision; without a parseable
decision the run cannot complete.
"""

from __future__ import annotations

from tradeflow.agents.base import AgentDraft, AgentOutput, PipelineAgent
from tradeflow.agents.prompts import format_debate, format_insights, parse_decision, system_prompt
from tradeflow.agents.researchers import ANALYSIS_KEYS
from tradeflow.config import RunSettings
from tradeflow.exceptions import AgentError
from tradeflow.types import ErrorType, Invocation, MessageType

RISK_KEYS = ["riskyAnalyst", "safeAnalyst", "neutralAnalyst"]


class ResearchManagerAgent(PipelineAgent):
    """Judges the debate and issues a research recommendation."""

    role = "research_manager"

    async def analyze(
        self,
        draft: AgentDraft,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> AgentOutput:
        run = draft.run
        user = (
            f"# Analyst reports\n{format_insights(run, ANALYSIS_KEYS)}\n\n"
            f"# Debate\n{format_debate(run)}"
        )
        text = await self.ask(system_prompt(self.role, run.ticker), user, run_settings)
        return AgentOutput(
            text=text,
            insight={
                "agent": self.display_name,
                "analysis": text,
                "debate_rounds": len(run.debate_rounds),
                "timestamp": self.timestamp(),
            },
        )


class TraderAgent(PipelineAgent):
    """Turns the research recommendation into a trade proposal."""

    role = "trader"

    async def analyze(
        self,
        draft: AgentDraft,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> AgentOutput:
        run = draft.run
        user = f"# Research recommendation\n{format_insights(run, ['researchManager'])}"
        text = await self.ask(system_prompt(self.role, run.ticker), user, run_settings)
        return AgentOutput(
            text=text,
            insight={"agent": self.display_name, "analysis": text, "timestamp": self.timestamp()},
        )


class RiskManagerAgent(PipelineAgent):
    """Makes the final BUY/SELL/HOLD decision."""

    role = "risk_manager"

    async def analyze(
        self,
        draft: AgentDraft,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> AgentOutput:
        run = draft.run
        user = (
            f"# Trader plan\n{format_insights(run, ['trader'])}\n\n"
            f"# Risk reviews\n{format_insights(run, RISK_KEYS)}"
        )
        text = await self.ask(system_prompt(self.role, run.ticker), user, run_settings)
        decision, confidence = parse_decision(text)
        if decision is None:
            raise AgentError(
                "Risk manager response contained no DECISION line",
                error_type=ErrorType.AI_ERROR,
                context={"ticker": run.ticker},
            )
        return AgentOutput(
            text=text,
            insight={
                "agent": self.display_name,
                "decision": decision,
                "confidence": confidence,
                "analysis": text,
                "timestamp": self.timestamp(),
            },
        )

    async def record(self, invocation: Invocation, draft: AgentDraft, output: AgentOutput) -> None:
        await super().record(invocation, draft, output)
        decision = output.insight["decision"]
        confidence = output.insight["confidence"]
        if await self.updater.record_decision(invocation.run_id, decision, confidence):
            summary = f"Final decision: {decision}"
            if confidence is not None:
                summary += f" (confidence {confidence:g})"
            await self.updater.append_message(
                invocation.run_id,
                self.display_name,
                summary,
                MessageType.DECISION,
                metadata={"decision": decision, "confidence": confidence},
            )
