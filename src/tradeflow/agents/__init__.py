"""
Agent package.

This package implements the pipeline agents, one per function in the
phase table:
- AnalystAgent: analysis phase (macro, market, news, social media, fundamentals)
- BullResearcherAgent / BearResearcherAgent: research-phase debate
- ResearchManagerAgent: judges the debate
- TraderAgent: trading phase
- RiskAnalystAgent: risk phase reviewers (risky, safe, neutral)
- RiskManagerAgent: final decision
"""

from __future__ import annotations

from tradeflow.agents.analysts import AnalystAgent, RiskAnalystAgent
from tradeflow.agents.base import AgentContext, AgentDraft, AgentOutput, PipelineAgent
from tradeflow.agents.managers import ResearchManagerAgent, RiskManagerAgent, TraderAgent
from tradeflow.agents.researchers import BearResearcherAgent, BullResearcherAgent
from tradeflow.exceptions import UnknownAgentError

AGENT_CLASSES: dict[str, type[PipelineAgent]] = {
    "agent-macro-analyst": AnalystAgent,
    "agent-market-analyst": AnalystAgent,
    "agent-news-analyst": AnalystAgent,
    "agent-social-media-analyst": AnalystAgent,
    "agent-fundamentals-analyst": AnalystAgent,
    "agent-bull-researcher": BullResearcherAgent,
    "agent-bear-researcher": BearResearcherAgent,
    "agent-research-manager": ResearchManagerAgent,
    "agent-trader": TraderAgent,
    "agent-risky-analyst": RiskAnalystAgent,
    "agent-safe-analyst": RiskAnalystAgent,
    "agent-neutral-analyst": RiskAnalystAgent,
    "agent-risk-manager": RiskManagerAgent,
}


def build_agents(
    context: AgentContext,
    classes: dict[str, type[PipelineAgent]] | None = None,
) -> dict[str, PipelineAgent]:
    """Instantiate one agent per function name in the phase table.

    Args:
        context: Shared agent context.
        classes: Override of the function name -> class map.

    Raises:
        UnknownAgentError: If the phase table names a function with no class.
    """
    classes = {**AGENT_CLASSES, **(classes or {})}
    agents: dict[str, PipelineAgent] = {}
    for name in context.sequencer.function_names:
        cls = classes.get(name)
        if cls is None:
            raise UnknownAgentError(f"No agent class for {name}", context={"agent": name})
        agents[name] = cls(name, context)
    return agents


__all__ = [
    "AGENT_CLASSES",
    "AgentContext",
    "AgentDraft",
    "AgentOutput",
    "AnalystAgent",
    "BearResearcherAgent",
    "BullResearcherAgent",
    "PipelineAgent",
    "ResearchManagerAgent",
    "RiskAnalystAgent",
    "RiskManagerAgent",
    "TraderAgent",
    "build_agents",
]
