"""
Static phase table and the phase sequencer.

Each phase lists its agents in order, an optional final (synthesis) agent
that runs after the regular agents, and the next phase. Given "I am agent
X in phase Y", the sequencer resolves who to invoke next, or reports that
X was last in its phase and the coordinator must be notified.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from tradeflow.exceptions import UnknownAgentError, UnknownPhaseError
from tradeflow.types import AgentStepState, PhaseState

COORDINATOR_FUNCTION = "analysis-coordinator"


@dataclass(frozen=True)
class AgentSpec:
    """Static description of one agent."""

    function_name: str
    display_name: str
    insight_key: str
    critical: bool = False
    debate_side: str | None = None
    timeout_ms: int | None = None


@dataclass(frozen=True)
class PhaseSpec:
    """Static description of one phase."""

    phase_id: str
    agents: tuple[AgentSpec, ...]
    next_phase: str | None = None
    final_agent: AgentSpec | None = None
    min_successes: int = 1

    @property
    def all_agents(self) -> tuple[AgentSpec, ...]:
        """Regular agents followed by the final agent, if any."""
        if self.final_agent is None:
            return self.agents
        return (*self.agents, self.final_agent)


@dataclass(frozen=True)
class NextAgent:
    """Resolution: invoke this agent next."""

    agent: AgentSpec
    is_final_agent: bool = False


@dataclass(frozen=True)
class LastInPhase:
    """Resolution: the caller was last in its phase; notify the coordinator."""

    phase: str

    @property
    def is_last_in_phase(self) -> bool:
        return True


Resolution = NextAgent | LastInPhase


WORKFLOW_PHASES: tuple[PhaseSpec, ...] = (
    PhaseSpec(
        phase_id="analysis",
        agents=(
            AgentSpec("agent-macro-analyst", "Macro Analyst", "macroAnalyst"),
            AgentSpec("agent-market-analyst", "Market Analyst", "marketAnalyst"),
            AgentSpec("agent-news-analyst", "News Analyst", "newsAnalyst"),
            AgentSpec("agent-social-media-analyst", "Social Media Analyst", "socialMediaAnalyst"),
            AgentSpec("agent-fundamentals-analyst", "Fundamentals Analyst", "fundamentalsAnalyst"),
        ),
        next_phase="research",
        min_successes=3,
    ),
    PhaseSpec(
        phase_id="research",
        agents=(
            AgentSpec("agent-bull-researcher", "Bull Researcher", "bullResearcher", debate_side="bull"),
            AgentSpec("agent-bear-researcher", "Bear Researcher", "bearResearcher", debate_side="bear"),
        ),
        final_agent=AgentSpec(
            "agent-research-manager", "Research Manager", "researchManager", critical=True
        ),
        next_phase="trading",
    ),
    PhaseSpec(
        phase_id="trading",
        agents=(AgentSpec("agent-trader", "Trader", "trader", critical=True),),
        next_phase="risk",
    ),
    PhaseSpec(
        phase_id="risk",
        agents=(
            AgentSpec("agent-risky-analyst", "Risky Analyst", "riskyAnalyst"),
            AgentSpec("agent-safe-analyst", "Safe Analyst", "safeAnalyst"),
            AgentSpec("agent-neutral-analyst", "Neutral Analyst", "neutralAnalyst"),
        ),
        final_agent=AgentSpec("agent-risk-manager", "Risk Manager", "riskManager", critical=True),
    ),
)


class PhaseSequencer:
    """Resolves hand-offs over a static phase table.

    Unknown phases or agents fail closed with an exception.
    """

    def __init__(self, phases: Iterable[PhaseSpec] = WORKFLOW_PHASES) -> None:
        self.phases: tuple[PhaseSpec, ...] = tuple(phases)
        if not self.phases:
            raise ValueError("Phase table is empty")
        self._by_id = {p.phase_id: p for p in self.phases}
        self._phase_of: dict[str, PhaseSpec] = {}
        self._agents: dict[str, AgentSpec] = {}
        for phase in self.phases:
            for agent in phase.all_agents:
                self._phase_of[agent.function_name] = phase
                self._agents[agent.function_name] = agent

    @property
    def first_phase(self) -> PhaseSpec:
        return self.phases[0]

    @property
    def function_names(self) -> list[str]:
        return list(self._agents)

    def get_phase(self, phase_id: str) -> PhaseSpec:
        try:
            return self._by_id[phase_id]
        except KeyError:
            raise UnknownPhaseError(f"Unknown phase: {phase_id}", context={"phase": phase_id}) from None

    def agent_spec(self, function_name: str) -> AgentSpec:
        try:
            return self._agents[function_name]
        except KeyError:
            raise UnknownAgentError(
                f"Unknown agent: {function_name}", context={"agent": function_name}
            ) from None

    def phase_of(self, function_name: str) -> PhaseSpec:
        """Return the phase an agent belongs to."""
        self.agent_spec(function_name)
        return self._phase_of[function_name]

    def next_phase(self, phase_id: str) -> PhaseSpec | None:
        """Return the phase after `phase_id`, or None if it is the last."""
        phase = self.get_phase(phase_id)
        return self.get_phase(phase.next_phase) if phase.next_phase else None

    def resolve_next(self, phase_id: str, current_agent: str) -> Resolution:
        """Resolve the hand-off target after `current_agent` finishes.

        Args:
            phase_id: The phase the caller believes it is in.
            current_agent: The caller's function name.

        Returns:
            NextAgent or LastInPhase.

        Raises:
            UnknownPhaseError: If the phase is not in the table.
            UnknownAgentError: If the agent is not part of that phase.
        """
        phase = self.get_phase(phase_id)

        if phase.final_agent and current_agent == phase.final_agent.function_name:
            return LastInPhase(phase=phase.phase_id)

        names = [a.function_name for a in phase.agents]
        if current_agent not in names:
            raise UnknownAgentError(
                f"Agent {current_agent} is not part of phase {phase_id}",
                context={"phase": phase_id, "agent": current_agent},
            )

        index = names.index(current_agent)
        if index + 1 < len(names):
            return NextAgent(agent=phase.agents[index + 1])
        if phase.final_agent is not None:
            return NextAgent(agent=phase.final_agent, is_final_agent=True)
        return LastInPhase(phase=phase.phase_id)

    def initial_workflow_steps(self) -> list[PhaseState]:
        """Build the pending step tree for a new run."""
        return [
            PhaseState(
                phase=phase.phase_id,
                agents=[
                    AgentStepState(name=agent.display_name, function_name=agent.function_name)
                    for agent in phase.all_agents
                ],
            )
            for phase in self.phases
        ]
