"""
Workflow definition: phase table, sequencing and phase health policy.
"""

from tradeflow.workflow.health import (
    RecoveryAction,
    categorize_agent_error,
    check_phase_health,
    determine_recovery_strategy,
    evaluate_readiness,
)
from tradeflow.workflow.phases import (
    COORDINATOR_FUNCTION,
    WORKFLOW_PHASES,
    AgentSpec,
    LastInPhase,
    NextAgent,
    PhaseSequencer,
    PhaseSpec,
)

__all__ = [
    "COORDINATOR_FUNCTION",
    "WORKFLOW_PHASES",
    "AgentSpec",
    "LastInPhase",
    "NextAgent",
    "PhaseSequencer",
    "PhaseSpec",
    "RecoveryAction",
    "categorize_agent_error",
    "check_phase_health",
    "determine_recovery_strategy",
    "evaluate_readiness",
]
