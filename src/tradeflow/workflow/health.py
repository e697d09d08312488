"""
Phase health checks and error policy.

Decides, from the recorded step statuses, whether a phase may advance,
and how an agent's failure should be handled: optional agents may be
skipped with a degraded insight, load-bearing agents abort the run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from tradeflow.types import ErrorType, StepStatus, WorkflowRun
from tradeflow.workflow.phases import AgentSpec, PhaseSpec


class RecoveryAction(str, Enum):
    """What to do about a failed agent."""

    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


@dataclass(frozen=True)
class ErrorCategory:
    """Classification of an agent failure."""

    is_critical: bool
    is_retryable: bool
    stop_workflow: bool
    reason: str


@dataclass(frozen=True)
class RecoveryStrategy:
    action: RecoveryAction
    reason: str
    wait_seconds: float = 0.0


@dataclass
class PhaseHealth:
    """Step counts of one phase."""

    phase: str
    total: int = 0
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    running: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    failed_critical: list[str] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return len(self.completed) / self.total if self.total else 0.0


@dataclass(frozen=True)
class Readiness:
    can_proceed: bool
    waiting: bool
    reason: str


def categorize_agent_error(agent: AgentSpec, error_type: ErrorType | None) -> ErrorCategory:
    """Classify a failure by error class and the agent's importance."""
    error_type = error_type or ErrorType.OTHER

    if error_type == ErrorType.API_KEY:
        return ErrorCategory(
            is_critical=True,
            is_retryable=False,
            stop_workflow=True,
            reason="API key errors cannot be fixed by retrying",
        )
    if agent.critical:
        return ErrorCategory(
            is_critical=True,
            is_retryable=error_type.is_transient,
            stop_workflow=True,
            reason=f"{agent.display_name} output is required for the final decision",
        )
    return ErrorCategory(
        is_critical=False,
        is_retryable=error_type.is_transient,
        stop_workflow=False,
        reason=f"{agent.display_name} is optional; continuing with degraded insight",
    )


def check_phase_health(run: WorkflowRun, phase: PhaseSpec) -> PhaseHealth:
    """Count step outcomes of `phase` in `run`."""
    health = PhaseHealth(phase=phase.phase_id)
    state = run.phase_state(phase.phase_id)
    if state is None:
        return health

    critical = {a.function_name for a in phase.all_agents if a.critical}
    for step in state.agents:
        health.total += 1
        if step.status == StepStatus.COMPLETED:
            health.completed.append(step.function_name)
        elif step.status == StepStatus.ERROR:
            health.failed.append(step.function_name)
            if step.function_name in critical:
                health.failed_critical.append(step.function_name)
        elif step.status == StepStatus.RUNNING:
            health.running.append(step.function_name)
        else:
            health.pending.append(step.function_name)
    return health


def evaluate_readiness(health: PhaseHealth, phase: PhaseSpec) -> Readiness:
    """Decide whether the coordinator may move past `phase`.

    Running agents mean the phase is not finished yet. Otherwise the phase
    needs its minimum number of successes and no critical failures.
    """
    if health.running:
        return Readiness(
            can_proceed=False,
            waiting=True,
            reason=f"agents still running: {', '.join(health.running)}",
        )
    if health.failed_critical:
        return Readiness(
            can_proceed=False,
            waiting=False,
            reason=f"critical agents failed: {', '.join(health.failed_critical)}",
        )
    required = min(phase.min_successes, health.total)
    if len(health.completed) < required:
        return Readiness(
            can_proceed=False,
            waiting=False,
            reason=(
                f"only {len(health.completed)}/{health.total} agents succeeded "
                f"in {phase.phase_id} (need {required})"
            ),
        )
    if health.pending:
        return Readiness(
            can_proceed=False,
            waiting=True,
            reason=f"agents not started: {', '.join(health.pending)}",
        )
    return Readiness(can_proceed=True, waiting=False, reason="phase healthy")


def is_phase_still_viable(health: PhaseHealth, phase: PhaseSpec) -> bool:
    """Whether the remaining agents can still reach the success threshold."""
    if health.failed_critical:
        return False
    required = min(phase.min_successes, health.total)
    remaining = len(health.running) + len(health.pending)
    return len(health.completed) + remaining >= required


def determine_recovery_strategy(
    agent: AgentSpec,
    error_type: ErrorType | None,
    attempt: int,
    max_retries: int,
) -> RecoveryStrategy:
    """Pick a recovery action for a failed agent.

    Args:
        agent: The failed agent.
        error_type: Its error class.
        attempt: Attempts already made (0-based).
        max_retries: Retry budget.
    """
    category = categorize_agent_error(agent, error_type)

    if error_type == ErrorType.API_KEY:
        return RecoveryStrategy(RecoveryAction.ABORT, category.reason)
    if category.is_retryable and attempt < max_retries:
        wait = 5.0 * (attempt + 1) if error_type == ErrorType.RATE_LIMIT else 0.0
        return RecoveryStrategy(
            RecoveryAction.RETRY,
            f"{error_type.value if error_type else 'error'} is transient",
            wait_seconds=wait,
        )
    if category.stop_workflow:
        return RecoveryStrategy(RecoveryAction.ABORT, category.reason)
    return RecoveryStrategy(RecoveryAction.SKIP, category.reason)
