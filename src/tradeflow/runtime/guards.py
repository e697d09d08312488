"""
Completion and cancellation guards run before any expensive agent work.

Both checks fail safe: if the check itself errors, the agent proceeds.
Skipping needed work is worse than a wasted retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tradeflow.exceptions import RunNotFoundError
from tradeflow.logging import get_logger
from tradeflow.state.atomic import AtomicUpdater
from tradeflow.types import RunStatus, StepStatus, WorkflowRun
from tradeflow.workflow.phases import AgentSpec

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompletionCheck:
    """Whether an agent already recorded its result for this run."""

    has_completed: bool
    blocked: bool = False
    status: StepStatus | None = None
    existing_insight: Any = None
    reason: str = ""


@dataclass(frozen=True)
class CancellationCheck:
    """Whether an agent may keep working on this run."""

    should_continue: bool
    is_canceled: bool = False
    reason: str = ""


class ExecutionGuard:
    """Precondition checks shared by every agent."""

    def __init__(self, updater: AtomicUpdater) -> None:
        self.updater = updater

    async def check_completion(
        self,
        run_id: str,
        phase: str,
        agent: AgentSpec,
    ) -> CompletionCheck:
        """Detect duplicate invocations of an agent that already finished.

        A running step does not block: the previous agent marks the next one
        running before invoking it. An errored step blocks every attempt,
        retries included, so a late attempt cannot replace the degraded
        insight; re-running it needs a reset to pending first.
        Debate agents are checked per round instead of per step.
        """
        try:
            run = (await self.updater.read(run_id)).run
        except RunNotFoundError:
            return CompletionCheck(has_completed=False, blocked=True, reason="run not found")
        except Exception as e:
            logger.warning("Completion check failed, proceeding", run_id=run_id, error=str(e))
            return CompletionCheck(has_completed=False, reason="check failed")

        if agent.debate_side:
            return self._check_debate_completion(run, agent)

        step = run.find_step(phase, agent.function_name)
        if step is None:
            return CompletionCheck(has_completed=False, reason="step not in workflow")

        if step.status == StepStatus.COMPLETED:
            return CompletionCheck(
                has_completed=True,
                status=step.status,
                existing_insight=run.agent_insights.get(agent.insight_key),
                reason="already completed",
            )
        if step.status == StepStatus.ERROR:
            return CompletionCheck(
                has_completed=False,
                blocked=True,
                status=step.status,
                reason="step errored",
            )
        return CompletionCheck(has_completed=False, status=step.status)

    @staticmethod
    def _check_debate_completion(run: WorkflowRun, agent: AgentSpec) -> CompletionCheck:
        current = run.current_debate_round or 1
        rnd = run.debate_round(current)
        if rnd is not None and rnd.has_side(agent.debate_side or ""):
            return CompletionCheck(
                has_completed=True,
                existing_insight=run.agent_insights.get(agent.insight_key),
                reason=f"round {current} already has a {agent.debate_side} contribution",
            )
        return CompletionCheck(has_completed=False)

    async def check_cancellation(self, run_id: str) -> CancellationCheck:
        """Check whether the run was cancelled or already finished.

        CANCELLED stops work. COMPLETED also stops work (stale, late
        invocation). ERROR does not: the coordinator may still let the
        phase recover.
        """
        try:
            run = (await self.updater.read(run_id)).run
        except RunNotFoundError:
            return CancellationCheck(should_continue=False, reason="run not found")
        except Exception as e:
            logger.warning("Cancellation check failed, proceeding", run_id=run_id, error=str(e))
            return CancellationCheck(should_continue=True, reason="check failed")

        if run.status == RunStatus.CANCELLED:
            return CancellationCheck(
                should_continue=False,
                is_canceled=True,
                reason=run.cancel_reason or "run cancelled",
            )
        if run.status == RunStatus.COMPLETED:
            return CancellationCheck(should_continue=False, reason="run already completed")
        return CancellationCheck(should_continue=True)
