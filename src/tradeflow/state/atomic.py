"""
Atomic update layer over the run store.

Two strategies, chosen by contention profile:
- Optimistic CAS: read (payload, version), merge the delta into the current
  payload, conditionally write; retry from the read on conflict with
  backoff. Used for every field set written by more than one agent type.
- Store procedures: step-status flips and debate-round merges run as one
  server-side transaction. If a procedure call fails, the same merge is
  applied through the CAS path instead.

Callers never hold a WorkflowRun across an await and write it back; every
helper re-reads inside its own retry loop.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
    wait_random_exponential,
)

from tradeflow.config import BackoffCurve, Settings
from tradeflow.exceptions import (
    ConcurrentModificationError,
    RunNotFoundError,
    StoreError,
)
from tradeflow.logging import get_logger
from tradeflow.state.store import RunStore
from tradeflow.types import (
    DebateRound,
    ErrorType,
    Message,
    MessageType,
    RunSnapshot,
    RunStatus,
    StepStatus,
    StepTransition,
    WorkflowRun,
    utc_now,
)

logger = get_logger(__name__)

SYSTEM_AGENT = "System"


@dataclass(frozen=True)
class CompletionOutcome:
    """Result of marking a run completed."""

    success: bool
    already_completed: bool = False
    reason: str | None = None


class AtomicUpdater:
    """Read-modify-write helpers for the shared WorkflowRun record."""

    def __init__(
        self,
        store: RunStore,
        *,
        max_attempts: int = 5,
        backoff_base_ms: int = 100,
        backoff: BackoffCurve = "exponential",
    ) -> None:
        """Initialize the updater.

        Args:
            store: The run store.
            max_attempts: Conditional write attempts before giving up.
            backoff_base_ms: Base delay between attempts.
            backoff: "exponential" (full jitter) or "linear".
        """
        self.store = store
        self.max_attempts = max_attempts
        base_s = backoff_base_ms / 1000
        if backoff == "linear":
            self._wait = wait_incrementing(start=base_s, increment=base_s)
        else:
            self._wait = wait_random_exponential(
                multiplier=base_s, max=base_s * 2 ** max_attempts
            )

    @classmethod
    def from_settings(cls, store: RunStore, settings: Settings) -> AtomicUpdater:
        return cls(
            store,
            max_attempts=settings.CAS_MAX_ATTEMPTS,
            backoff_base_ms=settings.CAS_BACKOFF_BASE_MS,
            backoff=settings.CAS_BACKOFF,
        )

    # ------------------------------------------------------------------
    # Generic primitives
    # ------------------------------------------------------------------

    async def read(self, run_id: str) -> RunSnapshot:
        """Read the current run and its version token."""
        payload, version = await self.store.read_run(run_id)
        return RunSnapshot(run=WorkflowRun.from_payload(payload), version=version)

    async def mutate(
        self,
        run_id: str,
        merge: Callable[[WorkflowRun], bool | None],
        *,
        operation: str = "update",
    ) -> WorkflowRun:
        """Apply `merge` to the current run with optimistic concurrency.

        `merge` receives a freshly read run on every attempt and mutates it
        in place. Returning False means there is nothing to write.

        Args:
            run_id: Run to update.
            merge: Delta applied to the current payload.
            operation: Name used in logs.

        Returns:
            The run as written (or as read, if nothing was written).

        Raises:
            ConcurrentModificationError: If every attempt lost the race.
            RunNotFoundError: If the run does not exist.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ConcurrentModificationError),
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                snapshot = await self.read(run_id)
                run = snapshot.run
                if merge(run) is False:
                    return run
                run.touch()
                rows = await self.store.conditional_write(
                    run_id, run.to_payload(), snapshot.version
                )
                if rows == 0:
                    logger.debug(
                        "Conditional write conflict",
                        run_id=run_id,
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise ConcurrentModificationError(
                        f"Concurrent modification during {operation}",
                        context={"run_id": run_id, "expected_version": snapshot.version},
                    )
                return run
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Messages and insights
    # ------------------------------------------------------------------

    async def append_message(
        self,
        run_id: str,
        agent: str,
        text: str,
        message_type: MessageType = MessageType.INFO,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Append a message to the side table and the run's message log.

        A deduplicated side-table row still gets merged into the run when
        the run's log lacks it, so an append whose payload write ran out of
        attempts is completed by the next identical append.

        Returns:
            False if an identical message was already in both places.
        """
        message = Message.create(agent, text, message_type, metadata)
        inserted = await self.store.append_message(run_id, message)
        cutoff = message.timestamp - self.store.dedup_window
        appended = False

        def merge(run: WorkflowRun) -> bool:
            nonlocal appended
            appended = False
            if not inserted and any(
                m.agent == agent and m.text == text and m.timestamp >= cutoff for m in run.messages
            ):
                return False
            run.messages.append(message)
            appended = True
            return True

        await self.mutate(run_id, merge, operation="append_message")
        if not appended:
            logger.debug("Duplicate message dropped", run_id=run_id, agent=agent)
        elif not inserted:
            logger.info("Restored message missing from run log", run_id=run_id, agent=agent)
        return appended

    async def update_agent_insights(self, run_id: str, key: str, value: Any) -> None:
        """Set one agent's insight without touching other keys."""

        def merge(run: WorkflowRun) -> bool:
            run.agent_insights[key] = value
            return True

        await self.mutate(run_id, merge, operation="update_agent_insights")

    # ------------------------------------------------------------------
    # Step status
    # ------------------------------------------------------------------

    async def update_step_status(
        self,
        run_id: str,
        phase: str,
        function_name: str,
        status: StepStatus,
        *,
        allow_reset: bool = False,
        error: str | None = None,
        attempt: int | None = None,
    ) -> StepTransition:
        """Flip one agent step's status.

        Uses the store procedure; falls back to CAS if the procedure fails.
        """
        try:
            transition = await self.store.atomic_merge_step_status(
                run_id,
                phase,
                function_name,
                status,
                allow_reset=allow_reset,
                error=error,
                attempt=attempt,
            )
        except RunNotFoundError:
            raise
        except StoreError as e:
            logger.warning(
                "Step status procedure failed, using conditional write",
                run_id=run_id,
                step=function_name,
                error=str(e),
            )
            transition = await self._update_step_status_cas(
                run_id, phase, function_name, status,
                allow_reset=allow_reset, error=error, attempt=attempt,
            )

        if transition.previous is None:
            logger.warning("Step not found in workflow", run_id=run_id, phase=phase, step=function_name)
        elif not transition.applied:
            logger.info(
                "Step status transition rejected",
                run_id=run_id,
                step=function_name,
                current=transition.previous.value,
                requested=status.value,
            )
        elif transition.changed:
            logger.debug("Step status updated", step=function_name, status=status.value)
        return transition

    async def _update_step_status_cas(
        self,
        run_id: str,
        phase: str,
        function_name: str,
        status: StepStatus,
        **kwargs: Any,
    ) -> StepTransition:
        result = StepTransition(previous=None, applied=False)

        def merge(run: WorkflowRun) -> bool:
            nonlocal result
            result = run.apply_step_status(phase, function_name, status, **kwargs)
            return result.applied

        await self.mutate(run_id, merge, operation="update_step_status")
        return result

    async def reset_step_to_pending(self, run_id: str, phase: str, function_name: str) -> StepTransition:
        """Controlled running -> pending regression after a failed dispatch."""
        return await self.update_step_status(
            run_id, phase, function_name, StepStatus.PENDING, allow_reset=True
        )

    # ------------------------------------------------------------------
    # Debate rounds
    # ------------------------------------------------------------------

    async def update_debate_round(
        self,
        run_id: str,
        round_number: int,
        side: str,
        text: str,
        points: list[str],
        *,
        agent: str,
    ) -> None:
        """Record one side of a debate round, preserving the other side."""
        await self.append_message(
            run_id,
            agent,
            text,
            MessageType.DEBATE,
            metadata={"round": round_number, "side": side},
        )
        try:
            await self.store.atomic_merge_debate_round(run_id, round_number, side, text, points)
        except RunNotFoundError:
            raise
        except StoreError as e:
            logger.warning(
                "Debate round procedure failed, using conditional write",
                run_id=run_id,
                round=round_number,
                side=side,
                error=str(e),
            )

            def merge(run: WorkflowRun) -> bool:
                run.merge_debate_side(round_number, side, text, points)
                return True

            await self.mutate(run_id, merge, operation="update_debate_round")

    async def initialize_debate_round(self, run_id: str, round_number: int) -> None:
        """Create the round entry if missing and point the run at it."""

        def merge(run: WorkflowRun) -> bool:
            changed = False
            if run.debate_round(round_number) is None:
                run.debate_rounds.append(DebateRound(round=round_number, started_at=utc_now()))
                run.debate_rounds.sort(key=lambda r: r.round)
                changed = True
            if run.current_debate_round < round_number:
                run.current_debate_round = round_number
                changed = True
            return changed

        await self.mutate(run_id, merge, operation="initialize_debate_round")

    async def advance_debate_round(self, run_id: str, from_round: int) -> bool:
        """Move the debate from `from_round` to the next round.

        Returns:
            True if this call advanced the round; False if another writer
            already did, or the debate was concluded.
        """
        advanced = False

        def merge(run: WorkflowRun) -> bool:
            nonlocal advanced
            advanced = False
            if run.debate_concluded or run.current_debate_round != from_round:
                return False
            next_round = from_round + 1
            run.current_debate_round = next_round
            if run.debate_round(next_round) is None:
                run.debate_rounds.append(DebateRound(round=next_round, started_at=utc_now()))
            advanced = True
            return True

        await self.mutate(run_id, merge, operation="advance_debate_round")
        return advanced

    async def conclude_debate(self, run_id: str, reason: str) -> None:
        """Stop further debate rounds after the current one."""

        def merge(run: WorkflowRun) -> bool:
            if run.debate_concluded:
                return False
            run.debate_concluded = True
            return True

        await self.mutate(run_id, merge, operation="conclude_debate")
        await self.append_message(run_id, SYSTEM_AGENT, f"Debate concluded: {reason}", MessageType.SYSTEM)

    # ------------------------------------------------------------------
    # Phase and run status
    # ------------------------------------------------------------------

    async def update_phase(self, run_id: str, phase: str, message: str | None = None) -> bool:
        """Point the run at `phase`, closing the previous phase.

        Returns:
            False if the run was already in `phase`.
        """
        moved = False

        def merge(run: WorkflowRun) -> bool:
            nonlocal moved
            moved = False
            if run.current_phase == phase:
                return False
            now = utc_now()
            if run.current_phase is not None:
                previous = run.phase_state(run.current_phase)
                if previous is not None and previous.completed_at is None:
                    previous.completed_at = now
            state = run.phase_state(phase)
            if state is not None and state.started_at is None:
                state.started_at = now
            run.current_phase = phase
            moved = True
            return True

        await self.mutate(run_id, merge, operation="update_phase")
        if moved and message:
            await self.append_message(run_id, SYSTEM_AGENT, message, MessageType.SYSTEM)
        return moved

    async def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        error: str | None = None,
        error_type: ErrorType | None = None,
        reactivate: bool = False,
    ) -> bool:
        """Change the run status.

        COMPLETED and CANCELLED are never overridden. ERROR -> RUNNING
        requires `reactivate`.

        Returns:
            True if the run now has `status` because of this call.
        """
        applied = False

        def merge(run: WorkflowRun) -> bool:
            nonlocal applied
            applied = False
            if run.status.is_final:
                return False
            if run.status == RunStatus.ERROR and status == RunStatus.RUNNING and not reactivate:
                return False
            if run.status == status and error is None:
                return False
            run.status = status
            if status == RunStatus.ERROR:
                run.error = error
                run.error_type = error_type
            elif status == RunStatus.RUNNING:
                run.error = None
                run.error_type = None
            applied = True
            return True

        await self.mutate(run_id, merge, operation="set_run_status")
        if applied:
            logger.info("Run status changed", run_id=run_id, status=status.value)
        return applied

    async def record_decision(self, run_id: str, decision: str, confidence: float | None) -> bool:
        """Write the final decision. The first write wins."""
        written = False

        def merge(run: WorkflowRun) -> bool:
            nonlocal written
            written = False
            if run.decision is not None:
                return False
            run.decision = decision
            run.confidence = confidence
            written = True
            return True

        await self.mutate(run_id, merge, operation="record_decision")
        return written

    async def mark_completed(self, run_id: str, *, force: bool = False) -> CompletionOutcome:
        """Mark the run COMPLETED.

        Refuses cancelled runs and, unless `force`, runs with agents still
        pending or running. Idempotent on an already completed run.
        """
        outcome = CompletionOutcome(success=False)

        def merge(run: WorkflowRun) -> bool:
            nonlocal outcome
            if run.status == RunStatus.CANCELLED:
                outcome = CompletionOutcome(success=False, reason="run was cancelled")
                return False
            if run.status == RunStatus.COMPLETED:
                outcome = CompletionOutcome(success=True, already_completed=True)
                return False
            active = run.active_steps()
            if active and not force:
                names = ", ".join(step.name for step in active)
                outcome = CompletionOutcome(success=False, reason=f"agents still active: {names}")
                return False
            now = utc_now()
            run.status = RunStatus.COMPLETED
            run.completed_at = now
            if run.current_phase:
                state = run.phase_state(run.current_phase)
                if state is not None and state.completed_at is None:
                    state.completed_at = now
            outcome = CompletionOutcome(success=True)
            return True

        await self.mutate(run_id, merge, operation="mark_completed")
        if outcome.success and not outcome.already_completed:
            logger.info("Run completed", run_id=run_id)
        elif not outcome.success:
            logger.warning("Run completion refused", run_id=run_id, reason=outcome.reason)
        return outcome

    async def mark_cancelled(self, run_id: str, reason: str) -> bool:
        """Mark the run CANCELLED unless it already completed.

        Returns:
            True if the run is cancelled after this call.
        """
        state = {"cancelled": False, "changed": False}

        def merge(run: WorkflowRun) -> bool:
            state["changed"] = False
            if run.status == RunStatus.CANCELLED:
                state["cancelled"] = True
                return False
            if run.status == RunStatus.COMPLETED:
                state["cancelled"] = False
                return False
            run.status = RunStatus.CANCELLED
            run.cancel_reason = reason
            state["cancelled"] = True
            state["changed"] = True
            return True

        await self.mutate(run_id, merge, operation="mark_cancelled")
        if state["changed"]:
            logger.info("Run cancelled", run_id=run_id, reason=reason)
            await self.append_message(
                run_id, SYSTEM_AGENT, f"Analysis cancelled: {reason}", MessageType.SYSTEM
            )
        return state["cancelled"]

    async def set_agent_error(
        self,
        run_id: str,
        agent: str,
        insight_key: str,
        message: str,
        error_type: ErrorType,
    ) -> None:
        """Record an agent failure for visibility.

        Writes `<insight_key>_error` and an error message. Step and run
        status are left to the coordinator.
        """
        await self.update_agent_insights(
            run_id,
            f"{insight_key}_error",
            {
                "error": message,
                "error_type": error_type.value,
                "timestamp": utc_now().isoformat(),
                "status": "failed",
            },
        )
        await self.append_message(
            run_id, agent, f"Error: {message}", MessageType.ERROR,
            metadata={"error_type": error_type.value},
        )

    async def record_watchdog_alert(self, run_id: str, alert: dict[str, Any]) -> None:
        """Append a stuck-worker alert to the run."""

        def merge(run: WorkflowRun) -> bool:
            run.watchdog_alerts.append(alert)
            return True

        await self.mutate(run_id, merge, operation="record_watchdog_alert")
