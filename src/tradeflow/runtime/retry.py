"""
Per-invocation timeout and self-retry.

Every agent invocation arms a timer. If the agent returns first it disarms
the timer. If the timer fires first, the agent is re-invoked with the next
retry envelope after a delay, until the retry budget is spent; then the
coordinator is notified of the final failure. Only the coordinator decides
what that failure means for the run.

All of this runs as detached work and never raises into the agent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from tradeflow.config import RunSettings
from tradeflow.exceptions import DispatchError
from tradeflow.logging import get_logger, log_context
from tradeflow.runtime.dispatcher import Dispatcher
from tradeflow.runtime.notify import CoordinatorNotifier
from tradeflow.state.atomic import AtomicUpdater
from tradeflow.types import (
    CompletionType,
    CoordinatorNotification,
    ErrorType,
    Invocation,
    RetryEnvelope,
)
from tradeflow.workflow.phases import PhaseSequencer

logger = get_logger(__name__)


@dataclass
class ArmedTimeout:
    """Handle for an armed agent timer."""

    run_id: str
    function_name: str
    envelope: RetryEnvelope
    task: asyncio.Task[Any] | None = None
    fired: bool = False
    disarmed: bool = False
    disarm_reason: str | None = field(default=None, repr=False)

    def disarm(self, reason: str = "completed") -> None:
        """Cancel the timer. Idempotent; a no-op once the timer fired."""
        if self.disarmed:
            return
        self.disarmed = True
        self.disarm_reason = reason
        if self.fired or self.task is None or self.task.done():
            return
        self.task.cancel()
        logger.debug(
            "Agent timeout disarmed",
            run_id=self.run_id,
            function_name=self.function_name,
            reason=reason,
        )


class TimeoutManager:
    """Arms agent timers and performs self-retries and final escalation."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        updater: AtomicUpdater,
        notifier: CoordinatorNotifier,
        sequencer: PhaseSequencer,
    ) -> None:
        self.dispatcher = dispatcher
        self.updater = updater
        self.notifier = notifier
        self.sequencer = sequencer

    def arm(self, invocation: Invocation, run_settings: RunSettings) -> ArmedTimeout:
        """Start the timer for this attempt.

        Args:
            invocation: The current invocation; must carry a retry envelope.
            run_settings: Retry delay and curve for self-retries.
        """
        envelope = invocation.retry
        if envelope is None:
            raise ValueError("Invocation has no retry envelope")

        handle = ArmedTimeout(
            run_id=invocation.run_id,
            function_name=envelope.function_name,
            envelope=envelope,
        )
        try:
            handle.task = self.dispatcher.spawn(
                self._run_timer(handle, invocation, run_settings),
                name=f"timeout:{envelope.function_name}:{envelope.attempt}",
            )
        except DispatchError as e:
            logger.warning("Agent timeout not armed", function_name=envelope.function_name, error=str(e))
        return handle

    async def _run_timer(
        self,
        handle: ArmedTimeout,
        invocation: Invocation,
        run_settings: RunSettings,
    ) -> None:
        envelope = handle.envelope
        await asyncio.sleep(envelope.timeout_ms / 1000)
        if handle.disarmed:
            return
        handle.fired = True
        logger.warning(
            "Agent timed out",
            run_id=invocation.run_id,
            function_name=envelope.function_name,
            attempt=envelope.attempt,
            timeout_ms=envelope.timeout_ms,
        )
        await self.handle_failure(
            invocation,
            run_settings,
            f"{envelope.function_name} timed out after {envelope.timeout_ms}ms",
            ErrorType.TIMEOUT,
        )

    async def handle_failure(
        self,
        invocation: Invocation,
        run_settings: RunSettings,
        message: str,
        error_type: ErrorType,
    ) -> None:
        """Retry if budget remains, otherwise escalate. Never raises."""
        envelope = invocation.retry
        if envelope is None:
            return
        try:
            if envelope.exhausted:
                self._escalate_final_failure(invocation, envelope, message, error_type)
            else:
                await self._self_invoke(invocation, envelope, run_settings)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(
                "Retry handling failed",
                run_id=invocation.run_id,
                function_name=envelope.function_name,
                error=str(e),
            )

    def schedule_retry(self, invocation: Invocation, run_settings: RunSettings) -> bool:
        """Schedule a self-retry after a transient error.

        Returns:
            True if a retry was scheduled; False if the budget is spent.
        """
        envelope = invocation.retry
        if envelope is None or envelope.exhausted:
            return False
        try:
            self.dispatcher.spawn(
                self._self_invoke_safely(invocation, envelope, run_settings),
                name=f"retry:{envelope.function_name}:{envelope.attempt + 1}",
            )
        except DispatchError as e:
            logger.warning("Retry not scheduled", function_name=envelope.function_name, error=str(e))
            return False
        return True

    async def _self_invoke_safely(
        self,
        invocation: Invocation,
        envelope: RetryEnvelope,
        run_settings: RunSettings,
    ) -> None:
        try:
            await self._self_invoke(invocation, envelope, run_settings)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Self-retry failed", function_name=envelope.function_name, error=str(e))

    async def _self_invoke(
        self,
        invocation: Invocation,
        envelope: RetryEnvelope,
        run_settings: RunSettings,
    ) -> None:
        next_envelope = envelope.next()
        delay = run_settings.retry_delay_seconds(next_envelope.attempt)
        with log_context(run_id=invocation.run_id, agent=envelope.function_name, attempt=next_envelope.attempt):
            logger.info(
                "Scheduling agent retry",
                attempt=next_envelope.attempt,
                max_retries=next_envelope.max_retries,
                delay_s=delay,
            )
            await asyncio.sleep(delay)
            try:
                self.dispatcher.submit(envelope.function_name, invocation.with_retry(next_envelope))
            except DispatchError as e:
                await self._handle_dispatch_failure(invocation, envelope, e)

    async def _handle_dispatch_failure(
        self,
        invocation: Invocation,
        envelope: RetryEnvelope,
        error: DispatchError,
    ) -> None:
        """The retry never started: reset the step and tell the coordinator."""
        phase = self.sequencer.phase_of(envelope.function_name).phase_id
        logger.error(
            "Retry dispatch failed",
            run_id=invocation.run_id,
            function_name=envelope.function_name,
            error=str(error),
        )
        await self.updater.reset_step_to_pending(invocation.run_id, phase, envelope.function_name)
        self.notifier.notify(
            CoordinatorNotification.from_invocation(
                invocation,
                phase,
                envelope.function_name,
                CompletionType.INVOCATION_FAILED,
                error=str(error),
                error_type=ErrorType.OTHER,
                failed_to_invoke=envelope.function_name,
            )
        )

    def _escalate_final_failure(
        self,
        invocation: Invocation,
        envelope: RetryEnvelope,
        message: str,
        error_type: ErrorType,
    ) -> None:
        minutes = round(envelope.elapsed_seconds / 60, 1)
        summary = (
            f"{message}. Total attempts: {envelope.attempt + 1}/{envelope.max_retries + 1}. "
            f"Total time: {minutes} minutes."
        )
        phase = self.sequencer.phase_of(envelope.function_name).phase_id
        logger.error(
            "Agent retries exhausted",
            run_id=invocation.run_id,
            function_name=envelope.function_name,
            attempts=envelope.attempt + 1,
        )
        self.notifier.notify(
            CoordinatorNotification.from_invocation(
                invocation,
                phase,
                envelope.function_name,
                CompletionType.AGENT_ERROR,
                error=summary,
                error_type=error_type,
            )
        )
