"""
Fire-and-forget coordinator notifications.

The notifying agent never waits for the coordinator: delivery runs as a
detached task with its own bounded retry. If every attempt fails, a
message is written to the run so the failure is visible.
"""

from __future__ import annotations

import asyncio
from typing import Any

from tradeflow.exceptions import DispatchError
from tradeflow.logging import get_logger
from tradeflow.runtime.dispatcher import Dispatcher
from tradeflow.state.atomic import SYSTEM_AGENT, AtomicUpdater
from tradeflow.types import CoordinatorNotification, MessageType
from tradeflow.workflow.phases import COORDINATOR_FUNCTION

logger = get_logger(__name__)


class CoordinatorNotifier:
    """Delivers CoordinatorNotification payloads to the coordinator function."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        updater: AtomicUpdater,
        *,
        max_attempts: int = 3,
        retry_delay_ms: int = 1_000,
        function_name: str = COORDINATOR_FUNCTION,
    ) -> None:
        self.dispatcher = dispatcher
        self.updater = updater
        self.max_attempts = max_attempts
        self.retry_delay_s = retry_delay_ms / 1000
        self.function_name = function_name

    def notify(self, notification: CoordinatorNotification) -> asyncio.Task[Any] | None:
        """Schedule delivery and return immediately.

        Returns:
            The delivery task, or None if the runtime refused new work.
        """
        logger.info(
            "Notifying coordinator",
            run_id=notification.run_id,
            phase=notification.phase,
            from_agent=notification.agent,
            completion_type=notification.completion_type.value,
        )
        try:
            return self.dispatcher.spawn(
                self.deliver(notification),
                name=f"notify:{notification.completion_type.value}:{notification.agent}",
            )
        except DispatchError as e:
            logger.error("Coordinator notification not scheduled", error=str(e))
            return None

    async def deliver(self, notification: CoordinatorNotification) -> bool:
        """Deliver with bounded retry. Never raises.

        Returns:
            True if the coordinator accepted the notification.
        """
        try:
            await self.dispatcher.invoke_with_retry(
                self.function_name,
                notification,
                attempts=self.max_attempts,
                delay_s=self.retry_delay_s,
            )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Coordinator notification failed",
                run_id=notification.run_id,
                from_agent=notification.agent,
                completion_type=notification.completion_type.value,
                error=str(e),
            )
            await self._record_failure(notification, e)
            return False

    async def _record_failure(self, notification: CoordinatorNotification, error: Exception) -> None:
        try:
            await self.updater.append_message(
                notification.run_id,
                SYSTEM_AGENT,
                (
                    f"COORDINATOR_NOTIFICATION_FAILED: {notification.agent} could not notify "
                    f"the coordinator ({notification.completion_type.value}): {error}"
                ),
                MessageType.ERROR,
                metadata={"completion_type": notification.completion_type.value},
            )
        except Exception as e:
            logger.error("Could not record notification failure", run_id=notification.run_id, error=str(e))
