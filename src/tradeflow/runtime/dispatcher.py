"""
In-process function runtime.

Agents and the coordinator are registered as named functions. `submit`
dispatches an invocation as a detached task the caller never awaits;
`invoke` calls a function and waits for its result. Detached work is
tracked so it can be drained or cancelled on shutdown.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Coroutine

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from tradeflow.exceptions import DispatchError
from tradeflow.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[Any], Awaitable[Any]]


class Dispatcher:
    """Registry of named handlers plus a set of detached tasks.

    Usage:
        dispatcher.register("agent-trader", trader.invoke)
        dispatcher.submit("agent-trader", invocation)  # returns immediately
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._daemons: set[asyncio.Task[Any]] = set()
        self._closed = False
        self.history: list[tuple[str, Any]] = []

    def register(self, name: str, handler: Handler) -> None:
        """Register a handler under a function name."""
        self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._handlers

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def _handler(self, name: str) -> Handler:
        if self._closed:
            raise DispatchError("Runtime is shut down", context={"function_name": name})
        try:
            return self._handlers[name]
        except KeyError:
            raise DispatchError(
                f"No function registered as {name}", context={"function_name": name}
            ) from None

    def submit(self, name: str, payload: Any) -> asyncio.Task[Any]:
        """Dispatch `payload` to `name` as a detached task.

        Raises:
            DispatchError: If the function is unknown or the runtime is closed.
        """
        handler = self._handler(name)
        self.history.append((name, payload))
        logger.debug("Dispatching invocation", function_name=name)
        return self.spawn(handler(payload), name=name)

    async def invoke(self, name: str, payload: Any) -> Any:
        """Call `name` and wait for its result."""
        handler = self._handler(name)
        self.history.append((name, payload))
        return await handler(payload)

    async def invoke_with_retry(
        self,
        name: str,
        payload: Any,
        *,
        attempts: int = 3,
        delay_s: float = 1.0,
    ) -> Any:
        """Call `name`, retrying on any exception with a fixed delay."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(delay_s),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.invoke(name, payload)
        raise AssertionError("unreachable")  # pragma: no cover

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str = "task",
        daemon: bool = False,
    ) -> asyncio.Task[Any]:
        """Run a coroutine as a tracked detached task.

        Exceptions escaping the task are logged, never propagated. Daemon
        tasks (watchdogs) are cancelled on shutdown but not waited for by
        drain().
        """
        if self._closed:
            coro.close()
            raise DispatchError("Runtime is shut down", context={"function_name": name})
        task = asyncio.create_task(coro, name=name)
        (self._daemons if daemon else self._tasks).add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        self._daemons.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Detached task failed",
                task=task.get_name(),
                error=str(exc),
                error_class=type(exc).__name__,
            )

    async def drain(self, timeout_s: float | None = None) -> bool:
        """Wait until no detached tasks remain.

        Tasks spawned while draining are waited for too.

        Returns:
            True if drained, False on timeout.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s if timeout_s is not None else None
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self._tasks), timeout=remaining)
        return True

    async def shutdown(self) -> None:
        """Refuse new work and cancel everything still running."""
        self._closed = True
        tasks = [*self._tasks, *self._daemons]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Runtime shut down", cancelled=len(tasks))
