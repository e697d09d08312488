"""
Function runtime: dispatch, hand-off, guards, timeouts and notifications.
"""

from tradeflow.runtime.dispatcher import Dispatcher
from tradeflow.runtime.guards import CancellationCheck, CompletionCheck, ExecutionGuard
from tradeflow.runtime.handoff import Handoff
from tradeflow.runtime.notify import CoordinatorNotifier
from tradeflow.runtime.retry import ArmedTimeout, TimeoutManager

__all__ = [
    "ArmedTimeout",
    "CancellationCheck",
    "CompletionCheck",
    "CoordinatorNotifier",
    "Dispatcher",
    "ExecutionGuard",
    "Handoff",
    "TimeoutManager",
]
