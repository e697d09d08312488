"""
Shared run state: the versioned store and the atomic update layer.
"""

from tradeflow.state.atomic import AtomicUpdater, CompletionOutcome
from tradeflow.state.store import RunStore, SQLiteRunStore

__all__ = ["AtomicUpdater", "CompletionOutcome", "RunStore", "SQLiteRunStore"]
