"""
Core types for the analysis orchestration core.

This module defines the data model shared by every component:
- Enums for run status, step status, error taxonomy and notification kinds
- The persisted WorkflowRun document and its nested state objects
- Invocation contracts (in/out) and the retry envelope carried between attempts
- Helper functions for ID generation and timestamps
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from uuid6 import uuid7


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "run", "msg").

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class RunStatus(str, Enum):
    """Lifecycle status of a workflow run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        """COMPLETED and CANCELLED can never be overwritten."""
        return self in (RunStatus.COMPLETED, RunStatus.CANCELLED)


class StepStatus(str, Enum):
    """Status of a single agent step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_resolved(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.ERROR)


class ErrorType(str, Enum):
    """Error taxonomy attached to every escalation."""

    RATE_LIMIT = "rate_limit"
    API_KEY = "api_key"
    DATA_FETCH = "data_fetch"
    AI_ERROR = "ai_error"
    DATABASE = "database"
    TIMEOUT = "timeout"
    OTHER = "other"

    @property
    def is_transient(self) -> bool:
        """Transient classes are retried locally before escalation."""
        return self in (ErrorType.RATE_LIMIT, ErrorType.TIMEOUT, ErrorType.DATABASE)


class CompletionType(str, Enum):
    """Why the coordinator is being notified."""

    START = "start"
    LAST_IN_PHASE = "last_in_phase"
    AGENT_ERROR = "agent_error"
    INVOCATION_FAILED = "invocation_failed"


class MessageType(str, Enum):
    """Kinds of entries in the run's message log."""

    INFO = "info"
    ANALYSIS = "analysis"
    DEBATE = "debate"
    DECISION = "decision"
    SYSTEM = "system"
    ERROR = "error"


# Step status transitions that never need an explicit reset flag.
_FORWARD_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.COMPLETED, StepStatus.ERROR}),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETED, StepStatus.ERROR}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.ERROR: frozenset(),
}

# Controlled regressions: running -> pending after a failed dispatch,
# error -> pending/running when the coordinator reactivates a step.
_RESET_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.RUNNING: frozenset({StepStatus.PENDING}),
    StepStatus.ERROR: frozenset({StepStatus.PENDING, StepStatus.RUNNING}),
}


def is_step_transition_allowed(
    current: StepStatus,
    new: StepStatus,
    *,
    allow_reset: bool = False,
) -> bool:
    """Check whether a step may move from `current` to `new`.

    Same-status writes are allowed (and treated as no-ops by callers).
    """
    if current == new:
        return True
    if new in _FORWARD_TRANSITIONS[current]:
        return True
    return allow_reset and new in _RESET_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class StepTransition:
    """Outcome of a step status update."""

    previous: StepStatus | None
    applied: bool
    current: StepStatus | None = None

    @property
    def changed(self) -> bool:
        """True if the write moved the step to a different status."""
        return self.applied and self.previous != self.current


@dataclass
class AgentStepState:
    """State of one agent inside a phase."""

    name: str
    function_name: str
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    attempt: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_at: datetime | None = None
    error: str | None = None

    def apply_status(self, status: StepStatus, now: datetime | None = None) -> None:
        """Set status and the derived progress/timestamp fields."""
        now = now or utc_now()
        self.status = status
        if status == StepStatus.COMPLETED:
            self.progress = 100
            self.completed_at = now
        elif status == StepStatus.ERROR:
            self.progress = 0
            self.error_at = now
        elif status == StepStatus.RUNNING:
            self.progress = 50
            self.started_at = self.started_at or now
        else:
            self.progress = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "function_name": self.function_name,
            "status": self.status.value,
            "progress": self.progress,
            "attempt": self.attempt,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error_at": _iso(self.error_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentStepState:
        return cls(
            name=data["name"],
            function_name=data["function_name"],
            status=StepStatus(data.get("status", "pending")),
            progress=data.get("progress", 0),
            attempt=data.get("attempt", 0),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            error_at=_parse_dt(data.get("error_at")),
            error=data.get("error"),
        )


@dataclass
class PhaseState:
    """Ordered agent steps of one phase."""

    phase: str
    agents: list[AgentStepState] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def find(self, function_name: str) -> AgentStepState | None:
        for step in self.agents:
            if step.function_name == function_name:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "agents": [a.to_dict() for a in self.agents],
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseState:
        return cls(
            phase=data["phase"],
            agents=[AgentStepState.from_dict(a) for a in data.get("agents", [])],
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
        )


@dataclass(frozen=True)
class Message:
    """Immutable entry of the run's message log.

    Ordering is by insertion into the side table; `timestamp` is advisory.
    """

    agent: str
    text: str
    timestamp: datetime
    type: MessageType = MessageType.INFO
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        agent: str,
        text: str,
        message_type: MessageType = MessageType.INFO,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        return cls(
            agent=agent,
            text=text,
            timestamp=utc_now(),
            type=message_type,
            metadata=metadata or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            agent=data["agent"],
            text=data["text"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            type=MessageType(data.get("type", "info")),
            metadata=data.get("metadata") or {},
        )


@dataclass
class DebateRound:
    """One bull/bear exchange of the research phase."""

    round: int
    started_at: datetime
    bull_text: str | None = None
    bear_text: str | None = None
    bull_points: list[str] = field(default_factory=list)
    bear_points: list[str] = field(default_factory=list)

    def has_side(self, side: str) -> bool:
        """Whether `side` ("bull" or "bear") has recorded its contribution."""
        return bool(self.bull_text if side == "bull" else self.bear_text)

    def set_side(self, side: str, text: str, points: list[str]) -> None:
        """Record one side, leaving the other side untouched."""
        if side == "bull":
            self.bull_text = text
            self.bull_points = list(points)
        elif side == "bear":
            self.bear_text = text
            self.bear_points = list(points)
        else:
            raise ValueError(f"Unknown debate side: {side!r}")

    @property
    def is_complete(self) -> bool:
        return bool(self.bull_text and self.bear_text)

    def to_dict(self) -> dict[str, Any]:
        return {
            "round": self.round,
            "started_at": self.started_at.isoformat(),
            "bull_text": self.bull_text,
            "bear_text": self.bear_text,
            "bull_points": self.bull_points,
            "bear_points": self.bear_points,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DebateRound:
        return cls(
            round=data["round"],
            started_at=datetime.fromisoformat(data["started_at"]),
            bull_text=data.get("bull_text"),
            bear_text=data.get("bear_text"),
            bull_points=list(data.get("bull_points") or []),
            bear_points=list(data.get("bear_points") or []),
        )


@dataclass
class WorkflowRun:
    """The shared, versioned analysis record of one run.

    Never cache an instance across an await boundary and write it back;
    all mutation goes through the atomic update layer.
    """

    run_id: str
    ticker: str
    user_id: str
    status: RunStatus = RunStatus.PENDING
    current_phase: str | None = None
    workflow_steps: list[PhaseState] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    agent_insights: dict[str, Any] = field(default_factory=dict)
    debate_rounds: list[DebateRound] = field(default_factory=list)
    current_debate_round: int = 0
    debate_concluded: bool = False
    decision: str | None = None
    confidence: float | None = None
    error: str | None = None
    error_type: ErrorType | None = None
    cancel_reason: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    phase_context: dict[str, Any] = field(default_factory=dict)
    watchdog_alerts: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @classmethod
    def create(
        cls,
        ticker: str,
        user_id: str,
        workflow_steps: list[PhaseState],
        settings: dict[str, Any] | None = None,
        phase_context: dict[str, Any] | None = None,
    ) -> WorkflowRun:
        """Create a new PENDING run."""
        return cls(
            run_id=generate_id("run"),
            ticker=ticker.upper(),
            user_id=user_id,
            workflow_steps=workflow_steps,
            settings=dict(settings or {}),
            phase_context=dict(phase_context or {}),
        )

    def phase_state(self, phase: str) -> PhaseState | None:
        for state in self.workflow_steps:
            if state.phase == phase:
                return state
        return None

    def find_step(self, phase: str, function_name: str) -> AgentStepState | None:
        state = self.phase_state(phase)
        return state.find(function_name) if state else None

    def debate_round(self, number: int) -> DebateRound | None:
        for rnd in self.debate_rounds:
            if rnd.round == number:
                return rnd
        return None

    def apply_step_status(
        self,
        phase: str,
        function_name: str,
        status: StepStatus,
        *,
        allow_reset: bool = False,
        error: str | None = None,
        attempt: int | None = None,
    ) -> StepTransition:
        """Merge a status change into one step, honouring transition rules.

        Disallowed transitions leave the step untouched (applied=False).
        """
        step = self.find_step(phase, function_name)
        if step is None:
            return StepTransition(previous=None, applied=False)
        previous = step.status
        if not is_step_transition_allowed(previous, status, allow_reset=allow_reset):
            return StepTransition(previous=previous, applied=False, current=previous)
        if previous != status:
            step.apply_status(status)
        if error is not None:
            step.error = error
        if attempt is not None:
            step.attempt = attempt
        return StepTransition(previous=previous, applied=True, current=status)

    def merge_debate_side(self, round_number: int, side: str, text: str, points: list[str]) -> None:
        """Record one side of a round, creating the round if needed.

        The other side's contribution is preserved.
        """
        rnd = self.debate_round(round_number)
        if rnd is None:
            rnd = DebateRound(round=round_number, started_at=utc_now())
            self.debate_rounds.append(rnd)
            self.debate_rounds.sort(key=lambda r: r.round)
        rnd.set_side(side, text, points)

    def active_steps(self) -> list[AgentStepState]:
        """Steps that are neither completed nor errored."""
        return [
            step
            for state in self.workflow_steps
            for step in state.agents
            if not step.status.is_resolved
        ]

    def touch(self) -> None:
        self.updated_at = utc_now()

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the JSON document stored in the state store."""
        return {
            "run_id": self.run_id,
            "ticker": self.ticker,
            "user_id": self.user_id,
            "status": self.status.value,
            "current_phase": self.current_phase,
            "workflow_steps": [s.to_dict() for s in self.workflow_steps],
            "messages": [m.to_dict() for m in self.messages],
            "agent_insights": self.agent_insights,
            "debate_rounds": [r.to_dict() for r in self.debate_rounds],
            "current_debate_round": self.current_debate_round,
            "debate_concluded": self.debate_concluded,
            "decision": self.decision,
            "confidence": self.confidence,
            "error": self.error,
            "error_type": self.error_type.value if self.error_type else None,
            "cancel_reason": self.cancel_reason,
            "settings": self.settings,
            "phase_context": self.phase_context,
            "watchdog_alerts": self.watchdog_alerts,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WorkflowRun:
        """Deserialize from a stored JSON document."""
        error_type = payload.get("error_type")
        return cls(
            run_id=payload["run_id"],
            ticker=payload["ticker"],
            user_id=payload["user_id"],
            status=RunStatus(payload.get("status", "pending")),
            current_phase=payload.get("current_phase"),
            workflow_steps=[PhaseState.from_dict(s) for s in payload.get("workflow_steps", [])],
            messages=[Message.from_dict(m) for m in payload.get("messages", [])],
            agent_insights=dict(payload.get("agent_insights") or {}),
            debate_rounds=[DebateRound.from_dict(r) for r in payload.get("debate_rounds", [])],
            current_debate_round=payload.get("current_debate_round", 0),
            debate_concluded=payload.get("debate_concluded", False),
            decision=payload.get("decision"),
            confidence=payload.get("confidence"),
            error=payload.get("error"),
            error_type=ErrorType(error_type) if error_type else None,
            cancel_reason=payload.get("cancel_reason"),
            settings=dict(payload.get("settings") or {}),
            phase_context=dict(payload.get("phase_context") or {}),
            watchdog_alerts=list(payload.get("watchdog_alerts") or []),
            created_at=datetime.fromisoformat(payload["created_at"]),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
            completed_at=_parse_dt(payload.get("completed_at")),
        )


@dataclass(frozen=True)
class RunSnapshot:
    """A run as read from the store, together with its version token."""

    run: WorkflowRun
    version: int


@dataclass(frozen=True)
class RetryEnvelope:
    """Retry bookkeeping carried in the invocation payload.

    Created with attempt=0 on the first invocation; every self-retry passes
    `next()` to the following invocation.
    """

    attempt: int
    max_retries: int
    timeout_ms: int
    original_start_time: datetime
    function_name: str

    @classmethod
    def first(cls, function_name: str, max_retries: int, timeout_ms: int) -> RetryEnvelope:
        return cls(
            attempt=0,
            max_retries=max_retries,
            timeout_ms=timeout_ms,
            original_start_time=utc_now(),
            function_name=function_name,
        )

    def next(self) -> RetryEnvelope:
        return replace(self, attempt=self.attempt + 1)

    @property
    def is_retry(self) -> bool:
        return self.attempt > 0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_retries

    @property
    def elapsed_seconds(self) -> float:
        return (utc_now() - self.original_start_time).total_seconds()

    def status_text(self) -> str:
        """Human-readable retry status for messages and logs."""
        if self.attempt == 0:
            return "First attempt"
        minutes = round(self.elapsed_seconds / 60)
        return f"Retry {self.attempt}/{self.max_retries} ({minutes}m elapsed)"


@dataclass(frozen=True)
class Invocation:
    """Input contract of every agent entry point.

    `settings` is the opaque configuration bag; the core only reads the
    retry/timeout numbers and round count from it (see RunSettings).
    """

    run_id: str
    ticker: str
    user_id: str
    settings: dict[str, Any] = field(default_factory=dict)
    phase_context: dict[str, Any] | None = None
    retry: RetryEnvelope | None = None

    def with_retry(self, retry: RetryEnvelope | None) -> Invocation:
        return replace(self, retry=retry)

    @property
    def is_retry(self) -> bool:
        return self.retry is not None and self.retry.is_retry


@dataclass(frozen=True)
class InvocationResult:
    """Output contract of every agent entry point.

    `success=False` without `retry_scheduled` means the agent gave up and
    already escalated; callers must not retry it themselves.
    """

    success: bool
    retry_scheduled: bool = False
    skipped: bool = False
    canceled: bool = False
    error: str | None = None
    error_type: ErrorType | None = None
    insight: Any = None
    message: str | None = None

    @classmethod
    def ok(cls, insight: Any = None, message: str | None = None) -> InvocationResult:
        return cls(success=True, insight=insight, message=message)

    @classmethod
    def skip(cls, message: str, insight: Any = None) -> InvocationResult:
        return cls(success=True, skipped=True, insight=insight, message=message)

    @classmethod
    def cancelled(cls, message: str) -> InvocationResult:
        return cls(success=False, canceled=True, message=message)

    @classmethod
    def retrying(cls, error: str, error_type: ErrorType) -> InvocationResult:
        return cls(success=False, retry_scheduled=True, error=error, error_type=error_type)

    @classmethod
    def failed(cls, error: str, error_type: ErrorType) -> InvocationResult:
        return cls(success=False, error=error, error_type=error_type)


@dataclass(frozen=True)
class CoordinatorNotification:
    """Payload of the coordinator notification interface."""

    run_id: str
    phase: str
    agent: str
    completion_type: CompletionType
    ticker: str = ""
    user_id: str = ""
    settings: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_type: ErrorType | None = None
    failed_to_invoke: str | None = None
    attempt: int = 0

    @classmethod
    def from_invocation(
        cls,
        invocation: Invocation,
        phase: str,
        agent: str,
        completion_type: CompletionType,
        **kwargs: Any,
    ) -> CoordinatorNotification:
        return cls(
            run_id=invocation.run_id,
            phase=phase,
            agent=agent,
            completion_type=completion_type,
            ticker=invocation.ticker,
            user_id=invocation.user_id,
            settings=invocation.settings,
            attempt=invocation.retry.attempt if invocation.retry else 0,
            **kwargs,
        )
