"""Domain models for task routing, execution, and blocker resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    ACTIVE = "active"
    BLOCKED_AGENT = "blocked_agent"
    BLOCKED_DECISION = "blocked_decision"
    BLOCKED_AUTH = "blocked_auth"
    BLOCKED_PAYMENT = "blocked_payment"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_blocked(self) -> bool:
        return self in BLOCKED_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


BLOCKED_STATUSES = frozenset(
    {
        TaskStatus.BLOCKED_AGENT,
        TaskStatus.BLOCKED_DECISION,
        TaskStatus.BLOCKED_AUTH,
        TaskStatus.BLOCKED_PAYMENT,
    },
)
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class BlockerType(str, Enum):
    """Reason a task cannot currently proceed."""

    AGENT = "agent"
    DECISION = "decision"
    AUTH = "auth"
    PAYMENT = "payment"


BLOCKER_STATUS: dict[BlockerType, TaskStatus] = {
    BlockerType.AGENT: TaskStatus.BLOCKED_AGENT,
    BlockerType.DECISION: TaskStatus.BLOCKED_DECISION,
    BlockerType.AUTH: TaskStatus.BLOCKED_AUTH,
    BlockerType.PAYMENT: TaskStatus.BLOCKED_PAYMENT,
}


class EscalationType(str, Enum):
    """Visibility markers attached to stuck tasks."""

    STALE_BLOCKER = "stale_blocker"
    DEPENDENCY_FAILED = "dependency_failed"
    CEO_DECISION_TIMEOUT = "ceo_decision_timeout"
    REPEATED_FAILURES = "repeated_failures"


class ResolutionType(str, Enum):
    """How a blocked task got back to the queue."""

    AUTO_RESOLVED = "auto_resolved"
    BLOCKER_NOT_FOUND = "blocker_not_found"
    DEPENDENCY_COMPLETED = "dependency_completed"
    DEPENDENCY_FAILED_RETRY = "dependency_failed_retry"
    DECISION = "decision"
    AUTHORIZATION_GRANTED = "authorization_granted"


@dataclass(slots=True)
class BlockerInfo:
    """Typed blocker descriptor owned by one task at a time."""

    blocker_type: BlockerType
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def agent(cls, blocking_task_id: str, *, reason: str = "") -> BlockerInfo:
        if not blocking_task_id.strip():
            raise ValueError("Agent blocker requires a blocking task id.")
        return cls(
            BlockerType.AGENT,
            {"blocking_task_id": blocking_task_id.strip(), "reason": reason},
        )

    @classmethod
    def decision(  # noqa: PLR0913
        cls,
        title: str,
        *,
        options: list[str] | None = None,
        description: str = "",
        recommendation: str | None = None,
        reasoning: str | None = None,
        urgency: str = "medium",
        decision_id: str | None = None,
    ) -> BlockerInfo:
        payload: dict[str, Any] = {
            "title": title,
            "description": description,
            "options": list(options or []),
            "recommendation": recommendation,
            "reasoning": reasoning,
            "urgency": urgency,
        }
        if decision_id:
            payload["decision_id"] = decision_id
        return cls(BlockerType.DECISION, payload)

    @classmethod
    def auth(cls, service: str, *, reason: str = "") -> BlockerInfo:
        return cls(BlockerType.AUTH, {"service": service, "reason": reason})

    @classmethod
    def payment(
        cls,
        *,
        amount: float,
        vendor: str,
        currency: str = "CAD",
        reason: str = "",
    ) -> BlockerInfo:
        return cls(
            BlockerType.PAYMENT,
            {"amount": amount, "vendor": vendor, "currency": currency, "reason": reason},
        )

    @property
    def status(self) -> TaskStatus:
        """Blocked status this blocker maps onto."""

        return BLOCKER_STATUS[self.blocker_type]

    @property
    def blocking_task_id(self) -> str | None:
        value = self.payload.get("blocking_task_id")
        return str(value) if value else None

    @property
    def decision_id(self) -> str | None:
        value = self.payload.get("decision_id")
        return str(value) if value else None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.blocker_type.value, "payload": dict(self.payload)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BlockerInfo:
        try:
            blocker_type = BlockerType(str(raw.get("type", "")))
        except ValueError as error:
            raise ValueError(f"Unknown blocker type: {raw.get('type')!r}") from error
        payload = raw.get("payload")
        return cls(blocker_type, dict(payload) if isinstance(payload, dict) else {})


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str = ""
    notes: str = ""
    task_id: str | None = None
    assigned_agent: str | None = None
    team: str | None = None
    workflow: str | None = None
    tags: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    priority: int = 50
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskView:
    """Readable task view for engines and CLI."""

    task_id: str
    title: str
    description: str
    notes: str
    assigned_agent: str | None
    team: str | None
    workflow: str | None
    tags: list[str]
    keywords: list[str]
    priority: int
    status: TaskStatus
    retry_count: int
    blocker: BlockerInfo | None
    escalation_type: EscalationType | None
    escalation_reason: str | None
    not_before: datetime | None
    outputs: dict[str, Any] | None
    metadata: dict[str, Any]
    version: int
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    blocked_at: datetime | None = None
    unblocked_at: datetime | None = None
    escalated_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    @property
    def external_id(self) -> str | None:
        value = self.metadata.get("external_id")
        return str(value) if value else None

    @property
    def content(self) -> str:
        value = self.metadata.get("content")
        return str(value) if value else ""


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class EdgeWrite:
    """Resolved dependency edge ready to be persisted."""

    from_task_id: str
    to_task_id: str
    dependency_type: str
    confidence: float
    source: str
    raw_match: str = ""
    match_score: float = 0.0
    match_reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class EdgeView:
    """Stored dependency edge."""

    edge_id: int
    from_task_id: str
    to_task_id: str
    dependency_type: str
    confidence: float
    source: str
    raw_match: str
    match_score: float
    match_reasons: list[str]
    created_at: datetime


@dataclass(slots=True)
class UnresolvedHintWrite:
    """Hint that matched no task, kept for later review."""

    task_id: str
    raw_reference: str
    dependency_type: str
    confidence: float
    source: str


@dataclass(slots=True)
class DecisionView:
    """Stored decision request."""

    decision_id: str
    task_id: str | None
    title: str
    description: str
    options: list[str]
    recommendation: str | None
    reasoning: str | None
    urgency: str
    status: str
    choice: str | None
    notes: str | None
    resolved_by: str | None
    metadata: dict[str, Any]
    created_at: datetime
    resolved_at: datetime | None


@dataclass(slots=True)
class DependencyRecordView:
    """Row of the explicit task-to-task dependency ledger."""

    dependency_id: int
    task_id: str
    depends_on_task_id: str
    dependency_type: str
    status: str
    created_at: datetime
    resolved_at: datetime | None


@dataclass(slots=True)
class AgentCapacity:
    """Live load snapshot for one agent."""

    agent: str
    active: int
    queued: int
    max_active: int
    max_queued: int

    @property
    def is_overloaded(self) -> bool:
        return self.active >= self.max_active and self.queued >= self.max_queued

    @property
    def has_room(self) -> bool:
        return not self.is_overloaded


@dataclass(slots=True)
class QueueStats:
    """Per-agent task counts by lifecycle state."""

    agent: str
    queued: int = 0
    active: int = 0
    blocked: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.active + self.blocked + self.completed + self.failed


@dataclass(slots=True)
class ResolutionStats:
    """Aggregate counters for blocked, escalated, and unblocked work."""

    blocked_by_type: dict[str, int]
    escalated: int
    unblocked_since: int
    pending_decisions: int

    @property
    def total_blocked(self) -> int:
        return sum(self.blocked_by_type.values())
