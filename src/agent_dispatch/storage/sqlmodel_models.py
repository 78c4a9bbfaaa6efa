"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_agent_status_priority", "assigned_agent", "status", "priority"),
        Index("idx_tasks_status_blocked_at", "status", "blocked_at"),
    )

    task_id: str = Field(primary_key=True)
    title: str = ""
    description: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    notes: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    assigned_agent: str | None = Field(default=None, index=True)
    team: str | None = Field(default=None, index=True)
    workflow: str | None = None
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, default="[]"))
    keywords_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, default="[]"))
    priority: int = Field(default=50, index=True)
    status: str = Field(index=True)
    retry_count: int = 0
    blocker_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    escalation_type: str | None = Field(default=None, index=True)
    escalation_reason: str | None = None
    not_before: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    outputs_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, default="{}"))
    version: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    blocked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    unblocked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    escalated_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DependencyEdge(SQLModel, table=True):
    __tablename__ = "dependency_edges"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("from_task_id", "to_task_id", name="uq_dependency_edges_from_to"),
    )

    id: int | None = Field(default=None, primary_key=True)
    from_task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    to_task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    dependency_type: str
    confidence: float
    source: str
    raw_match: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    match_score: float = 0.0
    match_reasons_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, default="[]"),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UnresolvedDependencyHint(SQLModel, table=True):
    __tablename__ = "unresolved_dependency_hints"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    raw_reference: str = Field(sa_column=Column(Text, nullable=False))
    dependency_type: str
    confidence: float
    source: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_dependencies_task_status", "task_id", "status"),)

    dependency_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    depends_on_task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    dependency_type: str = "completion"
    status: str = Field(default="active", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Decision(SQLModel, table=True):
    __tablename__ = "decisions"  # type: ignore[bad-override]

    decision_id: str = Field(primary_key=True)
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    options_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, default="[]"))
    recommendation: str | None = None
    reasoning: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    urgency: str = "medium"
    status: str = Field(default="pending", index=True)
    choice: str | None = None
    notes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    resolved_by: str | None = None
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, default="{}"))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskIdCounter(SQLModel, table=True):
    __tablename__ = "task_id_counters"  # type: ignore[bad-override]

    counter_date: str = Field(primary_key=True)
    value: int = 0
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
