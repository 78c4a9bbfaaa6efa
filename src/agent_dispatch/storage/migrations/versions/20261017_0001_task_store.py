"""Create task store, dependency, decision, and counter tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("assigned_agent", sa.String(), nullable=True),
        sa.Column("team", sa.String(), nullable=True),
        sa.Column("workflow", sa.String(), nullable=True),
        sa.Column("tags_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("keywords_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("blocker_json", sa.Text(), nullable=True),
        sa.Column("escalation_type", sa.String(), nullable=True),
        sa.Column("escalation_reason", sa.String(), nullable=True),
        sa.Column("not_before", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outputs_json", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("blocked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unblocked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_assigned_agent", "tasks", ["assigned_agent"])
    op.create_index("ix_tasks_team", "tasks", ["team"])
    op.create_index("ix_tasks_priority", "tasks", ["priority"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_escalation_type", "tasks", ["escalation_type"])
    op.create_index(
        "idx_tasks_agent_status_priority",
        "tasks",
        ["assigned_agent", "status", "priority"],
    )
    op.create_index("idx_tasks_status_blocked_at", "tasks", ["status", "blocked_at"])

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"])
    op.create_index("idx_task_events_task_time", "task_events", ["task_id", "created_at"])

    op.create_table(
        "dependency_edges",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("from_task_id", sa.String(), nullable=False),
        sa.Column("to_task_id", sa.String(), nullable=False),
        sa.Column("dependency_type", sa.String(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("raw_match", sa.Text(), nullable=False, server_default=""),
        sa.Column("match_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("match_reasons_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["from_task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["to_task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("from_task_id", "to_task_id", name="uq_dependency_edges_from_to"),
    )
    op.create_index("ix_dependency_edges_from_task_id", "dependency_edges", ["from_task_id"])
    op.create_index("ix_dependency_edges_to_task_id", "dependency_edges", ["to_task_id"])

    op.create_table(
        "unresolved_dependency_hints",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("raw_reference", sa.Text(), nullable=False),
        sa.Column("dependency_type", sa.String(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_unresolved_dependency_hints_task_id",
        "unresolved_dependency_hints",
        ["task_id"],
    )

    op.create_table(
        "task_dependencies",
        sa.Column("dependency_id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("depends_on_task_id", sa.String(), nullable=False),
        sa.Column("dependency_type", sa.String(), nullable=False, server_default="completion"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["depends_on_task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("dependency_id"),
    )
    op.create_index("ix_task_dependencies_status", "task_dependencies", ["status"])
    op.create_index(
        "idx_task_dependencies_task_status",
        "task_dependencies",
        ["task_id", "status"],
    )

    op.create_table(
        "decisions",
        sa.Column("decision_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("options_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("recommendation", sa.String(), nullable=True),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("urgency", sa.String(), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("choice", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("decision_id"),
    )
    op.create_index("ix_decisions_task_id", "decisions", ["task_id"])
    op.create_index("ix_decisions_status", "decisions", ["status"])

    op.create_table(
        "task_id_counters",
        sa.Column("counter_date", sa.String(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("counter_date"),
    )


def downgrade() -> None:
    op.drop_table("task_id_counters")
    op.drop_index("ix_decisions_status", table_name="decisions")
    op.drop_index("ix_decisions_task_id", table_name="decisions")
    op.drop_table("decisions")
    op.drop_index("idx_task_dependencies_task_status", table_name="task_dependencies")
    op.drop_index("ix_task_dependencies_status", table_name="task_dependencies")
    op.drop_table("task_dependencies")
    op.drop_index("ix_unresolved_dependency_hints_task_id", table_name="unresolved_dependency_hints")
    op.drop_table("unresolved_dependency_hints")
    op.drop_index("ix_dependency_edges_to_task_id", table_name="dependency_edges")
    op.drop_index("ix_dependency_edges_from_task_id", table_name="dependency_edges")
    op.drop_table("dependency_edges")
    op.drop_index("idx_task_events_task_time", table_name="task_events")
    op.drop_index("ix_task_events_event_type", table_name="task_events")
    op.drop_table("task_events")
    op.drop_index("idx_tasks_status_blocked_at", table_name="tasks")
    op.drop_index("idx_tasks_agent_status_priority", table_name="tasks")
    op.drop_index("ix_tasks_escalation_type", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_priority", table_name="tasks")
    op.drop_index("ix_tasks_team", table_name="tasks")
    op.drop_index("ix_tasks_assigned_agent", table_name="tasks")
    op.drop_table("tasks")
