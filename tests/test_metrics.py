from __future__ import annotations

import allure

from agent_dispatch.dispatch.metrics import build_dispatch_metrics, render_stats_lines
from agent_dispatch.dispatch.models import (
    AgentCapacity,
    QueueStats,
    ResolutionStats,
    TaskCreate,
    TaskStatus,
)
from agent_dispatch.dispatch.repository import TaskRepository

pytestmark = [
    allure.epic("Agent Dispatch"),
    allure.feature("Operator Stats"),
]


def test_snapshot_counts_bands_retries_and_overload(repository: TaskRepository) -> None:
    for task_id, priority in (("t-1", 10), ("t-2", 50), ("t-3", 90), ("t-4", 95)):
        repository.create_task(
            TaskCreate(title=task_id, task_id=task_id, assigned_agent="qa", priority=priority),
        )
    claimed = repository.claim_task(task_id="t-4")
    assert claimed is not None
    repository.record_failure(
        task_id="t-4",
        expected_version=claimed.version,
        attempt=1,
        error="flaky",
        backoff_seconds=1.0,
        terminal=False,
    )

    snapshot = build_dispatch_metrics(
        queue=repository.queue_stats(),
        resolution=ResolutionStats(
            blocked_by_type={"blocked_agent": 2, "blocked_auth": 1},
            escalated=1,
            unblocked_since=3,
            pending_decisions=0,
        ),
        open_tasks=repository.list_tasks(statuses=(TaskStatus.QUEUED,)),
        capacities=[
            AgentCapacity(agent="qa", active=0, queued=4, max_active=1, max_queued=10),
            AgentCapacity(agent="cto", active=1, queued=10, max_active=1, max_queued=10),
        ],
    )

    assert snapshot.queued_priority_bands == {"low": 1, "normal": 1, "high": 2}
    assert snapshot.retrying_tasks == 1
    assert snapshot.overloaded_agents == ["cto"]
    assert snapshot.totals.queued == 4


def test_render_stats_lines_lists_per_agent_rows() -> None:
    snapshot = build_dispatch_metrics(
        queue=[QueueStats(agent="cmo", queued=2, blocked=1), QueueStats(agent="qa", completed=4)],
        resolution=ResolutionStats(
            blocked_by_type={"blocked_decision": 1},
            escalated=0,
            unblocked_since=0,
            pending_decisions=1,
        ),
        open_tasks=[],
        capacities=[],
    )

    lines = render_stats_lines(snapshot=snapshot, hours=12)

    assert lines[0] == "Dispatch health (window=12h)"
    assert "Tasks: queued=2 active=0 blocked=1 completed=4 failed=0" in lines
    assert "Blocked by type: blocked_decision=1 (total=1)" in lines
    assert "Pending decisions: 1" in lines
    assert "Overloaded agents: none" in lines
    assert lines[-2:] == [
        "  cmo: queued=2 active=0 blocked=1 completed=0 failed=0 total=3",
        "  qa: queued=0 active=0 blocked=0 completed=4 failed=0 total=4",
    ]
