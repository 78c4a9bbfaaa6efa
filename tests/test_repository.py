from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from agent_dispatch.dispatch.models import (
    BlockerInfo,
    EscalationType,
    TaskCreate,
    TaskStatus,
)
from agent_dispatch.dispatch.repository import TaskRepository

pytestmark = [
    allure.epic("Agent Dispatch"),
    allure.feature("Task Store"),
]


def _create(
    repository: TaskRepository,
    task_id: str,
    *,
    agent: str = "web_dev_lead",
    priority: int = 50,
) -> None:
    repository.create_task(
        TaskCreate(title=f"Task {task_id}", task_id=task_id, assigned_agent=agent, priority=priority),
    )


def test_next_task_id_is_sequential_per_day(repository: TaskRepository) -> None:
    day = datetime(2026, 10, 17, 9, 30, tzinfo=UTC)
    next_day = datetime(2026, 10, 18, 0, 5, tzinfo=UTC)

    assert repository.next_task_id(now=day) == "TASK-2026-1017-001"
    assert repository.next_task_id(now=day) == "TASK-2026-1017-002"
    assert repository.next_task_id(now=next_day) == "TASK-2026-1018-001"


def test_create_task_normalizes_agent_and_rejects_duplicates(repository: TaskRepository) -> None:
    view = repository.create_task(
        TaskCreate(title="Landing page", task_id="web-001", assigned_agent=" Web_Dev_Lead "),
    )

    assert view.assigned_agent == "web_dev_lead"
    assert view.status == TaskStatus.QUEUED
    assert view.version == 0
    with pytest.raises(RuntimeError, match="Task already exists: web-001"):
        repository.create_task(TaskCreate(title="Again", task_id="web-001"))
    with pytest.raises(ValueError, match="Task id is required"):
        repository.create_task(TaskCreate(title="No id"))


def test_claim_next_queued_prefers_priority_then_age(repository: TaskRepository) -> None:
    _create(repository, "t-low", priority=10)
    _create(repository, "t-high-1", priority=90)
    _create(repository, "t-high-2", priority=90)
    _create(repository, "t-other-agent", agent="cto", priority=100)

    first = repository.claim_next_queued(agent="web_dev_lead")
    second = repository.claim_next_queued(agent="web_dev_lead")
    third = repository.claim_next_queued(agent="web_dev_lead")

    assert first is not None and first.task_id == "t-high-1"
    assert first.status == TaskStatus.ACTIVE
    assert first.started_at is not None
    assert second is not None and second.task_id == "t-high-2"
    assert third is not None and third.task_id == "t-low"
    assert repository.claim_next_queued(agent="web_dev_lead") is None


def test_claim_and_complete_are_conditional(repository: TaskRepository) -> None:
    _create(repository, "t-1")

    assert repository.complete_task(task_id="t-1", outputs={"url": "x"}) is False
    assert repository.claim_task(task_id="t-1") is not None
    assert repository.claim_task(task_id="t-1") is None
    assert repository.complete_task(task_id="t-1", outputs={"url": "x"}) is True
    assert repository.complete_task(task_id="t-1", outputs={"url": "y"}) is False

    task = repository.get_task("t-1")
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.outputs == {"url": "x"}
    assert task.completed_at is not None


def test_record_failure_requires_current_version(repository: TaskRepository) -> None:
    _create(repository, "t-1")
    claimed = repository.claim_task(task_id="t-1")
    assert claimed is not None

    assert not repository.record_failure(
        task_id="t-1",
        expected_version=claimed.version - 1,
        attempt=1,
        error="boom",
        backoff_seconds=1.0,
        terminal=False,
    )
    assert repository.record_failure(
        task_id="t-1",
        expected_version=claimed.version,
        attempt=1,
        error="boom",
        backoff_seconds=1.0,
        terminal=False,
    )

    task = repository.get_task("t-1")
    assert task is not None
    assert task.status == TaskStatus.QUEUED
    assert task.retry_count == 1
    assert task.not_before is not None
    assert task.metadata["error_history"][0]["error"] == "boom"


def test_block_unblock_and_escalate_once(repository: TaskRepository) -> None:
    _create(repository, "t-1")
    repository.claim_task(task_id="t-1")

    assert repository.block_task(task_id="t-1", blocker=BlockerInfo.auth("stripe"))
    blocked = repository.get_task("t-1")
    assert blocked is not None
    assert blocked.status == TaskStatus.BLOCKED_AUTH
    assert blocked.blocker is not None and blocked.blocker.payload["service"] == "stripe"

    assert repository.escalate_task(
        task_id="t-1",
        escalation_type=EscalationType.STALE_BLOCKER,
        reason="stuck",
    )
    assert not repository.escalate_task(
        task_id="t-1",
        escalation_type=EscalationType.STALE_BLOCKER,
        reason="stuck again",
    )

    assert repository.unblock_task(task_id="t-1", resolution={"resolution_type": "manual"})
    assert not repository.unblock_task(task_id="t-1", resolution={"resolution_type": "manual"})
    task = repository.get_task("t-1")
    assert task is not None
    assert task.status == TaskStatus.QUEUED
    assert task.blocker is None
    assert task.escalation_type is None
    assert len(task.metadata["escalation_history"]) == 1
    history = task.metadata["resolution_history"]
    assert history[0]["previous_status"] == "blocked_auth"
    assert history[0]["blocker"]["type"] == "auth"


def test_task_details_include_event_stream(repository: TaskRepository) -> None:
    _create(repository, "t-1")
    repository.claim_task(task_id="t-1")
    repository.complete_task(task_id="t-1", outputs={})

    details = repository.get_task_details(task_id="t-1")

    assert details is not None
    assert [event.event_type for event in details.events] == ["created", "started", "completed"]
    assert details.events[-1].status_to == TaskStatus.COMPLETED
    assert repository.get_task_details(task_id="missing") is None


def test_queue_stats_and_capacity(repository: TaskRepository) -> None:
    _create(repository, "t-1")
    _create(repository, "t-2")
    _create(repository, "t-3", agent="cto")
    repository.claim_task(task_id="t-1")

    stats = {entry.agent: entry for entry in repository.queue_stats()}
    capacity = repository.capacity_for("WEB_DEV_LEAD", max_active=1, max_queued=1)

    assert stats["web_dev_lead"].active == 1
    assert stats["web_dev_lead"].queued == 1
    assert stats["cto"].queued == 1
    assert capacity.agent == "web_dev_lead"
    assert capacity.is_overloaded
    assert repository.known_agents() == ["cto", "web_dev_lead"]
    assert repository.queue_stats(agent="nobody")[0].total == 0


def test_decision_requires_existing_task(repository: TaskRepository) -> None:
    with pytest.raises(RuntimeError, match="Task not found: ghost"):
        repository.create_decision(title="Pick vendor", task_id="ghost")

    decision = repository.create_decision(title="Pick vendor", options=["a", "b"])
    assert decision.status == "pending"
    assert decision.options == ["a", "b"]
    assert repository.resolve_decision(decision_id=decision.decision_id, choice="a") is not None
    assert repository.resolve_decision(decision_id=decision.decision_id, choice="b") is None
