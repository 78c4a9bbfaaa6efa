from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from agent_dispatch.config import ResolutionSettings
from agent_dispatch.dispatch.events import EngineEvent, EngineEventType, EventBus
from agent_dispatch.dispatch.models import (
    BlockerInfo,
    EscalationType,
    TaskCreate,
    TaskStatus,
)
from agent_dispatch.dispatch.notifications import Notification, RecordingNotificationSink
from agent_dispatch.dispatch.repository import TaskRepository
from agent_dispatch.dispatch.resolution import RETRY_ON_DEPENDENCY_FAILURE, ResolutionEngine
from agent_dispatch.storage.common import utc_now

pytestmark = [
    allure.epic("Agent Dispatch"),
    allure.feature("Blocker Resolution"),
]


def _task(repository: TaskRepository, task_id: str, *, agent: str = "cmo", **metadata: object) -> None:
    repository.create_task(
        TaskCreate(title=f"Task {task_id}", task_id=task_id, assigned_agent=agent, metadata=metadata),
    )


def _blocked(
    repository: TaskRepository,
    task_id: str,
    blocker: BlockerInfo,
    **metadata: object,
) -> None:
    _task(repository, task_id, **metadata)
    repository.claim_task(task_id=task_id)
    assert repository.block_task(task_id=task_id, blocker=blocker)


def _finished(repository: TaskRepository, task_id: str, *, failed: bool = False) -> None:
    _task(repository, task_id, agent="cfo")
    claimed = repository.claim_task(task_id=task_id)
    assert claimed is not None
    if failed:
        repository.record_failure(
            task_id=task_id,
            expected_version=claimed.version,
            attempt=3,
            error="boom",
            backoff_seconds=4.0,
            terminal=True,
        )
    else:
        repository.complete_task(task_id=task_id, outputs={"budget": 5000})


@pytest.fixture()
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture()
def events() -> tuple[EventBus, list[EngineEvent]]:
    bus = EventBus()
    seen: list[EngineEvent] = []
    bus.subscribe(seen.append)
    return bus, seen


def test_completed_blocker_requeues_waiting_task(
    repository: TaskRepository,
    events: tuple[EventBus, list[EngineEvent]],
) -> None:
    bus, seen = events
    _finished(repository, "cfo-1")
    _blocked(repository, "cmo-1", BlockerInfo.agent("cfo-1", reason="needs budget"))
    _finished(repository, "cfo-2")
    _task(repository, "cfo-3", agent="cfo")
    _blocked(repository, "cmo-2", BlockerInfo.agent("cfo-3"))

    summary = ResolutionEngine(repository, events=bus).run_dependency_resolver()

    assert (summary.checked, summary.unblocked, summary.waiting) == (2, 1, 1)
    task = repository.get_task("cmo-1")
    assert task is not None
    assert task.status == TaskStatus.QUEUED
    assert task.unblocked_at is not None
    record = task.metadata["resolution_history"][0]
    assert record["resolution_type"] == "dependency_completed"
    assert record["blocker_outputs"] == {"budget": 5000}
    assert record["previous_status"] == "blocked_agent"
    assert repository.get_task("cmo-2").status == TaskStatus.BLOCKED_AGENT  # type: ignore[union-attr]
    assert [(event.event_type, event.task_id) for event in seen] == [
        (EngineEventType.TASK_UNBLOCKED, "cmo-1"),
    ]


def test_failed_blocker_escalates_once_and_notifies(
    repository: TaskRepository,
    sink: RecordingNotificationSink,
) -> None:
    _finished(repository, "cfo-1", failed=True)
    _blocked(repository, "cmo-1", BlockerInfo.agent("cfo-1"))
    engine = ResolutionEngine(repository, notifier=sink)

    first = engine.run_dependency_resolver()
    second = engine.run_dependency_resolver()

    assert first.escalated == 1
    assert second.escalated == 0
    task = repository.get_task("cmo-1")
    assert task is not None
    assert task.status == TaskStatus.BLOCKED_AGENT
    assert task.escalation_type == EscalationType.DEPENDENCY_FAILED
    assert len(sink.notifications) == 1
    assert sink.notifications[0].severity == "critical"
    assert sink.notifications[0].details == {"blocker_task_id": "cfo-1"}


def test_failed_blocker_with_retry_flag_unblocks(repository: TaskRepository) -> None:
    _finished(repository, "cfo-1", failed=True)
    _blocked(
        repository,
        "cmo-1",
        BlockerInfo.agent("cfo-1"),
        **{RETRY_ON_DEPENDENCY_FAILURE: True},
    )

    check = ResolutionEngine(repository).check_and_resolve_blocker("cmo-1")

    assert check.unblocked
    task = repository.get_task("cmo-1")
    assert task is not None
    assert task.status == TaskStatus.QUEUED
    assert task.metadata["resolution_history"][0]["resolution_type"] == "dependency_failed_retry"


def test_missing_blocker_task_unblocks_with_warning(repository: TaskRepository) -> None:
    _blocked(repository, "cmo-1", BlockerInfo.agent("ghost-404"))

    assert ResolutionEngine(repository).check_and_resolve_blocker("cmo-1").unblocked

    task = repository.get_task("cmo-1")
    assert task is not None
    assert task.metadata["resolution_history"][0]["resolution_type"] == "blocker_not_found"


def test_check_ignores_tasks_that_are_not_agent_blocked(repository: TaskRepository) -> None:
    _task(repository, "cmo-1")
    engine = ResolutionEngine(repository)

    assert tuple(engine.check_and_resolve_blocker("cmo-1")) == (False, False)
    assert tuple(engine.check_and_resolve_blocker("missing")) == (False, False)


def test_stale_blocked_task_escalates_once(
    repository: TaskRepository,
    sink: RecordingNotificationSink,
) -> None:
    _blocked(repository, "cmo-1", BlockerInfo.payment(amount=49.0, vendor="Canva"))
    engine = ResolutionEngine(
        repository,
        settings=ResolutionSettings(stale_after_hours=24),
        notifier=sink,
    )
    later = utc_now() + timedelta(hours=25)

    assert engine.run_auto_escalation(now=utc_now() + timedelta(hours=1)).escalated == 0
    first = engine.run_auto_escalation(now=later)
    second = engine.run_auto_escalation(now=later)

    assert (first.checked, first.escalated) == (1, 1)
    assert (second.checked, second.escalated) == (0, 0)
    task = repository.get_task("cmo-1")
    assert task is not None
    assert task.escalation_type == EscalationType.STALE_BLOCKER
    assert task.escalation_reason == "Task blocked for 25 hours (threshold: 24 hours)"
    assert task.metadata["escalation_history"][0]["blocked_status"] == "blocked_payment"
    assert [notification.severity for notification in sink.notifications] == ["warning"]


def test_decision_resolution_requeues_task(
    repository: TaskRepository,
    events: tuple[EventBus, list[EngineEvent]],
) -> None:
    bus, seen = events
    engine = ResolutionEngine(repository, events=bus)
    _task(repository, "coo-1")
    decision = engine.create_decision_request(
        title="Pick payroll vendor",
        task_id="coo-1",
        options=["Wagepoint", "Gusto"],
    )
    repository.claim_task(task_id="coo-1")
    repository.block_task(
        task_id="coo-1",
        blocker=BlockerInfo.decision("Pick payroll vendor", decision_id=decision.decision_id),
    )

    assert [pending.decision_id for pending in engine.pending_decisions()] == [decision.decision_id]
    outcome = engine.handle_decision(decision.decision_id, choice="Wagepoint", notes="cheaper")
    repeat = engine.handle_decision(decision.decision_id, choice="Gusto")

    assert outcome.processed and outcome.requeued
    assert outcome.task_id == "coo-1"
    assert repeat.processed is False
    assert repeat.message == "Decision already processed: resolved"
    task = repository.get_task("coo-1")
    assert task is not None
    assert task.status == TaskStatus.QUEUED
    record = task.metadata["resolution_history"][0]
    assert record["choice"] == "Wagepoint"
    assert record["resolved_by"] == "ceo"
    stored = repository.get_decision(decision.decision_id)
    assert stored is not None
    assert (stored.status, stored.choice, stored.notes) == ("resolved", "Wagepoint", "cheaper")
    assert engine.pending_decisions() == []
    assert [event.event_type for event in seen] == [
        EngineEventType.DECISION_REQUESTED,
        EngineEventType.DECISION_RESOLVED,
        EngineEventType.TASK_UNBLOCKED,
    ]


def test_decision_errors(repository: TaskRepository) -> None:
    engine = ResolutionEngine(repository)
    decision = engine.create_decision_request(title="Standalone question")

    with pytest.raises(ValueError, match="choice"):
        engine.handle_decision(decision.decision_id, choice="  ")
    with pytest.raises(RuntimeError, match="Decision not found"):
        engine.handle_decision("DEC-missing", choice="yes")
    outcome = engine.handle_decision(decision.decision_id, choice="yes")
    assert outcome.processed
    assert outcome.message == "Decision recorded but no associated task"


def test_grant_authorization_clears_auth_and_payment_only(repository: TaskRepository) -> None:
    _blocked(repository, "cfo-9", BlockerInfo.payment(amount=120.0, vendor="Railway"))
    _task(repository, "cmo-2")
    engine = ResolutionEngine(repository)

    assert engine.grant_authorization("cfo-9", granted_by="ceo") is True
    assert engine.grant_authorization("cfo-9") is False
    assert engine.grant_authorization("cmo-2") is False
    with pytest.raises(RuntimeError, match="Task not found"):
        engine.grant_authorization("ghost")

    task = repository.get_task("cfo-9")
    assert task is not None
    assert task.status == TaskStatus.QUEUED
    record = task.metadata["resolution_history"][0]
    assert record["resolution_type"] == "authorization_granted"
    assert record["granted_by"] == "ceo"


def test_dependency_ledger_and_stats(repository: TaskRepository) -> None:
    _task(repository, "cto-1")
    _task(repository, "cto-2")
    _blocked(repository, "cto-3", BlockerInfo.auth("github"))
    engine = ResolutionEngine(repository)

    record = engine.add_dependency("cto-2", "cto-1", dependency_type="completion")
    with pytest.raises(ValueError, match="itself"):
        engine.add_dependency("cto-1", "cto-1")
    with pytest.raises(RuntimeError, match="Task not found"):
        engine.add_dependency("cto-1", "ghost")

    assert [item.dependency_id for item in engine.list_dependencies("cto-2")] == [
        record.dependency_id,
    ]
    assert engine.resolve_dependency(record.dependency_id) is True
    assert engine.resolve_dependency(record.dependency_id) is False
    assert engine.list_dependencies("cto-2") == []
    assert engine.list_dependencies("cto-2", status=None)[0].status == "resolved"

    stats = engine.stats()
    assert stats.blocked_by_type["blocked_auth"] == 1
    assert stats.total_blocked == 1
    assert stats.escalated == 0


class _UnreachableSink:
    def __init__(self) -> None:
        self.attempts: list[str] = []

    def notify(self, notification: Notification) -> None:
        self.attempts.append(notification.task_id)
        raise RuntimeError("sink down")


def test_failing_sink_does_not_stop_escalation_pass(repository: TaskRepository) -> None:
    _blocked(repository, "cmo-1", BlockerInfo.payment(amount=49.0, vendor="Canva"))
    _blocked(repository, "cmo-2", BlockerInfo.auth("meta-ads"))
    sink = _UnreachableSink()
    engine = ResolutionEngine(repository, notifier=sink)

    summary = engine.run_auto_escalation(now=utc_now() + timedelta(hours=25))

    assert (summary.checked, summary.escalated, summary.errors) == (2, 2, 0)
    assert sorted(sink.attempts) == ["cmo-1", "cmo-2"]
    for task_id in ("cmo-1", "cmo-2"):
        task = repository.get_task(task_id)
        assert task is not None
        assert task.escalation_type == EscalationType.STALE_BLOCKER


def test_failing_sink_does_not_stop_dependency_pass(repository: TaskRepository) -> None:
    _finished(repository, "cfo-1", failed=True)
    _blocked(repository, "cmo-1", BlockerInfo.agent("cfo-1"))
    _blocked(repository, "cmo-2", BlockerInfo.agent("cfo-1"))

    summary = ResolutionEngine(repository, notifier=_UnreachableSink()).run_dependency_resolver()

    assert (summary.checked, summary.escalated, summary.errors) == (2, 2, 0)


def test_decision_only_releases_task_waiting_on_it(repository: TaskRepository) -> None:
    engine = ResolutionEngine(repository)
    _task(repository, "coo-1")
    first = engine.create_decision_request(title="Pick vendor", task_id="coo-1")
    second = engine.create_decision_request(title="Pick plan", task_id="coo-1")
    repository.claim_task(task_id="coo-1")
    repository.block_task(
        task_id="coo-1",
        blocker=BlockerInfo.decision("Pick plan", decision_id=second.decision_id),
    )

    stale = engine.handle_decision(first.decision_id, choice="Acme")

    assert stale.processed and not stale.requeued
    assert stale.message == "Decision recorded; task was not waiting on this decision"
    task = repository.get_task("coo-1")
    assert task is not None
    assert task.status == TaskStatus.BLOCKED_DECISION
    assert engine.handle_decision(second.decision_id, choice="Pro").requeued


def test_decision_does_not_release_task_blocked_on_payment(repository: TaskRepository) -> None:
    engine = ResolutionEngine(repository)
    _task(repository, "coo-2")
    decision = engine.create_decision_request(title="Pick vendor", task_id="coo-2")
    assert repository.claim_task(task_id="coo-2") is not None
    repository.block_task(
        task_id="coo-2",
        blocker=BlockerInfo.payment(amount=99.0, vendor="Acme"),
    )

    outcome = engine.handle_decision(decision.decision_id, choice="Acme")

    assert outcome.processed and not outcome.requeued
    task = repository.get_task("coo-2")
    assert task is not None
    assert task.status == TaskStatus.BLOCKED_PAYMENT
