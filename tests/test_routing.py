from __future__ import annotations

import allure
import pytest

from agent_dispatch.dispatch.events import EngineEvent, EngineEventType, EventBus
from agent_dispatch.dispatch.models import AgentCapacity, TaskCreate, TaskStatus
from agent_dispatch.dispatch.repository import TaskRepository
from agent_dispatch.dispatch.routing import RoutingRule, RuleMatch, TaskRouter

pytestmark = [
    allure.epic("Agent Dispatch"),
    allure.feature("Task Routing"),
]


def _load_agent(repository: TaskRepository, agent: str, *, active: int, queued: int) -> None:
    for index in range(active + queued):
        task_id = f"{agent}-load-{index:02d}"
        repository.create_task(
            TaskCreate(title=f"Backlog {index}", task_id=task_id, assigned_agent=agent),
        )
        if index < active:
            repository.claim_task(task_id=task_id)


def test_keyword_rule_assigns_agent_and_records_routing(repository: TaskRepository) -> None:
    router = TaskRouter(repository)

    result, view = router.route_task(TaskCreate(title="Build React landing page"))

    assert result.assigned_to == "web_dev_lead"
    assert result.original_assignment == "web_dev_lead"
    assert result.matched_rule is not None
    assert "react" in result.matched_rule["keywords"]
    assert view.task_id.startswith("TASK-")
    assert view.status == TaskStatus.QUEUED
    assert view.team == "technology"
    assert view.metadata["routing"]["assigned_to"] == "web_dev_lead"
    assert view.metadata["routing"]["capacity_at_routing"]["was_overloaded"] is False


def test_overloaded_agent_falls_back_to_team_lead(repository: TaskRepository) -> None:
    _load_agent(repository, "web_dev_lead", active=1, queued=10)
    router = TaskRouter(repository)

    result, view = router.route_task(
        TaskCreate(title="Build React landing page", task_id="web-100"),
    )

    assert result.assigned_to == "cto"
    assert result.original_assignment == "web_dev_lead"
    assert result.capacity == {"active": 1, "queued": 10, "was_overloaded": True}
    assert view.assigned_agent == "cto"


def test_overloaded_team_lead_keeps_original_assignment(repository: TaskRepository) -> None:
    _load_agent(repository, "web_dev_lead", active=1, queued=10)
    _load_agent(repository, "cto", active=1, queued=10)

    result, _ = TaskRouter(repository).route_task(TaskCreate(title="Fix CSS on pricing page"))

    assert result.assigned_to == "web_dev_lead"
    assert result.capacity["was_overloaded"] is True


def test_routing_is_deterministic_for_same_state(repository: TaskRepository) -> None:
    router = TaskRouter(repository)
    payload = {"title": "Write launch blog article", "tags": ["marketing"]}

    first = router.suggest_routing(TaskCreate(**payload))
    second = router.suggest_routing(TaskCreate(**payload))

    assert first.suggested_agent == second.suggested_agent == "content_strategy_lead"
    assert first.confidence == "high"


def test_suggestion_confidence_levels(repository: TaskRepository) -> None:
    router = TaskRouter(repository)

    team_only = router.suggest_routing(TaskCreate(title="Quarterly offsite planning", team="tech"))
    nothing = router.suggest_routing(TaskCreate(title="Quarterly offsite planning"))

    assert (team_only.suggested_agent, team_only.confidence) == ("cto", "medium")
    assert (nothing.suggested_agent, nothing.confidence) == ("cos", "low")
    assert nothing.matched_rule is None
    assert repository.list_tasks() == []


def test_custom_rule_takes_precedence_and_can_be_removed(repository: TaskRepository) -> None:
    router = TaskRouter(repository)
    rule = RoutingRule(match=RuleMatch(tags=("urgent-legal",)), assign_to="compliance_lead")

    router.add_routing_rule(rule, position=0)
    task = TaskCreate(title="Build React landing page", tags=["urgent-legal"])

    assert router.suggest_routing(task).suggested_agent == "compliance_lead"
    assert router.remove_routing_rule(0) is rule
    assert router.remove_routing_rule(999) is None
    assert router.suggest_routing(task).suggested_agent == "web_dev_lead"


def test_rerouting_queued_task_updates_assignment(repository: TaskRepository) -> None:
    events = EventBus()
    seen: list[EngineEvent] = []
    events.subscribe(seen.append, event_types=[EngineEventType.TASK_ROUTED])
    router = TaskRouter(repository, events=events)

    router.route_task(TaskCreate(title="Quarterly offsite planning", task_id="ops-1"))
    _, view = router.route_task(
        TaskCreate(title="Quarterly offsite planning", task_id="ops-1", team="finance"),
    )

    assert view.assigned_agent == "cfo"
    assert [event.agent for event in seen] == ["cos", "cfo"]
    details = repository.get_task_details(task_id="ops-1")
    assert details is not None
    assert [event.event_type for event in details.events] == ["created", "rerouted"]


def test_route_task_leaves_caller_payload_untouched(repository: TaskRepository) -> None:
    payload = TaskCreate(title="Build React landing page", metadata={"source": "intake"})

    result, view = TaskRouter(repository).route_task(payload)

    assert payload.task_id is None
    assert payload.team is None
    assert payload.metadata == {"source": "intake"}
    assert view.task_id == result.task_id
    assert view.team == "technology"


def test_stale_capacity_read_cannot_overfill_agent(
    repository: TaskRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _load_agent(repository, "web_dev_lead", active=1, queued=10)
    router = TaskRouter(repository)
    # Another router saw the agent before its backlog landed.
    monkeypatch.setattr(
        router,
        "capacity",
        lambda agent: AgentCapacity(agent=agent, active=0, queued=0, max_active=1, max_queued=10),
    )

    result, view = router.route_task(
        TaskCreate(title="Build React landing page", task_id="web-200"),
    )

    assert result.assigned_to == "cto"
    assert view.assigned_agent == "cto"
    assert repository.capacity_for("web_dev_lead", max_active=1, max_queued=10).queued == 10
    details = repository.get_task_details(task_id="web-200")
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]


def test_guarded_save_rolls_back_when_agent_is_full(repository: TaskRepository) -> None:
    _load_agent(repository, "cfo", active=1, queued=10)

    refused = repository.save_routed_task(
        TaskCreate(title="Close the books", task_id="cfo-900"),
        assigned_agent="cfo",
        routing={"assigned_to": "cfo"},
        max_active=1,
        max_queued=10,
    )
    forced = repository.save_routed_task(
        TaskCreate(title="Close the books", task_id="cfo-900"),
        assigned_agent="cfo",
        routing={"assigned_to": "cfo"},
    )

    assert refused is None
    assert forced is not None
    assert forced.assigned_agent == "cfo"
    assert forced.metadata["routing"] == {"assigned_to": "cfo"}
