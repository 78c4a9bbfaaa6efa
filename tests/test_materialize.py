from __future__ import annotations

import allure

from agent_dispatch.dependencies.materialize import (
    SOURCE_AWAITING,
    SOURCE_DEPENDENT_ON,
    SOURCE_EXPLICIT,
    EdgeMaterializer,
    render_summary,
)
from agent_dispatch.dependencies.models import DependencyType
from agent_dispatch.dispatch.models import TaskCreate
from agent_dispatch.dispatch.repository import TaskRepository

pytestmark = [
    allure.epic("Dependency Analysis"),
    allure.feature("Edge Materialization"),
]


def _seed_business_number_pair(repository: TaskRepository) -> None:
    repository.create_task(
        TaskCreate(
            title="Register the business number with CRA",
            task_id="ceo-001",
            assigned_agent="ceo",
        ),
    )
    repository.create_task(
        TaskCreate(
            title="Payroll integration",
            description="Requires Business Number registration to complete first",
            task_id="cto-002",
            assigned_agent="cto",
            metadata={"blocked_by": ["ceo-001", "legal-review-xyz"]},
        ),
    )


def test_dry_run_reports_edges_without_writing(repository: TaskRepository) -> None:
    _seed_business_number_pair(repository)

    summary = EdgeMaterializer(repository).run(dry_run=True)

    assert summary.tasks_scanned == 2
    assert summary.explicit == 1
    assert summary.implicit == 1
    assert summary.resolved == 1
    assert summary.duplicates == 1
    assert [hint.raw_reference for hint in summary.unresolved_hints] == ["legal-review-xyz"]
    assert repository.list_edges() == []

    lines = render_summary(summary)
    assert "mode=dry-run" in lines
    assert any(line.startswith("would_create: cto-002 depends_on=ceo-001") for line in lines)


def test_live_run_persists_edges_once(repository: TaskRepository) -> None:
    _seed_business_number_pair(repository)

    first = EdgeMaterializer(repository).run()
    second = EdgeMaterializer(repository).run()

    assert first.inserted == 1
    edges = repository.list_edges()
    assert len(edges) == 1
    assert edges[0].from_task_id == "ceo-001"
    assert edges[0].to_task_id == "cto-002"
    assert edges[0].source == SOURCE_EXPLICIT
    assert edges[0].dependency_type == DependencyType.EXPLICIT
    assert second.existing_edges == 1
    assert second.resolved == 0
    assert second.inserted == 0


def test_explicit_reference_resolves_through_original_id(repository: TaskRepository) -> None:
    repository.create_task(
        TaskCreate(
            title="Open the business bank account",
            task_id="TASK-2026-1017-001",
            assigned_agent="cfo",
            metadata={"original_id": "cfo-003"},
        ),
    )
    repository.create_task(
        TaskCreate(
            title="Connect payment processor",
            task_id="TASK-2026-1017-002",
            assigned_agent="cto",
            metadata={"blocked_by": '["cfo-003"]'},
        ),
    )

    summary = EdgeMaterializer(repository).run(dry_run=True)

    assert [(edge.from_task_id, edge.to_task_id) for edge in summary.edges] == [
        ("TASK-2026-1017-001", "TASK-2026-1017-002"),
    ]
    assert summary.unresolved == 0


def test_awaiting_role_creates_blocked_by_edge(repository: TaskRepository) -> None:
    repository.create_task(
        TaskCreate(title="Approve Q3 budget", task_id="cfo-001", assigned_agent="cfo"),
    )
    repository.create_task(
        TaskCreate(
            title="Launch paid social campaign",
            description="Awaiting cfo approval on spend",
            task_id="cmo-010",
            assigned_agent="cmo",
        ),
    )

    summary = EdgeMaterializer(repository).run(dry_run=True)

    assert len(summary.edges) == 1
    edge = summary.edges[0]
    assert (edge.from_task_id, edge.to_task_id) == ("cfo-001", "cmo-010")
    assert edge.source == SOURCE_AWAITING
    assert edge.dependency_type == DependencyType.BLOCKED_BY
    assert summary.cross_functional == 1


def test_dependent_on_sentence_links_task_with_shared_terms(repository: TaskRepository) -> None:
    repository.create_task(
        TaskCreate(
            title="Register the business number with CRA",
            task_id="ceo-001",
            assigned_agent="ceo",
        ),
    )
    repository.create_task(
        TaskCreate(
            title="Open payroll account",
            task_id="chro-004",
            assigned_agent="chro",
            metadata={
                "notes": (
                    "Dependent on business number receipt. "
                    "Dependent on legal sign-off from counsel."
                ),
            },
        ),
    )

    summary = EdgeMaterializer(repository).run(dry_run=True)

    assert summary.dependent_on == 1
    assert [(edge.from_task_id, edge.to_task_id) for edge in summary.edges] == [
        ("ceo-001", "chro-004"),
    ]
    assert summary.duplicates == summary.implicit
    unresolved = [hint for hint in summary.unresolved_hints if hint.source == SOURCE_DEPENDENT_ON]
    assert [hint.raw_reference for hint in unresolved] == ["legal sign-off from counsel"]
    assert unresolved[0].dependency_type == DependencyType.BLOCKS
    assert "dependent_on=1" in render_summary(summary)
