"""Controllers for dispatch CLI commands."""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from agent_dispatch.config import Settings
from agent_dispatch.dependencies.graph import DependencyGraph
from agent_dispatch.dependencies.materialize import EdgeMaterializer, render_summary
from agent_dispatch.dependencies.models import GraphEdge, TaskDocument
from agent_dispatch.dispatch.events import EventBus
from agent_dispatch.dispatch.executor import CommandExecutor
from agent_dispatch.dispatch.metrics import (
    build_dispatch_metrics,
    render_queue_lines,
    render_stats_lines,
)
from agent_dispatch.dispatch.models import (
    BLOCKED_STATUSES,
    DecisionView,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from agent_dispatch.dispatch.repository import DECISION_PENDING, TaskRepository
from agent_dispatch.dispatch.resolution import ResolutionEngine
from agent_dispatch.dispatch.routing import TaskRouter
from agent_dispatch.dispatch.scheduler import ExecutionEngine, TickOutcome
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskRouteCommand:
    """CLI input for routing a new task."""

    db_path: Path | None
    title: str
    description: str
    notes: str
    task_id: str | None
    team: str | None
    workflow: str | None
    tags: tuple[str, ...]
    keywords: tuple[str, ...]
    priority: int
    assigned_agent: str | None
    blocked_by: tuple[str, ...] = ()
    suggest_only: bool = False


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    agent: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class QueueStatsCommand:
    db_path: Path | None
    agent: str | None


@dataclass(slots=True)
class AuthorizeCommand:
    """CLI input for clearing an auth or payment blocker."""

    db_path: Path | None
    task_id: str
    granted_by: str | None
    notes: str | None


@dataclass(slots=True)
class DepsExtractCommand:
    """CLI input for batch edge materialization."""

    db_path: Path | None
    dry_run: bool
    sample_limit: int = 10


@dataclass(slots=True)
class DepsGraphCommand:
    """CLI input for graph summary, order, and cycles."""

    db_path: Path | None
    from_text: bool
    show_order: bool
    show_cycles: bool


@dataclass(slots=True)
class DepsTraceCommand:
    db_path: Path | None
    task_id: str
    direction: str
    from_text: bool


@dataclass(slots=True)
class DepsAddCommand:
    db_path: Path | None
    task_id: str
    depends_on_task_id: str
    dependency_type: str


@dataclass(slots=True)
class DepsListCommand:
    db_path: Path | None
    task_id: str | None
    include_resolved: bool


@dataclass(slots=True)
class DepsResolveCommand:
    db_path: Path | None
    dependency_id: int


@dataclass(slots=True)
class DecisionListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class DecisionResolveCommand:
    """CLI input for applying a decision to its blocked task."""

    db_path: Path | None
    decision_id: str
    choice: str
    notes: str | None
    resolved_by: str


@dataclass(slots=True)
class EngineRunCommand:
    """CLI input for running agent loops."""

    db_path: Path | None
    agents: tuple[str, ...]
    ticks: int | None
    with_resolution: bool = True


@dataclass(slots=True)
class EngineOnceCommand:
    db_path: Path | None


@dataclass(slots=True)
class EngineStatsCommand:
    db_path: Path | None
    hours: int


class DispatchCliController:
    """Coordinates routing, dependency, decision, and engine CLI operations."""

    # -- tasks ---------------------------------------------------------------

    def route_task(self, command: TaskRouteCommand) -> list[str]:
        settings = _settings(command.db_path)
        metadata: dict[str, Any] = {}
        if command.blocked_by:
            metadata["blocked_by"] = list(command.blocked_by)
        task = TaskCreate(
            title=command.title,
            description=command.description,
            notes=command.notes,
            task_id=command.task_id,
            assigned_agent=command.assigned_agent,
            team=command.team,
            workflow=command.workflow,
            tags=list(command.tags),
            keywords=list(command.keywords),
            priority=command.priority,
            metadata=metadata,
        )
        with _repository(settings) as repository:
            router = TaskRouter(repository, settings=settings.routing)
            if command.suggest_only:
                suggestion = router.suggest_routing(task)
                return [
                    f"Suggested agent: {suggestion.suggested_agent} "
                    f"confidence={suggestion.confidence}",
                    f"Matched rule: {_fmt_json(suggestion.matched_rule)}",
                    f"Capacity: active={suggestion.capacity.active} "
                    f"queued={suggestion.capacity.queued} "
                    f"overloaded={suggestion.capacity.is_overloaded}",
                ]
            result, view = router.route_task(task)
        lines = [
            f"Task routed: task_id={view.task_id} agent={result.assigned_to} "
            f"status={view.status.value}",
            f"Matched rule: {_fmt_json(result.matched_rule)}",
        ]
        if result.capacity["was_overloaded"]:
            lines.append(
                f"Original assignment {result.original_assignment} was overloaded "
                f"(active={result.capacity['active']} queued={result.capacity['queued']})",
            )
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        statuses = _parse_status_filter(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                agent=command.agent,
                statuses=statuses,
                limit=command.limit,
                newest_first=True,
            )
        if not tasks:
            return ["No tasks found."]
        return [_fmt_task_line(task) for task in tasks]

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            raise RuntimeError(f"Task not found: {command.task_id}")

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Agent: {task.assigned_agent or '-'} team={task.team or '-'} "
            f"workflow={task.workflow or '-'}",
            f"Priority: {task.priority} retries={task.retry_count}",
            f"Created: {task.created_at.isoformat()}",
        ]
        if task.blocker is not None:
            lines.append(f"Blocker: {_fmt_json(task.blocker.to_dict())}")
        if task.escalation_type is not None:
            lines.append(
                f"Escalation: {task.escalation_type.value} ({task.escalation_reason or '-'})",
            )
        if task.not_before is not None:
            lines.append(f"Not before: {task.not_before.isoformat()}")
        if task.outputs is not None:
            lines.append(f"Outputs: {_fmt_json(task.outputs)}")
        for key in ("error_history", "resolution_history", "escalation_history"):
            history = task.metadata.get(key)
            if history:
                lines.append(f"{key}: {len(history)} record(s)")
        lines.append("Events:")
        for event in details.events:
            transition = ""
            if event.status_from or event.status_to:
                source = event.status_from.value if event.status_from else "-"
                target = event.status_to.value if event.status_to else "-"
                transition = f" {source}->{target}"
            lines.append(f"  {event.created_at.isoformat()} {event.event_type}{transition}")
        return lines

    def queue_stats(self, command: QueueStatsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            stats = repository.queue_stats(agent=command.agent)
        if not stats:
            return ["No tasks found."]
        return render_queue_lines(stats)

    def authorize(self, command: AuthorizeCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            resolution = ResolutionEngine(repository, settings=settings.resolution)
            granted = resolution.grant_authorization(
                command.task_id,
                granted_by=command.granted_by,
                notes=command.notes,
            )
        if not granted:
            return [f"Task {command.task_id} is not waiting on authorization or payment."]
        return [f"Task {command.task_id} authorized and re-queued."]

    # -- dependencies --------------------------------------------------------

    def extract_dependencies(self, command: DepsExtractCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            summary = EdgeMaterializer(repository, settings=settings.extraction).run(
                dry_run=command.dry_run,
            )
        return render_summary(summary, sample_limit=command.sample_limit)

    def dependency_graph(self, command: DepsGraphCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            graph = _load_graph(repository, settings=settings, from_text=command.from_text)

        stats = graph.stats()
        lines = [
            "Graph: " + " ".join(f"{key}={stats[key]}" for key in sorted(stats)),
            "Roots: " + (" ".join(graph.roots) or "none"),
        ]
        if command.show_order:
            lines.append("Execution order:")
            for index, task_id in enumerate(graph.execution_order(), start=1):
                lines.append(f"  {index}. {task_id}")
        if command.show_cycles:
            if graph.cycles:
                lines.append("Cycles:")
                lines.extend("  " + " -> ".join(cycle) for cycle in graph.cycles)
            else:
                lines.append("Cycles: none")
        return lines

    def trace_dependencies(self, command: DepsTraceCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            graph = _load_graph(repository, settings=settings, from_text=command.from_text)
        if command.task_id not in graph.nodes:
            raise RuntimeError(f"Task not found: {command.task_id}")
        if command.direction == "ancestors":
            related = graph.ancestors(command.task_id)
        else:
            related = graph.descendants(command.task_id)
        if not related:
            return [f"No {command.direction} for {command.task_id}."]
        lines = [f"{command.direction.capitalize()} of {command.task_id}:"]
        lines.extend(f"  {task_id} {graph.nodes[task_id].title}" for task_id in related)
        return lines

    def add_dependency(self, command: DepsAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            record = ResolutionEngine(repository, settings=settings.resolution).add_dependency(
                command.task_id,
                command.depends_on_task_id,
                dependency_type=command.dependency_type,
            )
        return [
            f"Dependency added: id={record.dependency_id} {record.task_id} depends on "
            f"{record.depends_on_task_id} type={record.dependency_type}",
        ]

    def list_dependencies(self, command: DepsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            records = ResolutionEngine(repository, settings=settings.resolution).list_dependencies(
                command.task_id,
                status=None if command.include_resolved else "active",
            )
        if not records:
            return ["No dependencies found."]
        return [
            f"{record.dependency_id}: {record.task_id} -> {record.depends_on_task_id} "
            f"type={record.dependency_type} status={record.status}"
            for record in records
        ]

    def resolve_dependency(self, command: DepsResolveCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            resolved = ResolutionEngine(
                repository,
                settings=settings.resolution,
            ).resolve_dependency(command.dependency_id)
        if not resolved:
            return [f"Dependency {command.dependency_id} is not active."]
        return [f"Dependency {command.dependency_id} resolved."]

    # -- decisions -----------------------------------------------------------

    def list_decisions(self, command: DecisionListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = None if command.status in (None, "all") else command.status
        with _repository(settings) as repository:
            decisions = repository.list_decisions(status=status)
        if not decisions:
            return ["No decisions found."]
        return [_fmt_decision_line(decision) for decision in decisions]

    def resolve_decision(self, command: DecisionResolveCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            outcome = ResolutionEngine(repository, settings=settings.resolution).handle_decision(
                command.decision_id,
                choice=command.choice,
                notes=command.notes,
                resolved_by=command.resolved_by,
            )
        lines = [f"Decision {outcome.decision_id}: {outcome.message}"]
        if outcome.task_id:
            lines.append(f"Task: {outcome.task_id} requeued={outcome.requeued}")
        return lines

    # -- engine --------------------------------------------------------------

    def run_engine(self, command: EngineRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        agents = command.agents or settings.execution.agents
        if not agents:
            raise ValueError("No agents to run; pass --agent or set AGENT_DISPATCH_AGENTS.")

        with _repository(settings) as repository:
            events = EventBus()
            resolution = ResolutionEngine(
                repository,
                settings=settings.resolution,
                events=events,
            )
            engine = ExecutionEngine(
                repository,
                settings=settings.execution,
                resolution=resolution,
                events=events,
            )
            lines: list[str] = []
            if settings.execution.executor_command:
                for agent in agents:
                    engine.register_executor(
                        agent,
                        CommandExecutor(
                            settings.execution.executor_command,
                            timeout_seconds=settings.execution.executor_timeout_seconds,
                        ),
                    )
            else:
                lines.append("No executor command configured; agent loops are idle.")

            if command.ticks is not None:
                outcomes: Counter[str] = Counter()
                resolved: Counter[str] = Counter()
                for _ in range(command.ticks):
                    if command.with_resolution:
                        dependencies = resolution.run_dependency_resolver()
                        stale = resolution.run_auto_escalation()
                        resolved["unblocked"] += dependencies.unblocked
                        resolved["escalated"] += dependencies.escalated + stale.escalated
                    for summary in engine.run_once(agents):
                        outcomes[summary.outcome.value] += 1
                lines.append(
                    f"Engine summary: ticks={command.ticks} agents={len(agents)} "
                    + " ".join(f"{key}={outcomes[key]}" for key in _outcome_keys(outcomes)),
                )
                if command.with_resolution:
                    lines.append(
                        f"Resolution summary: unblocked={resolved['unblocked']} "
                        f"escalated={resolved['escalated']}",
                    )
                return lines

            started = engine.start_all(agents)
            if command.with_resolution:
                resolution.start()
            logger.info("Engine running for %s; press Ctrl+C to stop", ", ".join(started))
            try:
                threading.Event().wait()
            except KeyboardInterrupt:
                logger.info("Stop requested")
            finally:
                engine.stop_all()
                resolution.stop()
            lines.append(f"Engine stopped: agents={','.join(started) or '-'}")
            return lines

    def resolve_once(self, command: EngineOnceCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            summary = ResolutionEngine(
                repository,
                settings=settings.resolution,
            ).run_dependency_resolver()
        return [
            "Dependency resolver: "
            f"checked={summary.checked} unblocked={summary.unblocked} "
            f"escalated={summary.escalated} waiting={summary.waiting} errors={summary.errors}",
        ]

    def escalate_once(self, command: EngineOnceCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            summary = ResolutionEngine(
                repository,
                settings=settings.resolution,
            ).run_auto_escalation()
        return [
            "Auto-escalation: "
            f"checked={summary.checked} escalated={summary.escalated} errors={summary.errors}",
        ]

    def stats(self, command: EngineStatsCommand) -> list[str]:
        """Show operator-facing queue and blocker health."""

        settings = _settings(command.db_path)
        since = utc_now() - timedelta(hours=max(1, command.hours))
        with _repository(settings) as repository:
            router = TaskRouter(repository, settings=settings.routing)
            snapshot = build_dispatch_metrics(
                queue=repository.queue_stats(),
                resolution=ResolutionEngine(
                    repository,
                    settings=settings.resolution,
                ).stats(since=since),
                open_tasks=repository.list_tasks(
                    statuses=(TaskStatus.QUEUED, TaskStatus.ACTIVE, *BLOCKED_STATUSES),
                ),
                capacities=[router.capacity(agent) for agent in repository.known_agents()],
            )
        return render_stats_lines(snapshot=snapshot, hours=command.hours)


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _load_graph(
    repository: TaskRepository,
    *,
    settings: Settings,
    from_text: bool,
) -> DependencyGraph:
    documents = [TaskDocument.from_view(task) for task in repository.list_tasks()]
    if from_text:
        return DependencyGraph.build(
            documents,
            min_confidence=settings.extraction.min_hint_confidence,
            min_match_score=settings.extraction.min_match_score,
            max_matches=settings.extraction.max_matches,
        )
    edges = [
        GraphEdge(
            from_task_id=edge.from_task_id,
            to_task_id=edge.to_task_id,
            dependency_type=edge.dependency_type,
            confidence=edge.confidence,
            raw_match=edge.raw_match,
            match_score=edge.match_score,
            match_reasons=list(edge.match_reasons),
        )
        for edge in repository.list_edges()
    ]
    return DependencyGraph.from_edges(documents, edges)


def _parse_status_filter(raw: str | None) -> tuple[TaskStatus, ...] | None:
    if raw is None:
        return None
    if raw == "blocked":
        return tuple(status for status in TaskStatus if status in BLOCKED_STATUSES)
    return (TaskStatus(raw),)


def _outcome_keys(outcomes: Counter[str]) -> list[str]:
    return [outcome.value for outcome in TickOutcome if outcome.value in outcomes]


def _fmt_task_line(task: TaskView) -> str:
    blocked = f" blocker={task.blocker.blocker_type.value}" if task.blocker is not None else ""
    escalated = (
        f" escalation={task.escalation_type.value}" if task.escalation_type is not None else ""
    )
    return (
        f"{task.task_id} status={task.status.value} agent={task.assigned_agent or '-'} "
        f"priority={task.priority} retries={task.retry_count}{blocked}{escalated} "
        f"title={task.title!r}"
    )


def _fmt_decision_line(decision: DecisionView) -> str:
    suffix = (
        f" choice={decision.choice!r}" if decision.status != DECISION_PENDING else ""
    )
    return (
        f"{decision.decision_id} status={decision.status} task={decision.task_id or '-'} "
        f"urgency={decision.urgency} title={decision.title!r}{suffix}"
    )


def _fmt_json(value: Any) -> str:
    if value is None:
        return "-"
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
