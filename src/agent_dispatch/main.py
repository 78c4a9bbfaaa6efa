"""CLI entrypoint for agent-dispatch."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click
from sqlalchemy.exc import SQLAlchemyError

from agent_dispatch import __version__
from agent_dispatch.dispatch.controllers import (
    AuthorizeCommand,
    DecisionListCommand,
    DecisionResolveCommand,
    DepsAddCommand,
    DepsExtractCommand,
    DepsGraphCommand,
    DepsListCommand,
    DepsResolveCommand,
    DepsTraceCommand,
    DispatchCliController,
    EngineOnceCommand,
    EngineRunCommand,
    EngineStatsCommand,
    QueueStatsCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskRouteCommand,
)
from agent_dispatch.dispatch.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DispatchCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
STATUS_CHOICES = [status.value for status in TaskStatus] + ["blocked"]

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to AGENT_DISPATCH_DB_PATH.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def agent_dispatch(log_level: str) -> None:
    """Route, schedule, and unblock agent tasks."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@agent_dispatch.group()
def tasks() -> None:
    """Task routing and inspection commands."""


@tasks.command("route")
@db_path_option
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description.")
@click.option("--notes", default="", help="Free-form notes scanned for dependencies.")
@click.option("--task-id", default=None, help="Explicit id; generated when omitted.")
@click.option("--team", default=None, help="Owning team, for example technology.")
@click.option("--workflow", default=None, help="Workflow the task belongs to.")
@click.option("--tag", "tags", multiple=True, help="Tag. Can be repeated.")
@click.option("--keyword", "keywords", multiple=True, help="Keyword. Can be repeated.")
@click.option("--priority", type=int, default=50, show_default=True, help="Higher runs sooner.")
@click.option("--assign", "assigned_agent", default=None, help="Requested agent.")
@click.option(
    "--blocked-by",
    "blocked_by",
    multiple=True,
    help="Id of a task this one waits on. Can be repeated.",
)
@click.option(
    "--suggest",
    is_flag=True,
    default=False,
    help="Preview the routing choice without saving the task.",
)
def tasks_route(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str,
    notes: str,
    task_id: str | None,
    team: str | None,
    workflow: str | None,
    tags: tuple[str, ...],
    keywords: tuple[str, ...],
    priority: int,
    assigned_agent: str | None,
    blocked_by: tuple[str, ...],
    suggest: bool,
) -> None:
    """Route a new task to an agent using rules and live capacity."""

    _run(
        lambda: CONTROLLER.route_task(
            TaskRouteCommand(
                db_path=db_path,
                title=title,
                description=description,
                notes=notes,
                task_id=task_id,
                team=team,
                workflow=workflow,
                tags=tags,
                keywords=keywords,
                priority=priority,
                assigned_agent=assigned_agent,
                blocked_by=blocked_by,
                suggest_only=suggest,
            ),
        ),
    )


@tasks.command("list")
@db_path_option
@click.option("--agent", default=None, help="Only tasks owned by this agent.")
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None, help="Status filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, agent: str | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, agent=agent, status=status, limit=limit),
        ),
    )


@tasks.command("inspect")
@db_path_option
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with its blocker, history, and event stream."""

    _run(lambda: CONTROLLER.inspect_task(TaskInspectCommand(db_path=db_path, task_id=task_id)))


@tasks.command("queue-stats")
@db_path_option
@click.option("--agent", default=None, help="Only this agent.")
def tasks_queue_stats(db_path: Path | None, agent: str | None) -> None:
    """Per-agent counts by lifecycle state."""

    _run(lambda: CONTROLLER.queue_stats(QueueStatsCommand(db_path=db_path, agent=agent)))


@tasks.command("authorize")
@db_path_option
@click.argument("task_id")
@click.option("--granted-by", default=None, help="Who granted the authorization.")
@click.option("--notes", default=None, help="Optional notes.")
def tasks_authorize(
    db_path: Path | None,
    task_id: str,
    granted_by: str | None,
    notes: str | None,
) -> None:
    """Clear an auth or payment blocker and re-queue the task."""

    _run(
        lambda: CONTROLLER.authorize(
            AuthorizeCommand(db_path=db_path, task_id=task_id, granted_by=granted_by, notes=notes),
        ),
    )


@agent_dispatch.group()
def deps() -> None:
    """Dependency extraction, graph, and ledger commands."""


@deps.command("extract")
@db_path_option
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Report what would be created without writing edges.",
)
@click.option(
    "--sample-limit",
    type=click.IntRange(min=0, max=1000),
    default=10,
    show_default=True,
    help="How many sample edges and unresolved hints to print.",
)
def deps_extract(db_path: Path | None, dry_run: bool, sample_limit: int) -> None:
    """Materialize dependency edges from the whole task corpus."""

    _run(
        lambda: CONTROLLER.extract_dependencies(
            DepsExtractCommand(db_path=db_path, dry_run=dry_run, sample_limit=sample_limit),
        ),
    )


@deps.command("graph")
@db_path_option
@click.option(
    "--from-text",
    is_flag=True,
    default=False,
    help="Build the graph from task text instead of stored edges.",
)
@click.option("--order", "show_order", is_flag=True, default=False, help="Print execution order.")
@click.option("--cycles", "show_cycles", is_flag=True, default=False, help="Print cycles.")
def deps_graph(db_path: Path | None, from_text: bool, show_order: bool, show_cycles: bool) -> None:
    """Summarize the dependency graph."""

    _run(
        lambda: CONTROLLER.dependency_graph(
            DepsGraphCommand(
                db_path=db_path,
                from_text=from_text,
                show_order=show_order,
                show_cycles=show_cycles,
            ),
        ),
    )


@deps.command("ancestors")
@db_path_option
@click.argument("task_id")
@click.option("--from-text", is_flag=True, default=False, help="Use text-derived edges.")
def deps_ancestors(db_path: Path | None, task_id: str, from_text: bool) -> None:
    """Every task TASK_ID depends on, transitively."""

    _run(
        lambda: CONTROLLER.trace_dependencies(
            DepsTraceCommand(
                db_path=db_path,
                task_id=task_id,
                direction="ancestors",
                from_text=from_text,
            ),
        ),
    )


@deps.command("descendants")
@db_path_option
@click.argument("task_id")
@click.option("--from-text", is_flag=True, default=False, help="Use text-derived edges.")
def deps_descendants(db_path: Path | None, task_id: str, from_text: bool) -> None:
    """Every task waiting on TASK_ID, transitively."""

    _run(
        lambda: CONTROLLER.trace_dependencies(
            DepsTraceCommand(
                db_path=db_path,
                task_id=task_id,
                direction="descendants",
                from_text=from_text,
            ),
        ),
    )


@deps.command("add")
@db_path_option
@click.argument("task_id")
@click.argument("depends_on_task_id")
@click.option("--type", "dependency_type", default="completion", show_default=True)
def deps_add(
    db_path: Path | None,
    task_id: str,
    depends_on_task_id: str,
    dependency_type: str,
) -> None:
    """Record that TASK_ID depends on DEPENDS_ON_TASK_ID."""

    _run(
        lambda: CONTROLLER.add_dependency(
            DepsAddCommand(
                db_path=db_path,
                task_id=task_id,
                depends_on_task_id=depends_on_task_id,
                dependency_type=dependency_type,
            ),
        ),
    )


@deps.command("list")
@db_path_option
@click.option("--task-id", default=None, help="Only dependencies of this task.")
@click.option("--all", "include_resolved", is_flag=True, default=False, help="Include resolved.")
def deps_list(db_path: Path | None, task_id: str | None, include_resolved: bool) -> None:
    """List recorded task-to-task dependencies."""

    _run(
        lambda: CONTROLLER.list_dependencies(
            DepsListCommand(db_path=db_path, task_id=task_id, include_resolved=include_resolved),
        ),
    )


@deps.command("resolve")
@db_path_option
@click.argument("dependency_id", type=int)
def deps_resolve(db_path: Path | None, dependency_id: int) -> None:
    """Mark a recorded dependency as resolved."""

    _run(
        lambda: CONTROLLER.resolve_dependency(
            DepsResolveCommand(db_path=db_path, dependency_id=dependency_id),
        ),
    )


@agent_dispatch.group()
def decisions() -> None:
    """Decision request commands."""


@decisions.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(["pending", "resolved", "all"]),
    default="pending",
    show_default=True,
)
def decisions_list(db_path: Path | None, status: str) -> None:
    """List decision requests."""

    _run(lambda: CONTROLLER.list_decisions(DecisionListCommand(db_path=db_path, status=status)))


@decisions.command("resolve")
@db_path_option
@click.argument("decision_id")
@click.option("--choice", required=True, help="Chosen option.")
@click.option("--notes", default=None, help="Optional notes.")
@click.option("--resolved-by", default="ceo", show_default=True)
def decisions_resolve(
    db_path: Path | None,
    decision_id: str,
    choice: str,
    notes: str | None,
    resolved_by: str,
) -> None:
    """Resolve a pending decision and re-queue its task."""

    _run(
        lambda: CONTROLLER.resolve_decision(
            DecisionResolveCommand(
                db_path=db_path,
                decision_id=decision_id,
                choice=choice,
                notes=notes,
                resolved_by=resolved_by,
            ),
        ),
    )


@agent_dispatch.group()
def engine() -> None:
    """Execution and resolution loop commands."""


@engine.command("run")
@db_path_option
@click.option("--agent", "agents", multiple=True, help="Agent to run. Can be repeated.")
@click.option(
    "--ticks",
    type=click.IntRange(min=1),
    default=None,
    help=(
        "Run this many ticks synchronously and exit; each tick also runs one dependency "
        "and one auto-escalation pass. Runs until Ctrl+C when omitted."
    ),
)
@click.option(
    "--no-resolution",
    is_flag=True,
    default=False,
    help="Do not run the resolution jobs alongside agent loops.",
)
def engine_run(
    db_path: Path | None,
    agents: tuple[str, ...],
    ticks: int | None,
    no_resolution: bool,
) -> None:
    """Run per-agent execution loops."""

    _run(
        lambda: CONTROLLER.run_engine(
            EngineRunCommand(
                db_path=db_path,
                agents=tuple(agent.lower() for agent in agents),
                ticks=ticks,
                with_resolution=not no_resolution,
            ),
        ),
    )


@engine.command("resolve-once")
@db_path_option
def engine_resolve_once(db_path: Path | None) -> None:
    """Run one dependency-resolver pass."""

    _run(lambda: CONTROLLER.resolve_once(EngineOnceCommand(db_path=db_path)))


@engine.command("escalate-once")
@db_path_option
def engine_escalate_once(db_path: Path | None) -> None:
    """Run one auto-escalation pass."""

    _run(lambda: CONTROLLER.escalate_once(EngineOnceCommand(db_path=db_path)))


@engine.command("stats")
@db_path_option
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Window for unblock counts.",
)
def engine_stats(db_path: Path | None, hours: int) -> None:
    """Show queue and blocker health."""

    _run(lambda: CONTROLLER.stats(EngineStatsCommand(db_path=db_path, hours=hours)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error
    except SQLAlchemyError as error:
        raise click.ClickException(f"Task store error: {error}") from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_dispatch()
