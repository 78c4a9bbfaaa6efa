"""Per-agent execution loops driving tasks through their lifecycle."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_dispatch.config import ExecutionSettings
from agent_dispatch.dispatch.events import EngineEventType, EventBus
from agent_dispatch.dispatch.executor import Executor
from agent_dispatch.dispatch.models import (
    BlockerInfo,
    BlockerType,
    QueueStats,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from agent_dispatch.dispatch.repository import TaskRepository
from agent_dispatch.dispatch.resolution import ResolutionEngine
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

_JOIN_TIMEOUT_SECONDS = 15.0


class TickOutcome(str, Enum):
    """What one scheduling tick did for an agent."""

    IDLE = "idle"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    CONFLICT = "conflict"
    NO_EXECUTOR = "no_executor"


class TaskSource(str, Enum):
    """Where the tick found the task it advanced."""

    RECOVERED = "recovered"
    UNBLOCKED = "unblocked"
    QUEUED = "queued"


@dataclass(slots=True)
class TickSummary:
    """Result of one scheduling tick."""

    agent: str
    outcome: TickOutcome = TickOutcome.IDLE
    task_id: str | None = None
    source: TaskSource | None = None
    backoff_seconds: float | None = None


@dataclass(slots=True)
class AgentLoop:
    """Registry entry for one agent's running loop."""

    agent: str
    stop_event: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None
    started_at: datetime = field(default_factory=utc_now)
    ticks: int = 0
    last_tick_at: datetime | None = None
    last_outcome: TickOutcome | None = None

    @property
    def is_running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def record(self, summary: TickSummary) -> None:
        self.ticks += 1
        self.last_tick_at = utc_now()
        self.last_outcome = summary.outcome


def compute_backoff_seconds(retry_count: int, *, base_seconds: float) -> float:
    """Exponential backoff ``base * 2^(retry_count - 1)`` for the n-th failure."""

    return base_seconds * (2 ** max(retry_count - 1, 0))


class ExecutionEngine:
    """Supervises one cooperative loop per agent.

    Each tick advances at most one task for its agent: a task left ACTIVE by a
    previous run first, then a BLOCKED_AGENT task whose blocker cleared during
    this tick, then the highest-priority queued task. Executor calls are never
    interrupted; stopping a loop takes effect before its next tick.
    """

    def __init__(
        self,
        repository: TaskRepository,
        *,
        settings: ExecutionSettings | None = None,
        resolution: ResolutionEngine | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or ExecutionSettings()
        self.events = events
        self.resolution = resolution or ResolutionEngine(repository, events=events)
        self._executors: dict[str, Executor] = {}
        self._loops: dict[str, AgentLoop] = {}
        self._lock = threading.Lock()

    # -- executors -----------------------------------------------------------

    def register_executor(self, agent: str, executor: Executor) -> None:
        key = _agent_key(agent)
        with self._lock:
            self._executors[key] = executor
        logger.info("Registered executor for agent %s", key)

    def unregister_executor(self, agent: str) -> bool:
        with self._lock:
            return self._executors.pop(_agent_key(agent), None) is not None

    @property
    def registered_agents(self) -> list[str]:
        with self._lock:
            return sorted(self._executors)

    # -- queue ---------------------------------------------------------------

    def queue_task(self, payload: TaskCreate, *, agent: str | None = None) -> TaskView:
        """Enqueue a task directly for an agent, bypassing the router."""

        owner = agent or payload.assigned_agent
        if not owner or not owner.strip():
            raise ValueError("Queued task needs an assigned agent.")
        if not payload.task_id:
            payload.task_id = self.repository.next_task_id()
        payload.assigned_agent = _agent_key(owner)
        view = self.repository.create_task(payload)
        logger.info("Queued task %s for %s", view.task_id, view.assigned_agent)
        self._publish(
            EngineEventType.TASK_QUEUED,
            task_id=view.task_id,
            agent=view.assigned_agent,
            details={"priority": view.priority},
        )
        return view

    def queue_stats(self, agent: str | None = None) -> list[QueueStats]:
        return self.repository.queue_stats(agent=agent)

    # -- ticks ---------------------------------------------------------------

    def process_tick(self, agent: str) -> TickSummary:
        """Advance at most one task for ``agent``."""

        key = _agent_key(agent)
        with self._lock:
            executor = self._executors.get(key)
        if executor is None:
            logger.warning("No executor registered for agent %s, skipping tick", key)
            return TickSummary(agent=key, outcome=TickOutcome.NO_EXECUTOR)

        selected = self._select_task(key)
        if selected is None:
            return TickSummary(agent=key)
        task, source = selected
        logger.info("Agent %s executing task %s (%s)", key, task.task_id, source.value)
        self._publish(
            EngineEventType.TASK_STARTED,
            task_id=task.task_id,
            agent=key,
            details={"source": source.value, "retry_count": task.retry_count},
        )

        try:
            result = executor.execute(task)
        except Exception as error:
            logger.exception("Executor failed for task %s (agent=%s)", task.task_id, key)
            return self._handle_failure(key, task, source, error)

        if result.blocker is not None:
            return self._handle_blocked(key, task, source, result.blocker)

        if not self.repository.complete_task(task_id=task.task_id, outputs=result.outputs):
            logger.warning("Task %s left ACTIVE concurrently, completion dropped", task.task_id)
            return TickSummary(
                agent=key,
                outcome=TickOutcome.CONFLICT,
                task_id=task.task_id,
                source=source,
            )
        logger.info("Task %s completed", task.task_id)
        self._publish(
            EngineEventType.TASK_COMPLETED,
            task_id=task.task_id,
            agent=key,
            details={"output_keys": sorted(result.outputs)},
        )
        return TickSummary(
            agent=key,
            outcome=TickOutcome.COMPLETED,
            task_id=task.task_id,
            source=source,
        )

    def run_once(self, agents: Iterable[str] | None = None) -> list[TickSummary]:
        """One tick for each agent, in order, on the calling thread."""

        targets = list(agents) if agents is not None else self.registered_agents
        return [self.process_tick(agent) for agent in targets]

    def _select_task(self, agent: str) -> tuple[TaskView, TaskSource] | None:
        active = self.repository.active_task_for(agent)
        if active is not None:
            return active, TaskSource.RECOVERED

        for blocked in self.repository.blocked_tasks(
            statuses=(TaskStatus.BLOCKED_AGENT,),
            agent=agent,
        ):
            if not self.resolution.check_and_resolve_blocker(blocked.task_id).unblocked:
                continue
            claimed = self.repository.claim_task(task_id=blocked.task_id)
            if claimed is not None:
                return claimed, TaskSource.UNBLOCKED
            break

        claimed = self.repository.claim_next_queued(agent=agent)
        if claimed is not None:
            return claimed, TaskSource.QUEUED
        return None

    def _handle_blocked(
        self,
        agent: str,
        task: TaskView,
        source: TaskSource,
        blocker: BlockerInfo,
    ) -> TickSummary:
        if blocker.blocker_type == BlockerType.DECISION and blocker.decision_id is None:
            blocker = self._open_decision(agent, task, blocker)
        if not self.repository.block_task(task_id=task.task_id, blocker=blocker):
            logger.warning("Task %s left ACTIVE concurrently, blocker dropped", task.task_id)
            return TickSummary(
                agent=agent,
                outcome=TickOutcome.CONFLICT,
                task_id=task.task_id,
                source=source,
            )
        logger.info("Task %s blocked: %s", task.task_id, blocker.status.value)
        self._publish(
            EngineEventType.TASK_BLOCKED,
            task_id=task.task_id,
            agent=agent,
            details=blocker.to_dict(),
        )
        return TickSummary(
            agent=agent,
            outcome=TickOutcome.BLOCKED,
            task_id=task.task_id,
            source=source,
        )

    def _open_decision(self, agent: str, task: TaskView, blocker: BlockerInfo) -> BlockerInfo:
        payload = blocker.payload
        options = payload.get("options")
        decision = self.resolution.create_decision_request(
            title=str(payload.get("title") or f"Decision needed for {task.task_id}"),
            task_id=task.task_id,
            description=str(payload.get("description") or ""),
            options=[str(option) for option in options] if isinstance(options, list) else None,
            recommendation=payload.get("recommendation"),
            reasoning=payload.get("reasoning"),
            urgency=str(payload.get("urgency") or "medium"),
            metadata={"requested_by": agent},
        )
        return BlockerInfo(
            blocker.blocker_type,
            {**payload, "decision_id": decision.decision_id},
        )

    def _handle_failure(
        self,
        agent: str,
        task: TaskView,
        source: TaskSource,
        error: Exception,
    ) -> TickSummary:
        attempt = task.retry_count + 1
        terminal = attempt >= self.settings.max_retry_count
        backoff = compute_backoff_seconds(attempt, base_seconds=self.settings.retry_base_seconds)
        recorded = self.repository.record_failure(
            task_id=task.task_id,
            expected_version=task.version,
            attempt=attempt,
            error=f"{type(error).__name__}: {error}",
            backoff_seconds=backoff,
            terminal=terminal,
        )
        if not recorded:
            logger.warning("Task %s changed concurrently, failure not recorded", task.task_id)
            return TickSummary(
                agent=agent,
                outcome=TickOutcome.CONFLICT,
                task_id=task.task_id,
                source=source,
            )

        if terminal:
            logger.error(
                "Task %s failed permanently after %d attempts",
                task.task_id,
                attempt,
            )
            self._publish(
                EngineEventType.TASK_FAILED,
                task_id=task.task_id,
                agent=agent,
                details={"attempt": attempt, "error": str(error)},
            )
            outcome = TickOutcome.FAILED
        else:
            logger.info(
                "Task %s retry %d/%d scheduled in %.1fs",
                task.task_id,
                attempt,
                self.settings.max_retry_count,
                backoff,
            )
            self._publish(
                EngineEventType.TASK_RETRY_SCHEDULED,
                task_id=task.task_id,
                agent=agent,
                details={"attempt": attempt, "backoff_seconds": backoff, "error": str(error)},
            )
            outcome = TickOutcome.RETRY_SCHEDULED
        return TickSummary(
            agent=agent,
            outcome=outcome,
            task_id=task.task_id,
            source=source,
            backoff_seconds=backoff,
        )

    # -- loops ---------------------------------------------------------------

    def start(self, agent: str) -> bool:
        """Start the loop for ``agent``; ``False`` when it cannot or already runs."""

        key = _agent_key(agent)
        with self._lock:
            if key not in self._executors:
                logger.warning("Cannot start loop for %s: no executor registered", key)
                return False
            existing = self._loops.get(key)
            if existing is not None and existing.is_running:
                logger.warning("Loop for %s is already running", key)
                return False
            loop = AgentLoop(agent=key)
            loop.thread = threading.Thread(
                target=self._run_loop,
                args=(loop,),
                daemon=True,
                name=f"agent-loop-{key}",
            )
            self._loops[key] = loop
        loop.thread.start()
        logger.info(
            "Started loop for %s (interval=%.1fs)",
            key,
            self.settings.poll_interval_seconds,
        )
        return True

    def start_all(self, agents: Iterable[str] | None = None) -> list[str]:
        targets = list(agents) if agents is not None else self.registered_agents
        return [_agent_key(agent) for agent in targets if self.start(agent)]

    def stop(self, agent: str) -> bool:
        key = _agent_key(agent)
        with self._lock:
            loop = self._loops.pop(key, None)
        if loop is None:
            return False
        loop.stop_event.set()
        if loop.thread is not None:
            loop.thread.join(timeout=_JOIN_TIMEOUT_SECONDS)
        logger.info("Stopped loop for %s after %d ticks", key, loop.ticks)
        return True

    def stop_all(self) -> None:
        with self._lock:
            agents = list(self._loops)
        for agent in agents:
            self.stop(agent)

    def is_running(self, agent: str) -> bool:
        with self._lock:
            loop = self._loops.get(_agent_key(agent))
        return loop is not None and loop.is_running

    def status(self) -> dict[str, Any]:
        """Snapshot of registered executors and running loops."""

        with self._lock:
            agents = sorted({*self._executors, *self._loops})
            loops = dict(self._loops)
            executors = set(self._executors)
        snapshot: dict[str, Any] = {}
        for agent in agents:
            loop = loops.get(agent)
            snapshot[agent] = {
                "has_executor": agent in executors,
                "running": loop is not None and loop.is_running,
                "ticks": loop.ticks if loop is not None else 0,
                "last_outcome": (
                    loop.last_outcome.value
                    if loop is not None and loop.last_outcome is not None
                    else None
                ),
                "last_tick_at": (
                    loop.last_tick_at.isoformat()
                    if loop is not None and loop.last_tick_at is not None
                    else None
                ),
            }
        return {
            "poll_interval_seconds": self.settings.poll_interval_seconds,
            "max_retry_count": self.settings.max_retry_count,
            "agents": snapshot,
        }

    def _run_loop(self, loop: AgentLoop) -> None:
        self._publish(EngineEventType.AGENT_LOOP_STARTED, agent=loop.agent)
        while not loop.stop_event.is_set():
            try:
                loop.record(self.process_tick(loop.agent))
            except Exception:
                logger.exception("Tick failed for agent %s", loop.agent)
            loop.stop_event.wait(timeout=self.settings.poll_interval_seconds)
        self._publish(EngineEventType.AGENT_LOOP_STOPPED, agent=loop.agent)

    def _publish(
        self,
        event_type: EngineEventType,
        *,
        task_id: str | None = None,
        agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if self.events is not None:
            self.events.publish(event_type, task_id=task_id, agent=agent, details=details)


def _agent_key(agent: str) -> str:
    key = agent.strip().lower()
    if not key:
        raise ValueError("Agent name must not be empty.")
    return key
