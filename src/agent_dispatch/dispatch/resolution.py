"""Background jobs and handlers that move blocked tasks back to the queue."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, NamedTuple

from sqlalchemy.exc import SQLAlchemyError

from agent_dispatch.config import ResolutionSettings
from agent_dispatch.dispatch.events import EngineEventType, EventBus
from agent_dispatch.dispatch.models import (
    BLOCKED_STATUSES,
    DecisionView,
    DependencyRecordView,
    EscalationType,
    ResolutionStats,
    ResolutionType,
    TaskStatus,
    TaskView,
)
from agent_dispatch.dispatch.notifications import (
    LoggingNotificationSink,
    Notification,
    NotificationSink,
)
from agent_dispatch.dispatch.repository import (
    DECISION_PENDING,
    DEPENDENCY_ACTIVE,
    TaskRepository,
)
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

RETRY_ON_DEPENDENCY_FAILURE = "retry_on_dependency_failure"
DEFAULT_DECISION_AUTHORITY = "ceo"
STATS_WINDOW = timedelta(hours=24)
_JOIN_TIMEOUT_SECONDS = 15.0


class BlockerCheck(NamedTuple):
    unblocked: bool
    escalated: bool


@dataclass(slots=True)
class ResolutionRunSummary:
    """Counters for one pass of a resolution job."""

    checked: int = 0
    unblocked: int = 0
    escalated: int = 0
    waiting: int = 0
    errors: int = 0


@dataclass(slots=True)
class DecisionOutcome:
    """Result of applying a resolved decision to its task."""

    decision_id: str
    processed: bool
    message: str
    task_id: str | None = None
    choice: str | None = None
    requeued: bool = False


class ResolutionEngine:
    """Unblocks, escalates, and records decisions against the shared task store.

    The dependency resolver and auto-escalation jobs each run on their own
    thread once started; both can also be invoked directly for one pass.
    Unblocking is owned exclusively by this engine.
    """

    def __init__(
        self,
        repository: TaskRepository,
        *,
        settings: ResolutionSettings | None = None,
        events: EventBus | None = None,
        notifier: NotificationSink | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or ResolutionSettings()
        self.events = events
        self.notifier = notifier or LoggingNotificationSink()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # -- lifecycle -----------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start both periodic jobs; each runs once immediately."""

        if self.is_running:
            logger.warning("Resolution engine already running")
            return
        self._stop.clear()
        self._threads = [
            self._spawn(
                "resolution-dependencies",
                self.run_dependency_resolver,
                self.settings.dependency_interval_seconds,
            ),
            self._spawn(
                "resolution-escalation",
                self.run_auto_escalation,
                self.settings.escalation_interval_seconds,
            ),
        ]
        logger.info("Resolution jobs started")

    def stop(self) -> None:
        if not self._threads:
            return
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=_JOIN_TIMEOUT_SECONDS)
        self._threads = []
        logger.info("Resolution jobs stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "intervals": {
                "dependency_resolver_seconds": self.settings.dependency_interval_seconds,
                "auto_escalation_seconds": self.settings.escalation_interval_seconds,
            },
            "thresholds": {"stale_after_hours": self.settings.stale_after_hours},
        }

    # -- dependency resolver -------------------------------------------------

    def run_dependency_resolver(self) -> ResolutionRunSummary:
        """Check every BLOCKED_AGENT task against the task it waits on."""

        summary = ResolutionRunSummary()
        try:
            blocked = self.repository.blocked_tasks(statuses=(TaskStatus.BLOCKED_AGENT,))
        except SQLAlchemyError:
            logger.exception("Failed to load blocked tasks")
            summary.errors += 1
            return summary

        for task in blocked:
            summary.checked += 1
            try:
                check = self._check_agent_blocker(task)
            except SQLAlchemyError:
                logger.exception("Failed to resolve blocker for task %s", task.task_id)
                summary.errors += 1
                continue
            if check.unblocked:
                summary.unblocked += 1
            elif check.escalated:
                summary.escalated += 1
            else:
                summary.waiting += 1

        if summary.unblocked or summary.escalated:
            logger.info(
                "Dependency resolver: %d unblocked, %d escalated",
                summary.unblocked,
                summary.escalated,
            )
        return summary

    def check_and_resolve_blocker(self, task_id: str) -> BlockerCheck:
        """Resolve one BLOCKED_AGENT task if its blocker has settled."""

        task = self.repository.get_task(task_id)
        if task is None or task.status != TaskStatus.BLOCKED_AGENT:
            return BlockerCheck(unblocked=False, escalated=False)
        return self._check_agent_blocker(task)

    def _check_agent_blocker(self, task: TaskView) -> BlockerCheck:
        blocking_id = task.blocker.blocking_task_id if task.blocker is not None else None
        if not blocking_id:
            unblocked = self._unblock(
                task,
                ResolutionType.AUTO_RESOLVED,
                reason="No valid blocker information found",
            )
            return BlockerCheck(unblocked=unblocked, escalated=False)

        blocking = self.repository.get_task(blocking_id)
        if blocking is None:
            logger.warning(
                "Blocking task %s of %s no longer exists, unblocking",
                blocking_id,
                task.task_id,
            )
            unblocked = self._unblock(
                task,
                ResolutionType.BLOCKER_NOT_FOUND,
                reason=f"Blocking task {blocking_id} no longer exists",
            )
            return BlockerCheck(unblocked=unblocked, escalated=False)

        if blocking.status == TaskStatus.COMPLETED:
            unblocked = self._unblock(
                task,
                ResolutionType.DEPENDENCY_COMPLETED,
                reason=f"Blocking task {blocking_id} completed",
                blocker_outputs=blocking.outputs,
            )
            return BlockerCheck(unblocked=unblocked, escalated=False)

        if blocking.status == TaskStatus.FAILED:
            if task.metadata.get(RETRY_ON_DEPENDENCY_FAILURE):
                unblocked = self._unblock(
                    task,
                    ResolutionType.DEPENDENCY_FAILED_RETRY,
                    reason="Blocking task failed, proceeding with retry flag",
                    blocker_failed_at=(
                        blocking.failed_at.isoformat() if blocking.failed_at else None
                    ),
                )
                return BlockerCheck(unblocked=unblocked, escalated=False)
            escalated = self._escalate(
                task,
                EscalationType.DEPENDENCY_FAILED,
                reason=f"Blocking task {blocking_id} failed",
                details={"blocker_task_id": blocking_id},
            )
            return BlockerCheck(unblocked=False, escalated=escalated)

        return BlockerCheck(unblocked=False, escalated=False)

    # -- decisions -----------------------------------------------------------

    def create_decision_request(  # noqa: PLR0913
        self,
        *,
        title: str,
        task_id: str | None = None,
        description: str = "",
        options: list[str] | None = None,
        recommendation: str | None = None,
        reasoning: str | None = None,
        urgency: str = "medium",
        metadata: dict[str, Any] | None = None,
    ) -> DecisionView:
        decision = self.repository.create_decision(
            title=title,
            task_id=task_id,
            description=description,
            options=options,
            recommendation=recommendation,
            reasoning=reasoning,
            urgency=urgency,
            metadata=metadata,
        )
        logger.info("Created decision request %s (task_id=%s)", decision.decision_id, task_id)
        self._publish(
            EngineEventType.DECISION_REQUESTED,
            task_id=task_id,
            details={"decision_id": decision.decision_id, "title": title, "urgency": urgency},
        )
        return decision

    def pending_decisions(self, *, limit: int = 50) -> list[DecisionView]:
        return self.repository.list_decisions(status=DECISION_PENDING)[:limit]

    def handle_decision(
        self,
        decision_id: str,
        *,
        choice: str,
        notes: str | None = None,
        resolved_by: str = DEFAULT_DECISION_AUTHORITY,
    ) -> DecisionOutcome:
        """Record the chosen option and requeue the task waiting on it.

        Raises ``RuntimeError`` when the decision does not exist.
        """

        if not choice.strip():
            raise ValueError("Decision choice must not be empty.")
        decision = self.repository.resolve_decision(
            decision_id=decision_id,
            choice=choice,
            notes=notes,
            resolved_by=resolved_by,
        )
        if decision is None:
            current = self.repository.get_decision(decision_id)
            state = current.status if current is not None else "missing"
            logger.warning("Decision %s already processed: %s", decision_id, state)
            return DecisionOutcome(
                decision_id=decision_id,
                processed=False,
                message=f"Decision already processed: {state}",
            )

        self._publish(
            EngineEventType.DECISION_RESOLVED,
            task_id=decision.task_id,
            details={"decision_id": decision_id, "choice": choice},
        )
        if not decision.task_id:
            return DecisionOutcome(
                decision_id=decision_id,
                processed=True,
                message="Decision recorded but no associated task",
                choice=choice,
            )

        task = self.repository.get_task(decision.task_id)
        requeued = task is not None and self._unblock(
            task,
            ResolutionType.DECISION,
            reason=f"Decision {decision_id} resolved: {choice}",
            expected_statuses=(TaskStatus.BLOCKED_DECISION,),
            expected_decision_id=decision_id,
            decision_id=decision_id,
            choice=choice,
            notes=notes,
            resolved_by=resolved_by,
        )
        message = (
            "Decision processed and task re-queued"
            if requeued
            else "Decision recorded; task was not waiting on this decision"
        )
        logger.info("Decision %s processed for task %s: %s", decision_id, decision.task_id, message)
        return DecisionOutcome(
            decision_id=decision_id,
            processed=True,
            message=message,
            task_id=decision.task_id,
            choice=choice,
            requeued=requeued,
        )

    # -- authorization -------------------------------------------------------

    def grant_authorization(
        self,
        task_id: str,
        *,
        granted_by: str | None = None,
        notes: str | None = None,
    ) -> bool:
        """Unblock a task waiting on an authorization or a payment approval."""

        task = self.repository.get_task(task_id)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        if task.status not in (TaskStatus.BLOCKED_AUTH, TaskStatus.BLOCKED_PAYMENT):
            logger.warning(
                "Task %s is %s, nothing to authorize",
                task_id,
                task.status.value,
            )
            return False
        return self._unblock(
            task,
            ResolutionType.AUTHORIZATION_GRANTED,
            reason=f"{task.status.value} cleared",
            granted_by=granted_by,
            notes=notes,
        )

    # -- auto escalation -----------------------------------------------------

    def run_auto_escalation(self, *, now: datetime | None = None) -> ResolutionRunSummary:
        """Escalate tasks blocked longer than the staleness threshold, once each."""

        moment = now or utc_now()
        threshold = self.settings.stale_after_hours
        summary = ResolutionRunSummary()
        try:
            stale = self.repository.stale_blocked_tasks(
                blocked_before=moment - timedelta(hours=threshold),
            )
        except SQLAlchemyError:
            logger.exception("Failed to load stale blocked tasks")
            summary.errors += 1
            return summary

        for task in stale:
            summary.checked += 1
            blocked_since = task.blocked_at or task.updated_at
            hours = (moment - blocked_since).total_seconds() / 3600
            try:
                escalated = self._escalate(
                    task,
                    EscalationType.STALE_BLOCKER,
                    reason=(
                        f"Task blocked for {round(hours)} hours (threshold: {threshold:g} hours)"
                    ),
                    details={"blocked_status": task.status.value},
                )
            except SQLAlchemyError:
                logger.exception("Failed to escalate task %s", task.task_id)
                summary.errors += 1
                continue
            if escalated:
                summary.escalated += 1

        if summary.escalated:
            logger.info("Auto-escalated %d stale tasks", summary.escalated)
        return summary

    # -- dependency ledger ---------------------------------------------------

    def add_dependency(
        self,
        task_id: str,
        depends_on_task_id: str,
        *,
        dependency_type: str = "completion",
    ) -> DependencyRecordView:
        record = self.repository.add_dependency(
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
            dependency_type=dependency_type,
        )
        logger.info("Added dependency: %s depends on %s", task_id, depends_on_task_id)
        return record

    def list_dependencies(
        self,
        task_id: str | None = None,
        *,
        status: str | None = DEPENDENCY_ACTIVE,
    ) -> list[DependencyRecordView]:
        return self.repository.list_dependencies(task_id=task_id, status=status)

    def resolve_dependency(self, dependency_id: int) -> bool:
        return self.repository.resolve_dependency(dependency_id=dependency_id)

    # -- stats ---------------------------------------------------------------

    def stats(self, *, since: datetime | None = None) -> ResolutionStats:
        return self.repository.resolution_stats(
            unblocked_since=since or (utc_now() - STATS_WINDOW),
        )

    # -- internals -----------------------------------------------------------

    def _unblock(
        self,
        task: TaskView,
        resolution_type: ResolutionType,
        *,
        reason: str,
        expected_statuses: Iterable[TaskStatus] = BLOCKED_STATUSES,
        expected_decision_id: str | None = None,
        **extra: Any,
    ) -> bool:
        resolution = {"resolution_type": resolution_type.value, "reason": reason, **extra}
        if not self.repository.unblock_task(
            task_id=task.task_id,
            resolution=resolution,
            expected_statuses=expected_statuses,
            expected_decision_id=expected_decision_id,
        ):
            logger.debug("Task %s was not blocked anymore, skipping unblock", task.task_id)
            return False
        logger.info("Task %s unblocked: %s", task.task_id, resolution_type.value)
        self._publish(
            EngineEventType.TASK_UNBLOCKED,
            task_id=task.task_id,
            agent=task.assigned_agent,
            details=resolution,
        )
        return True

    def _escalate(
        self,
        task: TaskView,
        escalation_type: EscalationType,
        *,
        reason: str,
        details: dict[str, Any],
    ) -> bool:
        if not self.repository.escalate_task(
            task_id=task.task_id,
            escalation_type=escalation_type,
            reason=reason,
            details=details,
        ):
            return False
        logger.info("Task %s escalated: %s", task.task_id, escalation_type.value)
        self._publish(
            EngineEventType.TASK_ESCALATED,
            task_id=task.task_id,
            agent=task.assigned_agent,
            details={"escalation_type": escalation_type.value, "reason": reason, **details},
        )
        try:
            self.notifier.notify(
                Notification(
                    task_id=task.task_id,
                    escalation_type=escalation_type,
                    reason=reason,
                    agent=task.assigned_agent,
                    details=dict(details),
                ),
            )
        except Exception:
            logger.exception("Notification for %s failed", task.task_id)
        return True

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

    def _spawn(
        self,
        name: str,
        job: Callable[[], ResolutionRunSummary],
        interval_seconds: float,
    ) -> threading.Thread:
        thread = threading.Thread(
            target=self._job_loop,
            args=(name, job, interval_seconds),
            daemon=True,
            name=name,
        )
        thread.start()
        return thread

    def _job_loop(
        self,
        name: str,
        job: Callable[[], ResolutionRunSummary],
        interval_seconds: float,
    ) -> None:
        while not self._stop.is_set():
            try:
                job()
            except Exception:
                logger.exception("Resolution job %s failed", name)
            self._stop.wait(timeout=interval_seconds)
