"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_dispatch.dispatch.models import (
    BLOCKED_STATUSES,
    AgentCapacity,
    BlockerInfo,
    DecisionView,
    DependencyRecordView,
    EdgeView,
    EdgeWrite,
    EscalationType,
    QueueStats,
    ResolutionStats,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
    UnresolvedHintWrite,
)
from agent_dispatch.storage.alembic_runner import upgrade_head
from agent_dispatch.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import (
    Decision,
    DependencyEdge,
    Task,
    TaskDependency,
    TaskEvent,
    TaskIdCounter,
    UnresolvedDependencyHint,
)

_CAS_ATTEMPTS = 5
DECISION_PENDING = "pending"
DECISION_RESOLVED = "resolved"
DEPENDENCY_ACTIVE = "active"
DEPENDENCY_RESOLVED = "resolved"


class TaskRepository:
    """Task store facade with conditional (compare-and-swap) updates.

    Every status transition is guarded by the status the caller expects, and
    read-modify-write of the metadata history is guarded by the row version, so
    two loops racing on the same task never both win.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- tasks ---------------------------------------------------------------

    def create_task(
        self,
        payload: TaskCreate,
        *,
        status: TaskStatus = TaskStatus.QUEUED,
    ) -> TaskView:
        """Insert a new task; the id must be unused."""

        task_id = (payload.task_id or "").strip()
        if not task_id:
            raise ValueError("Task id is required to create a task.")
        with Session(self.engine) as session:
            self._insert_task(session, payload, task_id=task_id, status=status)
            session.commit()
            return _to_task_view(self._load(session, task_id))

    def save_routed_task(  # noqa: PLR0913
        self,
        payload: TaskCreate,
        *,
        assigned_agent: str,
        routing: dict[str, Any],
        max_active: int | None = None,
        max_queued: int | None = None,
    ) -> TaskView | None:
        """Persist a routing decision, creating the task when it is new.

        With ``max_active`` and ``max_queued`` the write is guarded: the agent's
        load is recounted inside the writing transaction, and when the agent is
        already overloaded the write is rolled back and ``None`` is returned.
        """

        task_id = (payload.task_id or "").strip()
        if not task_id:
            raise ValueError("Routed task must carry an id.")
        agent = _normalize_agent(assigned_agent) or ""
        with Session(self.engine) as session:
            existing = session.get(Task, task_id)
        if existing is None:
            metadata = dict(payload.metadata)
            metadata["routing"] = routing
            created = replace(payload, task_id=task_id, assigned_agent=agent, metadata=metadata)
            with Session(self.engine) as session:
                # The insert takes SQLite's write lock, so the recount below
                # cannot interleave with another routing transaction.
                self._insert_task(session, created, task_id=task_id, status=TaskStatus.QUEUED)
                session.flush()
                if self._over_capacity(
                    session,
                    agent=agent,
                    exclude_task_id=task_id,
                    max_active=max_active,
                    max_queued=max_queued,
                ):
                    session.rollback()
                    return None
                session.commit()
                return _to_task_view(self._load(session, task_id))

        for _ in range(_CAS_ATTEMPTS):
            with Session(self.engine) as session:
                row = self._load(session, task_id)
                if TaskStatus(row.status) != TaskStatus.QUEUED:
                    raise RuntimeError(
                        f"Only queued tasks can be re-routed, got {row.status} (task_id={task_id}).",
                    )
                metadata = load_json(row.metadata_json, {})
                metadata["routing"] = routing
                previous_agent = row.assigned_agent
                if not self._cas_update(
                    session,
                    row=row,
                    expected_statuses=(TaskStatus.QUEUED,),
                    values={"assigned_agent": agent, "metadata_json": dump_json(metadata)},
                ):
                    continue
                if self._over_capacity(
                    session,
                    agent=agent,
                    exclude_task_id=task_id,
                    max_active=max_active,
                    max_queued=max_queued,
                ):
                    session.rollback()
                    return None
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="rerouted",
                    status_from=TaskStatus.QUEUED,
                    status_to=TaskStatus.QUEUED,
                    details={"from_agent": previous_agent, "to_agent": assigned_agent},
                )
                session.commit()
                return _to_task_view(self._load(session, task_id))
        raise RuntimeError(
            f"Task state changed concurrently while routing; please retry (task_id={task_id}).",
        )

    def next_task_id(self, *, now: datetime | None = None) -> str:
        """Allocate the next ``TASK-YYYY-MMDD-NNN`` id from the date-scoped counter."""

        moment = now or utc_now()
        counter_date = moment.strftime("%Y-%m%d")
        while True:
            with Session(self.engine) as session:
                row = session.get(TaskIdCounter, counter_date)
                if row is None:
                    session.add(
                        TaskIdCounter(
                            counter_date=counter_date,
                            value=1,
                            updated_at=to_db_datetime(utc_now()),
                        ),
                    )
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        continue
                    value = 1
                else:
                    current = row.value
                    result = session.exec(
                        sa_update(TaskIdCounter)
                        .where(
                            col(TaskIdCounter.counter_date) == counter_date,
                            col(TaskIdCounter.value) == current,
                        )
                        .values(value=current + 1, updated_at=to_db_datetime(utc_now())),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        continue
                    session.commit()
                    value = current + 1
            return f"TASK-{counter_date}-{value:03d}"

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        agent: str | None = None,
        statuses: Iterable[TaskStatus] | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[TaskView]:
        """List tasks in creation order, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(Task)
            if agent is not None:
                statement = statement.where(Task.assigned_agent == _normalize_agent(agent))
            if statuses is not None:
                statement = statement.where(col(Task.status).in_(_status_values(statuses)))
            if newest_first:
                statement = statement.order_by(col(Task.created_at).desc(), col(Task.task_id).desc())
            else:
                statement = statement.order_by(col(Task.created_at).asc(), col(Task.task_id).asc())
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def active_task_for(self, agent: str) -> TaskView | None:
        """Return the oldest task an agent left ACTIVE (restart recovery)."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Task)
                .where(
                    Task.assigned_agent == _normalize_agent(agent),
                    Task.status == TaskStatus.ACTIVE.value,
                )
                .order_by(col(Task.started_at).asc(), col(Task.created_at).asc())
                .limit(1),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def claim_task(self, *, task_id: str) -> TaskView | None:
        """Move one queued task to ACTIVE; ``None`` when it is no longer queued."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.QUEUED.value,
                )
                .values(
                    status=TaskStatus.ACTIVE.value,
                    started_at=to_db_datetime(now),
                    not_before=None,
                    version=col(Task.version) + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="started",
                status_from=TaskStatus.QUEUED,
                status_to=TaskStatus.ACTIVE,
                details={},
            )
            session.commit()
            return _to_task_view(self._load(session, task_id))

    def claim_next_queued(self, *, agent: str) -> TaskView | None:
        """Claim the agent's highest-priority queued task, oldest first on ties."""

        while True:
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Task)
                    .where(
                        Task.assigned_agent == _normalize_agent(agent),
                        Task.status == TaskStatus.QUEUED.value,
                    )
                    .order_by(
                        col(Task.priority).desc(),
                        col(Task.created_at).asc(),
                        col(Task.task_id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                candidate_id = candidate.task_id
            claimed = self.claim_task(task_id=candidate_id)
            if claimed is not None:
                return claimed

    def complete_task(self, *, task_id: str, outputs: dict[str, Any]) -> bool:
        """Mark an active task as completed and persist its outputs."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.ACTIVE.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    outputs_json=dump_json(outputs),
                    completed_at=to_db_datetime(now),
                    not_before=None,
                    version=col(Task.version) + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.ACTIVE,
                status_to=TaskStatus.COMPLETED,
                details={"output_keys": sorted(outputs)},
            )
            session.commit()
            return True

    def block_task(self, *, task_id: str, blocker: BlockerInfo) -> bool:
        """Park an active task behind a typed blocker."""

        now = utc_now()
        status = blocker.status
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.ACTIVE.value,
                )
                .values(
                    status=status.value,
                    blocker_json=dump_json(blocker.to_dict()),
                    blocked_at=to_db_datetime(now),
                    escalation_type=None,
                    escalation_reason=None,
                    version=col(Task.version) + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="blocked",
                status_from=TaskStatus.ACTIVE,
                status_to=status,
                details=blocker.to_dict(),
            )
            session.commit()
            return True

    def record_failure(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected_version: int,
        attempt: int,
        error: str,
        backoff_seconds: float,
        terminal: bool,
    ) -> bool:
        """Record one failed attempt and requeue the task or fail it for good."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None or row.version != expected_version:
                return False
            metadata = load_json(row.metadata_json, {})
            history = list(metadata.get("error_history") or [])
            history.append(
                {
                    "attempt": attempt,
                    "error": error,
                    "backoff_seconds": backoff_seconds,
                    "failed_at": now.isoformat(),
                    "terminal": terminal,
                },
            )
            metadata["error_history"] = history
            status_to = TaskStatus.FAILED if terminal else TaskStatus.QUEUED
            values: dict[str, Any] = {
                "status": status_to.value,
                "retry_count": attempt,
                "metadata_json": dump_json(metadata),
            }
            if terminal:
                values["failed_at"] = to_db_datetime(now)
                values["not_before"] = None
            else:
                values["started_at"] = None
                values["not_before"] = to_db_datetime(now + timedelta(seconds=backoff_seconds))
            if not self._cas_update(
                session,
                row=row,
                expected_statuses=(TaskStatus.ACTIVE,),
                values=values,
            ):
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="failed" if terminal else "retry_scheduled",
                status_from=TaskStatus.ACTIVE,
                status_to=status_to,
                details={"attempt": attempt, "backoff_seconds": backoff_seconds, "error": error},
            )
            session.commit()
            return True

    def unblock_task(
        self,
        *,
        task_id: str,
        resolution: dict[str, Any],
        expected_statuses: Iterable[TaskStatus] = BLOCKED_STATUSES,
        expected_decision_id: str | None = None,
    ) -> bool:
        """Requeue a blocked task and append a resolution record to its history.

        With ``expected_decision_id`` the task is only released while its
        blocker still points at that decision (or names no decision at all).
        """

        expected = tuple(expected_statuses)
        for _ in range(_CAS_ATTEMPTS):
            now = utc_now()
            with Session(self.engine) as session:
                row = session.get(Task, task_id)
                if row is None or TaskStatus(row.status) not in expected:
                    return False
                if expected_decision_id is not None:
                    blocker_payload = load_json(row.blocker_json, {}).get("payload") or {}
                    blocker_decision = blocker_payload.get("decision_id")
                    if blocker_decision and blocker_decision != expected_decision_id:
                        return False
                previous = TaskStatus(row.status)
                metadata = load_json(row.metadata_json, {})
                history = list(metadata.get("resolution_history") or [])
                history.append(
                    {
                        **resolution,
                        "previous_status": previous.value,
                        "blocker": load_json(row.blocker_json, {}),
                        "resolved_at": now.isoformat(),
                    },
                )
                metadata["resolution_history"] = history
                if not self._cas_update(
                    session,
                    row=row,
                    expected_statuses=(previous,),
                    values={
                        "status": TaskStatus.QUEUED.value,
                        "blocker_json": None,
                        "escalation_type": None,
                        "escalation_reason": None,
                        "unblocked_at": to_db_datetime(now),
                        "started_at": None,
                        "metadata_json": dump_json(metadata),
                    },
                ):
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="unblocked",
                    status_from=previous,
                    status_to=TaskStatus.QUEUED,
                    details=dict(resolution),
                )
                session.commit()
                return True
        return False

    def escalate_task(
        self,
        *,
        task_id: str,
        escalation_type: EscalationType,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Attach an escalation marker to a blocked task that has none yet."""

        for _ in range(_CAS_ATTEMPTS):
            now = utc_now()
            with Session(self.engine) as session:
                row = session.get(Task, task_id)
                if row is None or row.escalation_type is not None:
                    return False
                status = TaskStatus(row.status)
                if status not in BLOCKED_STATUSES:
                    return False
                metadata = load_json(row.metadata_json, {})
                history = list(metadata.get("escalation_history") or [])
                record: dict[str, Any] = {
                    "type": escalation_type.value,
                    "reason": reason,
                    "blocked_since": (
                        to_utc_aware_datetime(row.blocked_at).isoformat()
                        if row.blocked_at is not None
                        else None
                    ),
                    "escalated_at": now.isoformat(),
                }
                record.update(details or {})
                history.append(record)
                metadata["escalation_history"] = history
                if not self._cas_update(
                    session,
                    row=row,
                    expected_statuses=(status,),
                    values={
                        "escalation_type": escalation_type.value,
                        "escalation_reason": reason,
                        "escalated_at": to_db_datetime(now),
                        "metadata_json": dump_json(metadata),
                    },
                ):
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="escalated",
                    status_from=status,
                    status_to=status,
                    details={"escalation_type": escalation_type.value, "reason": reason},
                )
                session.commit()
                return True
        return False

    def blocked_tasks(
        self,
        *,
        statuses: Iterable[TaskStatus] = BLOCKED_STATUSES,
        agent: str | None = None,
    ) -> list[TaskView]:
        """Blocked tasks, longest-blocked first."""

        with Session(self.engine) as session:
            statement = select(Task).where(col(Task.status).in_(_status_values(statuses)))
            if agent is not None:
                statement = statement.where(Task.assigned_agent == _normalize_agent(agent))
            rows = session.exec(
                statement.order_by(col(Task.blocked_at).asc(), col(Task.task_id).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def stale_blocked_tasks(self, *, blocked_before: datetime) -> list[TaskView]:
        """Blocked tasks without an escalation marker, blocked before a cutoff."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(
                    col(Task.status).in_(_status_values(BLOCKED_STATUSES)),
                    col(Task.escalation_type).is_(None),
                    col(Task.blocked_at).is_not(None),
                    col(Task.blocked_at) < to_db_datetime(blocked_before),
                )
                .order_by(col(Task.blocked_at).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def capacity_for(self, agent: str, *, max_active: int, max_queued: int) -> AgentCapacity:
        """Count an agent's ACTIVE and QUEUED tasks."""

        normalized = _normalize_agent(agent) or ""
        counts = self._status_counts(agent=normalized)
        return AgentCapacity(
            agent=normalized,
            active=counts.get(TaskStatus.ACTIVE.value, 0),
            queued=counts.get(TaskStatus.QUEUED.value, 0),
            max_active=max_active,
            max_queued=max_queued,
        )

    def known_agents(self) -> list[str]:
        """Distinct agents that own at least one task."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.assigned_agent)
                .where(col(Task.assigned_agent).is_not(None))
                .distinct()
                .order_by(col(Task.assigned_agent).asc()),
            ).all()
            return [str(agent) for agent in rows if agent]

    def queue_stats(self, *, agent: str | None = None) -> list[QueueStats]:
        """Per-agent counts of queued, active, blocked, completed, and failed tasks."""

        with Session(self.engine) as session:
            statement = select(Task.assigned_agent, Task.status, func.count()).group_by(
                Task.assigned_agent,
                Task.status,
            )
            if agent is not None:
                statement = statement.where(Task.assigned_agent == _normalize_agent(agent))
            rows = session.exec(statement).all()

        stats: dict[str, QueueStats] = {}
        for owner, status, count in rows:
            key = owner or "-"
            entry = stats.setdefault(key, QueueStats(agent=key))
            parsed = TaskStatus(status)
            if parsed == TaskStatus.QUEUED:
                entry.queued += count
            elif parsed == TaskStatus.ACTIVE:
                entry.active += count
            elif parsed.is_blocked:
                entry.blocked += count
            elif parsed == TaskStatus.COMPLETED:
                entry.completed += count
            else:
                entry.failed += count
        if agent is not None and not stats:
            normalized = _normalize_agent(agent) or "-"
            stats[normalized] = QueueStats(agent=normalized)
        return [stats[key] for key in sorted(stats)]

    def resolution_stats(self, *, unblocked_since: datetime) -> ResolutionStats:
        """Blocked counts by type, escalations, recent unblocks, pending decisions."""

        with Session(self.engine) as session:
            blocked_rows = session.exec(
                select(Task.status, func.count())
                .where(col(Task.status).in_(_status_values(BLOCKED_STATUSES)))
                .group_by(Task.status),
            ).all()
            escalated = session.exec(
                select(func.count())
                .select_from(Task)
                .where(
                    col(Task.status).in_(_status_values(BLOCKED_STATUSES)),
                    col(Task.escalation_type).is_not(None),
                ),
            ).one()
            unblocked = session.exec(
                select(func.count())
                .select_from(Task)
                .where(col(Task.unblocked_at) >= to_db_datetime(unblocked_since)),
            ).one()
            pending = session.exec(
                select(func.count())
                .select_from(Decision)
                .where(Decision.status == DECISION_PENDING),
            ).one()

        blocked_by_type = {status.value: 0 for status in _ordered_blocked_statuses()}
        for status, count in blocked_rows:
            blocked_by_type[str(status)] = int(count)
        return ResolutionStats(
            blocked_by_type=blocked_by_type,
            escalated=int(escalated),
            unblocked_since=int(unblocked),
            pending_decisions=int(pending),
        )

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            view = _to_task_view(task)
            events = [
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=load_json(row.details_json, {}),
                )
                for row in event_rows
            ]
        return TaskDetails(task=view, events=events)

    # -- dependency edges ----------------------------------------------------

    def existing_edge_pairs(self) -> set[tuple[str, str]]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DependencyEdge.from_task_id, DependencyEdge.to_task_id),
            ).all()
            return {(str(source), str(target)) for source, target in rows}

    def add_edges(self, edges: Iterable[EdgeWrite]) -> int:
        """Insert edges whose (from, to) pair is not stored yet; return inserted count."""

        now = utc_now()
        inserted = 0
        with Session(self.engine) as session:
            seen = {
                (str(source), str(target))
                for source, target in session.exec(
                    select(DependencyEdge.from_task_id, DependencyEdge.to_task_id),
                ).all()
            }
            for edge in edges:
                pair = (edge.from_task_id, edge.to_task_id)
                if pair in seen or edge.from_task_id == edge.to_task_id:
                    continue
                seen.add(pair)
                session.add(
                    DependencyEdge(
                        from_task_id=edge.from_task_id,
                        to_task_id=edge.to_task_id,
                        dependency_type=edge.dependency_type,
                        confidence=_clamp(edge.confidence),
                        source=edge.source,
                        raw_match=edge.raw_match,
                        match_score=_clamp(edge.match_score),
                        match_reasons_json=dump_json(list(edge.match_reasons)),
                        created_at=to_db_datetime(now),
                    ),
                )
                inserted += 1
            session.commit()
        return inserted

    def list_edges(self) -> list[EdgeView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DependencyEdge).order_by(col(DependencyEdge.id).asc()),
            ).all()
            return [
                EdgeView(
                    edge_id=row.id or 0,
                    from_task_id=row.from_task_id,
                    to_task_id=row.to_task_id,
                    dependency_type=row.dependency_type,
                    confidence=row.confidence,
                    source=row.source,
                    raw_match=row.raw_match,
                    match_score=row.match_score,
                    match_reasons=load_json(row.match_reasons_json, []),
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]

    def add_unresolved_hints(self, hints: Iterable[UnresolvedHintWrite]) -> int:
        now = utc_now()
        count = 0
        with Session(self.engine) as session:
            for hint in hints:
                session.add(
                    UnresolvedDependencyHint(
                        task_id=hint.task_id,
                        raw_reference=hint.raw_reference,
                        dependency_type=hint.dependency_type,
                        confidence=_clamp(hint.confidence),
                        source=hint.source,
                        created_at=to_db_datetime(now),
                    ),
                )
                count += 1
            session.commit()
        return count

    # -- decisions -----------------------------------------------------------

    def create_decision(  # noqa: PLR0913
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
        """Open a pending decision request."""

        if not title.strip():
            raise ValueError("Decision title must not be empty.")
        decision_id = f"DEC-{uuid4().hex[:12]}"
        now = utc_now()
        with Session(self.engine) as session:
            if task_id is not None and session.get(Task, task_id) is None:
                raise RuntimeError(f"Task not found: {task_id}")
            row = Decision(
                decision_id=decision_id,
                task_id=task_id,
                title=title,
                description=description,
                options_json=dump_json(list(options or [])),
                recommendation=recommendation,
                reasoning=reasoning,
                urgency=urgency,
                status=DECISION_PENDING,
                metadata_json=dump_json(metadata or {}),
                created_at=to_db_datetime(now),
            )
            session.add(row)
            if task_id is not None:
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="decision_requested",
                    status_from=None,
                    status_to=None,
                    details={"decision_id": decision_id, "title": title},
                )
            session.commit()
            session.refresh(row)
            return _to_decision_view(row)

    def get_decision(self, decision_id: str) -> DecisionView | None:
        with Session(self.engine) as session:
            row = session.get(Decision, decision_id)
            return _to_decision_view(row) if row is not None else None

    def list_decisions(self, *, status: str | None = None) -> list[DecisionView]:
        with Session(self.engine) as session:
            statement = select(Decision).order_by(col(Decision.created_at).asc())
            if status is not None:
                statement = statement.where(Decision.status == status)
            return [_to_decision_view(row) for row in session.exec(statement).all()]

    def resolve_decision(
        self,
        *,
        decision_id: str,
        choice: str,
        notes: str | None = None,
        resolved_by: str | None = None,
    ) -> DecisionView | None:
        """Move a pending decision to resolved; ``None`` if it was not pending."""

        now = utc_now()
        with Session(self.engine) as session:
            if session.get(Decision, decision_id) is None:
                raise RuntimeError(f"Decision not found: {decision_id}")
            result = session.exec(
                sa_update(Decision)
                .where(
                    col(Decision.decision_id) == decision_id,
                    col(Decision.status) == DECISION_PENDING,
                )
                .values(
                    status=DECISION_RESOLVED,
                    choice=choice,
                    notes=notes,
                    resolved_by=resolved_by,
                    resolved_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(Decision, decision_id)
            return _to_decision_view(row) if row is not None else None

    # -- dependency ledger ---------------------------------------------------

    def add_dependency(
        self,
        *,
        task_id: str,
        depends_on_task_id: str,
        dependency_type: str = "completion",
    ) -> DependencyRecordView:
        if task_id == depends_on_task_id:
            raise ValueError("A task cannot depend on itself.")
        with Session(self.engine) as session:
            for ref in (task_id, depends_on_task_id):
                if session.get(Task, ref) is None:
                    raise RuntimeError(f"Task not found: {ref}")
            row = TaskDependency(
                task_id=task_id,
                depends_on_task_id=depends_on_task_id,
                dependency_type=dependency_type,
                status=DEPENDENCY_ACTIVE,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_dependency_view(row)

    def list_dependencies(
        self,
        *,
        task_id: str | None = None,
        status: str | None = None,
    ) -> list[DependencyRecordView]:
        with Session(self.engine) as session:
            statement = select(TaskDependency).order_by(col(TaskDependency.dependency_id).asc())
            if task_id is not None:
                statement = statement.where(TaskDependency.task_id == task_id)
            if status is not None:
                statement = statement.where(TaskDependency.status == status)
            return [_to_dependency_view(row) for row in session.exec(statement).all()]

    def resolve_dependency(self, *, dependency_id: int) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskDependency)
                .where(
                    col(TaskDependency.dependency_id) == dependency_id,
                    col(TaskDependency.status) == DEPENDENCY_ACTIVE,
                )
                .values(status=DEPENDENCY_RESOLVED, resolved_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- internals -----------------------------------------------------------

    def _insert_task(
        self,
        session: Session,
        payload: TaskCreate,
        *,
        task_id: str,
        status: TaskStatus,
    ) -> None:
        if session.get(Task, task_id) is not None:
            raise RuntimeError(f"Task already exists: {task_id}")
        now = utc_now()
        row = Task(
            task_id=task_id,
            title=payload.title,
            description=payload.description,
            notes=payload.notes,
            assigned_agent=_normalize_agent(payload.assigned_agent),
            team=_normalize_agent(payload.team),
            workflow=payload.workflow,
            tags_json=dump_json(list(payload.tags)),
            keywords_json=dump_json(list(payload.keywords)),
            priority=payload.priority,
            status=status.value,
            metadata_json=dump_json(payload.metadata),
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        session.add(row)
        self._add_event(
            session=session,
            task_id=task_id,
            event_type="created",
            status_from=None,
            status_to=status,
            details={"assigned_agent": row.assigned_agent, "priority": payload.priority},
        )

    def _status_counts(self, *, agent: str) -> dict[str, int]:
        with Session(self.engine) as session:
            return _count_load(session, agent=agent)

    def _over_capacity(  # noqa: PLR0913
        self,
        session: Session,
        *,
        agent: str,
        exclude_task_id: str,
        max_active: int | None,
        max_queued: int | None,
    ) -> bool:
        """Whether ``agent`` was already full before ``exclude_task_id`` landed on it."""

        if max_active is None or max_queued is None:
            return False
        counts = _count_load(session, agent=agent, exclude_task_id=exclude_task_id)
        return AgentCapacity(
            agent=agent,
            active=counts.get(TaskStatus.ACTIVE.value, 0),
            queued=counts.get(TaskStatus.QUEUED.value, 0),
            max_active=max_active,
            max_queued=max_queued,
        ).is_overloaded

    def _cas_update(
        self,
        session: Session,
        *,
        row: Task,
        expected_statuses: Iterable[TaskStatus],
        values: dict[str, Any],
    ) -> bool:
        result = session.exec(
            sa_update(Task)
            .where(
                col(Task.task_id) == row.task_id,
                col(Task.version) == row.version,
                col(Task.status).in_(_status_values(expected_statuses)),
            )
            .values(
                version=row.version + 1,
                updated_at=to_db_datetime(utc_now()),
                **values,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        return True

    def _load(self, session: Session, task_id: str) -> Task:
        row = session.exec(select(Task).where(Task.task_id == task_id)).one_or_none()
        if row is None:
            raise RuntimeError(f"Task not found: {task_id}")
        session.refresh(row)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _count_load(
    session: Session,
    *,
    agent: str,
    exclude_task_id: str | None = None,
) -> dict[str, int]:
    statement = select(Task.status, func.count()).where(
        Task.assigned_agent == agent,
        col(Task.status).in_([TaskStatus.ACTIVE.value, TaskStatus.QUEUED.value]),
    )
    if exclude_task_id is not None:
        statement = statement.where(Task.task_id != exclude_task_id)
    rows = session.exec(statement.group_by(Task.status)).all()
    return {str(status): int(count) for status, count in rows}


def _normalize_agent(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    return normalized or None


def _status_values(statuses: Iterable[TaskStatus]) -> list[str]:
    return [TaskStatus(status).value for status in statuses]


def _ordered_blocked_statuses() -> list[TaskStatus]:
    return [status for status in TaskStatus if status in BLOCKED_STATUSES]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _to_task_view(row: Task) -> TaskView:
    blocker_raw = load_json(row.blocker_json, {})
    outputs = load_json(row.outputs_json, {}) if row.outputs_json else None
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        description=row.description or "",
        notes=row.notes or "",
        assigned_agent=row.assigned_agent,
        team=row.team,
        workflow=row.workflow,
        tags=[str(tag) for tag in load_json(row.tags_json, [])],
        keywords=[str(keyword) for keyword in load_json(row.keywords_json, [])],
        priority=row.priority,
        status=TaskStatus(row.status),
        retry_count=row.retry_count,
        blocker=BlockerInfo.from_dict(blocker_raw) if blocker_raw else None,
        escalation_type=EscalationType(row.escalation_type) if row.escalation_type else None,
        escalation_reason=row.escalation_reason,
        not_before=optional_utc(row.not_before),
        outputs=outputs,
        metadata=load_json(row.metadata_json, {}),
        version=row.version,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        blocked_at=optional_utc(row.blocked_at),
        unblocked_at=optional_utc(row.unblocked_at),
        escalated_at=optional_utc(row.escalated_at),
        completed_at=optional_utc(row.completed_at),
        failed_at=optional_utc(row.failed_at),
    )


def _to_decision_view(row: Decision) -> DecisionView:
    return DecisionView(
        decision_id=row.decision_id,
        task_id=row.task_id,
        title=row.title,
        description=row.description or "",
        options=[str(option) for option in load_json(row.options_json, [])],
        recommendation=row.recommendation,
        reasoning=row.reasoning,
        urgency=row.urgency,
        status=row.status,
        choice=row.choice,
        notes=row.notes,
        resolved_by=row.resolved_by,
        metadata=load_json(row.metadata_json, {}),
        created_at=to_utc_aware_datetime(row.created_at),
        resolved_at=optional_utc(row.resolved_at),
    )


def _to_dependency_view(row: TaskDependency) -> DependencyRecordView:
    return DependencyRecordView(
        dependency_id=row.dependency_id or 0,
        task_id=row.task_id,
        depends_on_task_id=row.depends_on_task_id,
        dependency_type=row.dependency_type,
        status=row.status,
        created_at=to_utc_aware_datetime(row.created_at),
        resolved_at=optional_utc(row.resolved_at),
    )
