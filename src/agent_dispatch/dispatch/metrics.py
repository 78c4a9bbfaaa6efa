"""Queue and resolution statistics rendered for operators."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from agent_dispatch.dispatch.models import (
    AgentCapacity,
    QueueStats,
    ResolutionStats,
    TaskStatus,
    TaskView,
)

PRIORITY_BAND_LOW_MAX = 33
PRIORITY_BAND_NORMAL_MAX = 66


@dataclass(slots=True)
class DispatchMetricsSnapshot:
    """Aggregated counters behind ``engine stats``."""

    queue: list[QueueStats]
    resolution: ResolutionStats
    queued_priority_bands: dict[str, int]
    overloaded_agents: list[str]
    retrying_tasks: int

    @property
    def totals(self) -> QueueStats:
        total = QueueStats(agent="all")
        for entry in self.queue:
            total.queued += entry.queued
            total.active += entry.active
            total.blocked += entry.blocked
            total.completed += entry.completed
            total.failed += entry.failed
        return total


def build_dispatch_metrics(
    *,
    queue: list[QueueStats],
    resolution: ResolutionStats,
    open_tasks: list[TaskView],
    capacities: list[AgentCapacity],
) -> DispatchMetricsSnapshot:
    """Combine per-agent counts, blocker stats, and the open-task snapshot."""

    bands: Counter[str] = Counter()
    retrying = 0
    for task in open_tasks:
        if task.status == TaskStatus.QUEUED:
            bands[_priority_band(task.priority)] += 1
            if task.retry_count > 0:
                retrying += 1
    return DispatchMetricsSnapshot(
        queue=queue,
        resolution=resolution,
        queued_priority_bands=dict(bands),
        overloaded_agents=sorted(
            capacity.agent for capacity in capacities if capacity.is_overloaded
        ),
        retrying_tasks=retrying,
    )


def render_stats_lines(*, snapshot: DispatchMetricsSnapshot, hours: int) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    totals = snapshot.totals
    resolution = snapshot.resolution
    lines = [
        f"Dispatch health (window={hours}h)",
        (
            "Tasks: "
            f"queued={totals.queued} active={totals.active} blocked={totals.blocked} "
            f"completed={totals.completed} failed={totals.failed}"
        ),
        "Queued priority bands: " + (_fmt_key_value(snapshot.queued_priority_bands) or "none"),
        f"Queued retries: {snapshot.retrying_tasks}",
        (
            "Blocked by type: "
            + (_fmt_key_value(resolution.blocked_by_type) or "none")
            + f" (total={resolution.total_blocked})"
        ),
        f"Escalated: {resolution.escalated}",
        f"Unblocked in window: {resolution.unblocked_since}",
        f"Pending decisions: {resolution.pending_decisions}",
        "Overloaded agents: " + (" ".join(snapshot.overloaded_agents) or "none"),
    ]
    if snapshot.queue:
        lines.append("Per agent:")
        lines.extend(render_queue_lines(snapshot.queue, indent="  "))
    return lines


def render_queue_lines(queue: list[QueueStats], *, indent: str = "") -> list[str]:
    return [
        f"{indent}{entry.agent}: queued={entry.queued} active={entry.active} "
        f"blocked={entry.blocked} completed={entry.completed} failed={entry.failed} "
        f"total={entry.total}"
        for entry in queue
    ]


def _priority_band(priority: int) -> str:
    if priority <= PRIORITY_BAND_LOW_MAX:
        return "low"
    if priority <= PRIORITY_BAND_NORMAL_MAX:
        return "normal"
    return "high"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
