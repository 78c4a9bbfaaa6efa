"""Fire-and-forget alerts for escalations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_dispatch.dispatch.models import EscalationType

logger = logging.getLogger(__name__)

CRITICAL_ESCALATIONS = frozenset(
    {EscalationType.DEPENDENCY_FAILED, EscalationType.REPEATED_FAILURES},
)


@dataclass(slots=True)
class Notification:
    """One escalation alert."""

    task_id: str
    escalation_type: EscalationType
    reason: str
    agent: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> str:
        return "critical" if self.escalation_type in CRITICAL_ESCALATIONS else "warning"


class NotificationSink(Protocol):
    """Receives escalation alerts; return value is ignored."""

    def notify(self, notification: Notification) -> None: ...


class LoggingNotificationSink:
    """Default sink that writes alerts to the application log."""

    def notify(self, notification: Notification) -> None:
        level = logging.ERROR if notification.severity == "critical" else logging.WARNING
        logger.log(
            level,
            "[%s] %s escalation for task %s (agent=%s): %s",
            notification.severity.upper(),
            notification.escalation_type.value,
            notification.task_id,
            notification.agent or "-",
            notification.reason,
        )


class RecordingNotificationSink:
    """Keeps alerts in memory; useful for embedding and tests."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)
