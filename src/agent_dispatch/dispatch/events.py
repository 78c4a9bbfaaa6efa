"""Typed engine events delivered to an explicit subscriber list."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)


class EngineEventType(str, Enum):
    """State changes observable by engine subscribers."""

    TASK_ROUTED = "task_routed"
    TASK_QUEUED = "task_queued"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_BLOCKED = "task_blocked"
    TASK_RETRY_SCHEDULED = "task_retry_scheduled"
    TASK_FAILED = "task_failed"
    TASK_UNBLOCKED = "task_unblocked"
    TASK_ESCALATED = "task_escalated"
    DECISION_REQUESTED = "decision_requested"
    DECISION_RESOLVED = "decision_resolved"
    AGENT_LOOP_STARTED = "agent_loop_started"
    AGENT_LOOP_STOPPED = "agent_loop_stopped"


@dataclass(slots=True)
class EngineEvent:
    """One published engine event."""

    event_type: EngineEventType
    task_id: str | None = None
    agent: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


EventHandler = Callable[[EngineEvent], None]


@dataclass(slots=True)
class _Subscription:
    subscription_id: str
    handler: EventHandler
    event_types: frozenset[EngineEventType] | None


class EventBus:
    """Synchronous observer list owned by the engines.

    Handlers run on the publishing thread; a failing handler is logged and
    never breaks the publisher or other handlers.
    """

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        handler: EventHandler,
        *,
        event_types: Iterable[EngineEventType] | None = None,
    ) -> str:
        """Register ``handler`` for some (default: all) event types."""

        subscription = _Subscription(
            subscription_id=uuid4().hex,
            handler=handler,
            event_types=frozenset(event_types) if event_types is not None else None,
        )
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            for index, subscription in enumerate(self._subscriptions):
                if subscription.subscription_id == subscription_id:
                    del self._subscriptions[index]
                    return True
        return False

    def publish(
        self,
        event_type: EngineEventType,
        *,
        task_id: str | None = None,
        agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> EngineEvent:
        event = EngineEvent(
            event_type=event_type,
            task_id=task_id,
            agent=agent,
            details=dict(details or {}),
        )
        with self._lock:
            subscribers = [
                subscription
                for subscription in self._subscriptions
                if subscription.event_types is None or event_type in subscription.event_types
            ]
        for subscription in subscribers:
            try:
                subscription.handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed for %s (task_id=%s)",
                    event_type.value,
                    task_id,
                )
        return event
