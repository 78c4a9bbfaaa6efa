"""Routing, execution, and resolution engines over the shared task store."""

from agent_dispatch.dispatch.models import BlockerInfo, BlockerType, TaskCreate, TaskStatus, TaskView

__all__ = [
    "BlockerInfo",
    "BlockerType",
    "TaskCreate",
    "TaskStatus",
    "TaskView",
]
