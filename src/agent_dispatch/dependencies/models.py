"""Value types shared by the extractor, resolver, and graph engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agent_dispatch.dispatch.models import TaskView


class DependencyType:
    """Dependency type labels attached to hints and edges."""

    DEPENDS_ON = "depends_on"
    REQUIRES = "requires"
    AFTER_COMPLETION = "after_completion"
    BLOCKED_BY = "blocked_by"
    NEEDS_FIRST = "needs_first"
    WAITING_FOR = "waiting_for"
    WHEN_COMPLETE = "when_complete"
    CANNOT_START_UNTIL = "cannot_start_until"
    PREREQUISITE = "prerequisite"
    TASK_ID_REFERENCE = "task_id_reference"
    WORKFLOW_REFERENCE = "workflow_reference"
    EXPLICIT = "explicit"
    BLOCKS = "blocks"


@dataclass(slots=True)
class TaskDocument:
    """Text-bearing projection of a task used for dependency analysis."""

    task_id: str
    title: str = ""
    description: str = ""
    notes: str = ""
    content: str = ""
    external_id: str | None = None
    assigned_agent: str | None = None
    workflow: str | None = None
    tags: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_view(cls, task: TaskView) -> TaskDocument:
        return cls(
            task_id=task.task_id,
            title=task.title,
            description=task.description,
            notes=task.notes,
            content=task.content,
            external_id=task.external_id,
            assigned_agent=task.assigned_agent,
            workflow=task.workflow,
            tags=list(task.tags),
            keywords=list(task.keywords),
            metadata=dict(task.metadata),
        )

    @property
    def node_id(self) -> str:
        return self.task_id or (self.external_id or "")

    def text_sources(self) -> list[str]:
        """Free-text fields scanned for dependency phrases, in scan order."""

        sources = [
            self.title,
            self.description,
            self.notes,
            self.content,
            _metadata_text(self.metadata, "notes"),
            _metadata_text(self.metadata, "dependency_notes"),
        ]
        return [source for source in sources if source]

    def search_text(self) -> str:
        """Fields a hint is matched against when looking for candidate tasks."""

        parts = [
            self.task_id,
            self.external_id or "",
            self.title,
            self.description,
            self.content,
            self.notes,
            self.workflow or "",
            *self.tags,
            *self.keywords,
        ]
        return " ".join(parts)


@dataclass(slots=True)
class DependencyHint:
    """Unconfirmed dependency signal found in one task's text."""

    raw_match: str
    dependency_type: str
    source_task_id: str
    normalized_text: str
    inferred_role: str | None
    confidence: float
    keywords: list[str]
    is_explicit_task_id: bool = False
    is_workflow_reference: bool = False


@dataclass(slots=True)
class TaskMatch:
    """Candidate task that a hint likely refers to."""

    task: TaskDocument
    score: float
    reasons: list[str]


@dataclass(slots=True)
class GraphEdge:
    """Directed dependency: ``from_task_id`` must finish before ``to_task_id``."""

    from_task_id: str
    to_task_id: str
    dependency_type: str
    confidence: float
    raw_match: str = ""
    match_score: float = 1.0
    match_reasons: list[str] = field(default_factory=list)


def _metadata_text(metadata: dict[str, Any], key: str) -> str:
    value = metadata.get(key)
    return value if isinstance(value, str) else ""
