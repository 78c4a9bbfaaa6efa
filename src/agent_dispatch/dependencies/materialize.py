"""Batch job that materializes dependency edges from the whole task corpus."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from agent_dispatch.config import ExtractionSettings
from agent_dispatch.dependencies.extractor import DependencyExtractor
from agent_dispatch.dependencies.models import DependencyType, TaskDocument
from agent_dispatch.dependencies.resolver import find_matching_tasks
from agent_dispatch.dispatch.models import EdgeWrite, UnresolvedHintWrite
from agent_dispatch.dispatch.repository import TaskRepository

logger = logging.getLogger(__name__)

SOURCE_EXPLICIT = "explicit_blocked_by"
SOURCE_IMPLICIT = "implicit_parsed"
SOURCE_CROSS_FUNCTIONAL = "cross_functional"
SOURCE_AWAITING = "awaiting_reference"
SOURCE_DEPENDENT_ON = "dependent_on_pattern"
SAMPLE_LIMIT = 10

_CROSS_FUNCTIONAL = re.compile(
    r"cross[- ]?functional\s+(?:dependency\s+)?(?:with|involving)\s+([a-z/,\s]+)",
    re.IGNORECASE,
)
_AWAITING = re.compile(
    r"awaiting\s+([a-z]+)\s+(recommendation|approval|input|decision)",
    re.IGNORECASE,
)
_CROSS_FUNCTIONAL_PER_ROLE = 2
_DEPENDENT_ON = re.compile(r"dependent\s+on\s+([^.]+?)(?:\.|$)", re.IGNORECASE)
_DEPENDENT_ON_MIN_LENGTH = 5
_DEPENDENT_ON_MIN_TERMS = 2
_DEPENDENT_ON_CONFIDENCE = 0.7


@dataclass(slots=True)
class MaterializeSummary:
    """Aggregate outcome of one materialization run."""

    dry_run: bool
    tasks_scanned: int = 0
    existing_edges: int = 0
    explicit: int = 0
    implicit: int = 0
    cross_functional: int = 0
    dependent_on: int = 0
    duplicates: int = 0
    failed: int = 0
    inserted: int = 0
    edges: list[EdgeWrite] = field(default_factory=list)
    unresolved_hints: list[UnresolvedHintWrite] = field(default_factory=list)

    @property
    def resolved(self) -> int:
        return len(self.edges)

    @property
    def unresolved(self) -> int:
        return len(self.unresolved_hints)


class EdgeMaterializer:
    """Resolve explicit and text-derived dependencies into stored edges."""

    def __init__(
        self,
        repository: TaskRepository,
        *,
        settings: ExtractionSettings | None = None,
        extractor: DependencyExtractor | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or ExtractionSettings()
        self.extractor = extractor or DependencyExtractor()

    def run(self, *, dry_run: bool = False) -> MaterializeSummary:
        """Scan every task; persist new edges and unresolved hints unless ``dry_run``."""

        documents = [TaskDocument.from_view(task) for task in self.repository.list_tasks()]
        existing = self.repository.existing_edge_pairs()
        summary = MaterializeSummary(
            dry_run=dry_run,
            tasks_scanned=len(documents),
            existing_edges=len(existing),
        )
        lookup = _TaskLookup(documents)
        planned = set(existing)

        for document in documents:
            try:
                candidates = [
                    *self._explicit(document, lookup, summary),
                    *self._implicit(document, documents, summary),
                    *self._cross_functional(document, documents, summary),
                    *self._dependent_on(document, documents, summary),
                ]
            except Exception:
                logger.exception("Dependency extraction failed for task %s", document.task_id)
                summary.failed += 1
                continue
            for edge in candidates:
                pair = (edge.from_task_id, edge.to_task_id)
                if pair in planned:
                    summary.duplicates += 1
                    continue
                planned.add(pair)
                summary.edges.append(edge)

        if dry_run:
            logger.info(
                "Dry run: %d edges would be created, %d unresolved hints",
                summary.resolved,
                summary.unresolved,
            )
            return summary

        try:
            summary.inserted = self.repository.add_edges(summary.edges)
            self.repository.add_unresolved_hints(summary.unresolved_hints)
        except SQLAlchemyError:
            logger.exception("Failed to persist materialized dependency edges")
            summary.failed += len(summary.edges)
            summary.inserted = 0
        logger.info(
            "Materialized %d edges (%d duplicates, %d unresolved, %d failed)",
            summary.inserted,
            summary.duplicates,
            summary.unresolved,
            summary.failed,
        )
        return summary

    def _explicit(
        self,
        document: TaskDocument,
        lookup: _TaskLookup,
        summary: MaterializeSummary,
    ) -> list[EdgeWrite]:
        edges: list[EdgeWrite] = []
        for reference in _blocked_by_references(document.metadata.get("blocked_by")):
            target = lookup.find(reference)
            if target is None or target.task_id == document.task_id:
                summary.unresolved_hints.append(
                    UnresolvedHintWrite(
                        task_id=document.task_id,
                        raw_reference=reference,
                        dependency_type=DependencyType.EXPLICIT,
                        confidence=1.0,
                        source=SOURCE_EXPLICIT,
                    ),
                )
                continue
            summary.explicit += 1
            edges.append(
                EdgeWrite(
                    from_task_id=target.task_id,
                    to_task_id=document.task_id,
                    dependency_type=DependencyType.EXPLICIT,
                    confidence=1.0,
                    source=SOURCE_EXPLICIT,
                    raw_match=reference,
                    match_score=1.0,
                    match_reasons=["explicit_reference"],
                ),
            )
        return edges

    def _implicit(
        self,
        document: TaskDocument,
        corpus: list[TaskDocument],
        summary: MaterializeSummary,
    ) -> list[EdgeWrite]:
        edges: list[EdgeWrite] = []
        for hint in self.extractor.extract(document):
            if hint.confidence < self.settings.min_hint_confidence:
                continue
            matches = find_matching_tasks(
                hint,
                corpus,
                min_score=self.settings.min_match_score,
                max_results=self.settings.max_matches,
            )
            if not matches:
                summary.unresolved_hints.append(
                    UnresolvedHintWrite(
                        task_id=document.task_id,
                        raw_reference=hint.raw_match,
                        dependency_type=hint.dependency_type,
                        confidence=hint.confidence,
                        source=SOURCE_IMPLICIT,
                    ),
                )
                continue
            best = matches[0]
            summary.implicit += 1
            edges.append(
                EdgeWrite(
                    from_task_id=best.task.task_id,
                    to_task_id=document.task_id,
                    dependency_type=hint.dependency_type,
                    confidence=hint.confidence * best.score,
                    source=SOURCE_IMPLICIT,
                    raw_match=hint.raw_match,
                    match_score=best.score,
                    match_reasons=list(best.reasons),
                ),
            )
        return edges

    def _cross_functional(
        self,
        document: TaskDocument,
        corpus: list[TaskDocument],
        summary: MaterializeSummary,
    ) -> list[EdgeWrite]:
        text = f"{document.description} {_notes(document)}".lower()
        workflow = document.workflow
        edges: list[EdgeWrite] = []

        for match in _CROSS_FUNCTIONAL.finditer(text):
            roles = [part.strip() for part in re.split(r"[/,]", match.group(1))]
            for role in (role for role in roles if len(role) > 1):
                if not workflow:
                    break
                related = [
                    task
                    for task in corpus
                    if (task.assigned_agent or "").lower() == role
                    and task.task_id != document.task_id
                    and task.workflow == workflow
                ]
                for task in related[:_CROSS_FUNCTIONAL_PER_ROLE]:
                    edges.append(
                        _related_edge(task.task_id, document.task_id, f"Cross-functional with {role}"),
                    )

        for match in _AWAITING.finditer(text):
            role, action = match.group(1).lower(), match.group(2).lower()
            related = [
                task
                for task in corpus
                if (task.assigned_agent or "").lower() == role and task.task_id != document.task_id
            ]
            if not related:
                continue
            relevant = next(
                (task for task in related if _mentions_action(task, action)),
                related[0],
            )
            edges.append(
                EdgeWrite(
                    from_task_id=relevant.task_id,
                    to_task_id=document.task_id,
                    dependency_type=DependencyType.BLOCKED_BY,
                    confidence=0.7,
                    source=SOURCE_AWAITING,
                    raw_match=f"Awaiting {role} {action}",
                    match_score=1.0,
                    match_reasons=["role_match"],
                ),
            )

        summary.cross_functional += len(edges)
        return edges

    def _dependent_on(
        self,
        document: TaskDocument,
        corpus: list[TaskDocument],
        summary: MaterializeSummary,
    ) -> list[EdgeWrite]:
        """Sentence-level "Dependent on X" notes, matched on shared terms."""

        text = f"{document.description} {_notes(document)}"
        edges: list[EdgeWrite] = []
        for match in _DEPENDENT_ON.finditer(text):
            reference = match.group(1).strip()
            if len(reference) < _DEPENDENT_ON_MIN_LENGTH:
                continue
            terms = [word for word in reference.lower().split() if len(word) > 3]
            target = next(
                (
                    task
                    for task in corpus
                    if task.task_id != document.task_id
                    and _term_hits(task, terms) >= _DEPENDENT_ON_MIN_TERMS
                ),
                None,
            )
            if target is None:
                summary.unresolved_hints.append(
                    UnresolvedHintWrite(
                        task_id=document.task_id,
                        raw_reference=reference,
                        dependency_type=DependencyType.BLOCKS,
                        confidence=_DEPENDENT_ON_CONFIDENCE,
                        source=SOURCE_DEPENDENT_ON,
                    ),
                )
                continue
            hits = _term_hits(target, terms)
            summary.dependent_on += 1
            edges.append(
                EdgeWrite(
                    from_task_id=target.task_id,
                    to_task_id=document.task_id,
                    dependency_type=DependencyType.BLOCKS,
                    confidence=_DEPENDENT_ON_CONFIDENCE,
                    source=SOURCE_DEPENDENT_ON,
                    raw_match=reference,
                    match_score=hits / len(terms),
                    match_reasons=[f"term_match_{hits}/{len(terms)}"],
                ),
            )
        return edges


class _TaskLookup:
    """Find a task by id, external id, or original id (exact, then partial)."""

    def __init__(self, documents: list[TaskDocument]) -> None:
        self.by_task_id = {document.task_id.lower(): document for document in documents}
        self.by_alias: dict[str, TaskDocument] = {}
        for document in documents:
            for key in ("original_id", "external_id"):
                value = document.metadata.get(key)
                if isinstance(value, str) and value.strip():
                    self.by_alias[value.strip().lower()] = document

    def find(self, reference: str) -> TaskDocument | None:
        normalized = reference.strip().lower()
        if not normalized:
            return None
        if normalized in self.by_alias:
            return self.by_alias[normalized]
        if normalized in self.by_task_id:
            return self.by_task_id[normalized]
        for alias, document in self.by_alias.items():
            if alias in normalized or normalized in alias:
                return document
        return None


def _blocked_by_references(raw: Any) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(item) for item in raw if item]
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return [raw]
        if isinstance(parsed, list):
            return [str(item) for item in parsed if item]
        return [raw]
    return []


def _notes(document: TaskDocument) -> str:
    value = document.metadata.get("notes")
    return value if isinstance(value, str) else document.notes


def _term_hits(task: TaskDocument, terms: list[str]) -> int:
    text = f"{task.title} {task.description}".lower()
    return sum(1 for term in terms if term in text)


def _mentions_action(task: TaskDocument, action: str) -> bool:
    text = f"{task.title} {task.description}".lower()
    return any(term in text for term in (action, "recommend", "select", "decide"))


def _related_edge(from_task_id: str, to_task_id: str, reference: str) -> EdgeWrite:
    return EdgeWrite(
        from_task_id=from_task_id,
        to_task_id=to_task_id,
        dependency_type="related",
        confidence=0.5,
        source=SOURCE_CROSS_FUNCTIONAL,
        raw_match=reference,
        match_score=1.0,
        match_reasons=["cross_functional_role"],
    )


def render_summary(summary: MaterializeSummary, *, sample_limit: int = SAMPLE_LIMIT) -> list[str]:
    """Human-readable report lines for the CLI."""

    lines = [
        f"mode={'dry-run' if summary.dry_run else 'live'}",
        f"tasks_scanned={summary.tasks_scanned}",
        f"existing_edges={summary.existing_edges}",
        f"explicit={summary.explicit}",
        f"implicit={summary.implicit}",
        f"cross_functional={summary.cross_functional}",
        f"dependent_on={summary.dependent_on}",
        f"resolved={summary.resolved}",
        f"unresolved={summary.unresolved}",
        f"duplicate={summary.duplicates}",
        f"failed={summary.failed}",
    ]
    if not summary.dry_run:
        lines.append(f"inserted={summary.inserted}")
    for hint in summary.unresolved_hints[:sample_limit]:
        lines.append(f"unresolved: {hint.raw_reference!r} (from {hint.task_id})")
    if summary.dry_run:
        for edge in summary.edges[:sample_limit]:
            lines.append(
                f"would_create: {edge.to_task_id} depends_on={edge.from_task_id} "
                f"type={edge.dependency_type} source={edge.source} "
                f"confidence={edge.confidence:.2f} reason={edge.raw_match!r}",
            )
        remaining = summary.resolved - sample_limit
        if remaining > 0:
            lines.append(f"... and {remaining} more")
    return lines
