"""Match dependency hints against the task corpus."""

from __future__ import annotations

from collections.abc import Iterable

from agent_dispatch.dependencies.models import DependencyHint, TaskDocument, TaskMatch

DEFAULT_MIN_SCORE = 0.3
DEFAULT_MAX_RESULTS = 5

ROLE_WEIGHT = 0.2
KEYWORD_WEIGHT = 0.4
SUBSTRING_WEIGHT = 0.3
WORKFLOW_WEIGHT = 0.25
SIMILARITY_WEIGHT = 0.2
_MIN_WORD_LENGTH = 3
_SIMILARITY_REASON_FLOOR = 0.1


def score_match(hint: DependencyHint, task: TaskDocument) -> tuple[float, list[str]]:
    """Additive match score in [0, 1] with the signals that contributed."""

    if hint.is_explicit_task_id:
        reference = hint.raw_match.lower()
        if task.task_id.lower() == reference or (task.external_id or "").lower() == reference:
            return 1.0, ["exact_task_id_match"]

    reasons: list[str] = []
    score = 0.0
    task_text = task.search_text().lower()
    hint_text = hint.normalized_text.lower()

    if hint.inferred_role and (task.assigned_agent or "").lower() == hint.inferred_role:
        score += ROLE_WEIGHT
        reasons.append("role_match")

    if hint.keywords:
        hits = sum(1 for keyword in hint.keywords if keyword.lower() in task_text)
        score += (hits / len(hint.keywords)) * KEYWORD_WEIGHT
        if hits:
            reasons.append(f"keyword_match_{hits}/{len(hint.keywords)}")

    if hint_text and task_text and (hint_text in task_text or task_text in hint_text):
        score += SUBSTRING_WEIGHT
        reasons.append("substring_match")

    if hint.is_workflow_reference:
        workflow_name = hint.raw_match.lower()
        if workflow_name and (
            workflow_name in (task.workflow or "").lower() or workflow_name in task_text
        ):
            score += WORKFLOW_WEIGHT
            reasons.append("workflow_match")

    hint_words = _long_words(hint_text)
    task_words = _long_words(task_text)
    union = hint_words | task_words
    if union:
        similarity = len(hint_words & task_words) / len(union)
        score += similarity * SIMILARITY_WEIGHT
        if similarity > _SIMILARITY_REASON_FLOOR:
            reasons.append(f"text_similarity_{round(similarity * 100)}%")

    return min(score, 1.0), reasons


def find_matching_tasks(
    hint: DependencyHint,
    tasks: Iterable[TaskDocument],
    *,
    min_score: float = DEFAULT_MIN_SCORE,
    max_results: int = DEFAULT_MAX_RESULTS,
) -> list[TaskMatch]:
    """Best candidate tasks for a hint, excluding the task it came from."""

    if max_results <= 0:
        raise ValueError("max_results must be a positive integer.")
    matches: list[TaskMatch] = []
    for task in tasks:
        if task.task_id == hint.source_task_id:
            continue
        score, reasons = score_match(hint, task)
        if score >= min_score:
            matches.append(TaskMatch(task=task, score=score, reasons=reasons))
    matches.sort(key=lambda match: match.score, reverse=True)
    return matches[:max_results]


def _long_words(text: str) -> set[str]:
    return {word for word in text.split() if len(word) >= _MIN_WORD_LENGTH}
