"""Dependency hint extraction from free task text.

The extractor is a data-driven ruleset: an ordered list of typed phrase
matchers, a list of identifier patterns, a list of known workflow names and a
phrase-to-role table. Rules can be added or reordered without touching the
scanning algorithm in :class:`DependencyExtractor`.

Hints come out in a fixed order (phrase rules, then identifiers, then
workflows) and are deduplicated case-insensitively by matched text.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from agent_dispatch.dependencies.models import DependencyHint, DependencyType, TaskDocument

logger = logging.getLogger(__name__)

_OPEN_QUOTE = "[\"“”]?"
_TARGET = "([^\"“”,.]+)"
_CLOSE_QUOTE = "[\"“”]?"
_QUOTED_TARGET = _OPEN_QUOTE + _TARGET + _CLOSE_QUOTE


@dataclass(frozen=True, slots=True)
class PhraseRule:
    """One natural-language dependency pattern bound to a dependency type."""

    dependency_type: str
    pattern: re.Pattern[str]

    @classmethod
    def compile(cls, dependency_type: str, expression: str) -> PhraseRule:
        return cls(dependency_type, re.compile(expression, re.IGNORECASE))


DEFAULT_PHRASE_RULES: tuple[PhraseRule, ...] = (
    PhraseRule.compile(
        DependencyType.DEPENDS_ON,
        r"(?:dependent\s+on|depends\s+on)\s+" + _QUOTED_TARGET,
    ),
    PhraseRule.compile(
        DependencyType.REQUIRES,
        r"requires?\s+" + _QUOTED_TARGET + r"(?:\s+(?:to\s+be\s+)?(?:complete|done|finished))?",
    ),
    PhraseRule.compile(
        DependencyType.AFTER_COMPLETION,
        r"after\s+" + _QUOTED_TARGET + r"\s+(?:completes?|is\s+(?:done|complete|finished))",
    ),
    PhraseRule.compile(DependencyType.BLOCKED_BY, r"blocked\s+by\s+" + _QUOTED_TARGET),
    PhraseRule.compile(DependencyType.NEEDS_FIRST, r"needs?\s+" + _QUOTED_TARGET + r"\s+first"),
    PhraseRule.compile(
        DependencyType.WAITING_FOR,
        r"waiting\s+(?:for|on)\s+" + _QUOTED_TARGET,
    ),
    PhraseRule.compile(
        DependencyType.WHEN_COMPLETE,
        r"(?:once|when)\s+" + _QUOTED_TARGET + r"\s+(?:is\s+)?(?:done|complete|finished)",
    ),
    PhraseRule.compile(
        DependencyType.CANNOT_START_UNTIL,
        r"cannot\s+(?:start|begin|proceed)\s+(?:until|without)\s+" + _QUOTED_TARGET,
    ),
    PhraseRule.compile(DependencyType.PREREQUISITE, r"prerequisite:\s*" + _QUOTED_TARGET),
)

DEFAULT_TASK_ID_PATTERNS: tuple[re.Pattern[str], ...] = (
    # role-coded ids: ceo-001, cto-003
    re.compile(r"\b([a-z]{2,4})-(\d{3})\b", re.IGNORECASE),
    # routed ids: TASK-2026-1017-001
    re.compile(r"\b(TASK-\d{4}-\d{4}-\d{3})\b", re.IGNORECASE),
    re.compile(r"\btask[_-]?id:\s*([a-f0-9-]{36})\b", re.IGNORECASE),
)

DEFAULT_KNOWN_WORKFLOWS: tuple[str, ...] = (
    "business number registration",
    "cra payroll registration",
    "company incorporation",
    "bank account setup",
    "payment gateway setup",
    "hosting setup",
    "domain registration",
    "email setup",
    "team onboarding",
    "product launch",
    "security audit",
    "compliance review",
    "budget approval",
    "contract signing",
)

# First matching phrase wins, so table order matters.
PHRASE_TO_ROLE: tuple[tuple[str, str], ...] = (
    ("business number", "ceo"),
    ("bn registration", "ceo"),
    ("corporate registration", "ceo"),
    ("business registration", "ceo"),
    ("company incorporation", "ceo"),
    ("strategic plan", "ceo"),
    ("board approval", "ceo"),
    ("investor", "ceo"),
    ("funding", "ceo"),
    ("partnership", "ceo"),
    ("budget", "cfo"),
    ("financial", "cfo"),
    ("accounting", "cfo"),
    ("expense", "cfo"),
    ("revenue", "cfo"),
    ("forecast", "cfo"),
    ("tax", "cfo"),
    ("audit", "cfo"),
    ("bank account", "cfo"),
    ("payment processing", "cfo"),
    ("hosting", "cto"),
    ("infrastructure", "cto"),
    ("architecture", "cto"),
    ("tech stack", "cto"),
    ("technology", "cto"),
    ("system design", "cto"),
    ("database", "cto"),
    ("server", "cto"),
    ("cloud", "cto"),
    ("aws", "cto"),
    ("railway", "cto"),
    ("vercel", "cto"),
    ("cra payroll", "chro"),
    ("payroll", "chro"),
    ("hiring", "chro"),
    ("recruitment", "chro"),
    ("employee", "chro"),
    ("benefits", "chro"),
    ("hr policy", "chro"),
    ("onboarding", "chro"),
    ("workforce", "chro"),
    ("operations", "coo"),
    ("process", "coo"),
    ("workflow", "coo"),
    ("sop", "coo"),
    ("vendor", "coo"),
    ("supplier", "coo"),
    ("logistics", "coo"),
    ("marketing", "cmo"),
    ("campaign", "cmo"),
    ("brand", "cmo"),
    ("content", "cmo"),
    ("social media", "cmo"),
    ("advertising", "cmo"),
    ("pr", "cmo"),
    ("public relations", "cmo"),
    ("product", "cpo"),
    ("feature", "cpo"),
    ("roadmap", "cpo"),
    ("requirements", "cpo"),
    ("user research", "cpo"),
    ("ux", "cpo"),
    ("user experience", "cpo"),
    ("deploy", "devops"),
    ("ci/cd", "devops"),
    ("pipeline", "devops"),
    ("docker", "devops"),
    ("kubernetes", "devops"),
    ("monitoring", "devops"),
    ("alerting", "devops"),
    ("testing", "qa"),
    ("test", "qa"),
    ("quality", "qa"),
    ("bug", "qa"),
    ("regression", "qa"),
    ("security", "security"),
    ("compliance", "security"),
    ("gdpr", "security"),
    ("privacy", "security"),
    ("access control", "security"),
    ("authentication", "security"),
    ("coordination", "cos"),
    ("document", "cos"),
    ("communication", "cos"),
    ("meeting", "cos"),
    ("schedule", "cos"),
)

_ROLE_TOKEN = re.compile(r"\b(ceo|cfo|cto|coo|cmo|cpo|chro|clo|cco|cro|devops|qa|security|cos)\b")
_QUOTE_CHARS = re.compile("[\"“”']")
_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^a-z0-9\s-]")

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
        "being", "have", "has", "had", "do", "does", "did", "will", "would",
        "could", "should", "may", "might", "must", "shall", "can", "this",
        "that", "these", "those", "it", "its", "first", "complete", "done",
        "finished", "task", "need", "needs", "require", "requires",
    },
)  # fmt: skip

MAX_KEYWORDS = 10
_MIN_CAPTURE_LENGTH = 3
_MIN_KEYWORD_LENGTH = 3
_SHORT_MATCH_LENGTH = 5
_LONG_MATCH_LENGTH = 100
_BLOCKING_TYPES = frozenset(
    {DependencyType.BLOCKED_BY, DependencyType.DEPENDS_ON, DependencyType.REQUIRES},
)
_TASK_ID_CONFIDENCE = 0.95


def normalize_text(text: str) -> str:
    """Lowercase, drop quotes, and collapse whitespace."""

    if not text:
        return ""
    stripped = _QUOTE_CHARS.sub("", text.lower())
    return _WHITESPACE.sub(" ", stripped).strip()


def infer_role(text: str, *, table: Sequence[tuple[str, str]] = PHRASE_TO_ROLE) -> str | None:
    """Most likely owning role for a dependency phrase, or ``None``."""

    if not text:
        return None
    lowered = text.lower()
    for phrase, role in table:
        if phrase in lowered:
            return role
    match = _ROLE_TOKEN.search(lowered)
    return match.group(1) if match else None


def score_confidence(
    raw_match: str,
    dependency_type: str,
    *,
    table: Sequence[tuple[str, str]] = PHRASE_TO_ROLE,
) -> float:
    """Deterministic confidence heuristic clamped to [0, 1]."""

    confidence = 0.5
    if dependency_type in _BLOCKING_TYPES:
        confidence += 0.2
    if dependency_type == DependencyType.TASK_ID_REFERENCE:
        confidence = _TASK_ID_CONFIDENCE
    if dependency_type == DependencyType.WORKFLOW_REFERENCE:
        confidence += 0.15
    if infer_role(raw_match, table=table):
        confidence += 0.1
    if len(raw_match) < _SHORT_MATCH_LENGTH:
        confidence -= 0.2
    if len(raw_match) > _LONG_MATCH_LENGTH:
        confidence -= 0.1
    return max(0.0, min(1.0, confidence))


def extract_keywords(text: str) -> list[str]:
    """Up to ten meaningful lowercase words from ``text``."""

    if not text:
        return []
    words = _NON_WORD.sub(" ", text.lower()).split()
    return [
        word for word in words if len(word) >= _MIN_KEYWORD_LENGTH and word not in STOP_WORDS
    ][:MAX_KEYWORDS]


class DependencyExtractor:
    """Scan task text with an ordered ruleset and emit dependency hints."""

    def __init__(
        self,
        *,
        phrase_rules: Sequence[PhraseRule] = DEFAULT_PHRASE_RULES,
        task_id_patterns: Sequence[re.Pattern[str]] = DEFAULT_TASK_ID_PATTERNS,
        known_workflows: Sequence[str] = DEFAULT_KNOWN_WORKFLOWS,
        role_table: Sequence[tuple[str, str]] = PHRASE_TO_ROLE,
    ) -> None:
        self.phrase_rules = tuple(phrase_rules)
        self.task_id_patterns = tuple(task_id_patterns)
        self.known_workflows = tuple(known_workflows)
        self.role_table = tuple(role_table)

    def with_rule(self, rule: PhraseRule, *, position: int | None = None) -> DependencyExtractor:
        """Copy of this extractor with one more phrase rule."""

        rules = list(self.phrase_rules)
        if position is None:
            rules.append(rule)
        else:
            rules.insert(position, rule)
        return DependencyExtractor(
            phrase_rules=rules,
            task_id_patterns=self.task_id_patterns,
            known_workflows=self.known_workflows,
            role_table=self.role_table,
        )

    def extract(self, task: TaskDocument) -> list[DependencyHint]:
        """Return deduplicated hints found in the task's free-text fields."""

        full_text = " ".join(task.text_sources())
        if not full_text.strip():
            return []

        hints: list[DependencyHint] = []
        seen: set[str] = set()

        def _add(hint: DependencyHint) -> None:
            key = hint.raw_match.lower()
            if key in seen:
                return
            seen.add(key)
            hints.append(hint)

        for rule in self.phrase_rules:
            for match in rule.pattern.finditer(full_text):
                raw = (match.group(1) or "").strip()
                if len(raw) >= _MIN_CAPTURE_LENGTH:
                    _add(self.make_hint(raw, rule.dependency_type, task.task_id))

        own_id = task.task_id.lower()
        for pattern in self.task_id_patterns:
            for match in pattern.finditer(full_text):
                reference = match.group(0)
                if reference.lower() == own_id:
                    continue
                hint = self.make_hint(reference, DependencyType.TASK_ID_REFERENCE, task.task_id)
                hint.is_explicit_task_id = True
                _add(hint)

        lowered = full_text.lower()
        for workflow in self.known_workflows:
            name = workflow.lower()
            if name not in lowered:
                continue
            if any(name in hint.raw_match.lower() for hint in hints):
                continue
            hint = self.make_hint(workflow, DependencyType.WORKFLOW_REFERENCE, task.task_id)
            hint.is_workflow_reference = True
            hints.append(hint)
            seen.add(workflow.lower())

        logger.debug("Extracted %d dependency hints from task %s", len(hints), task.task_id)
        return hints

    def make_hint(self, raw_match: str, dependency_type: str, source_task_id: str) -> DependencyHint:
        return DependencyHint(
            raw_match=raw_match,
            dependency_type=dependency_type,
            source_task_id=source_task_id,
            normalized_text=normalize_text(raw_match),
            inferred_role=infer_role(raw_match, table=self.role_table),
            confidence=score_confidence(raw_match, dependency_type, table=self.role_table),
            keywords=extract_keywords(raw_match),
        )
