from __future__ import annotations

import allure
import pytest

from agent_dispatch.dependencies.extractor import (
    MAX_KEYWORDS,
    DependencyExtractor,
    PhraseRule,
    extract_keywords,
    infer_role,
    normalize_text,
    score_confidence,
)
from agent_dispatch.dependencies.models import DependencyType, TaskDocument

pytestmark = [
    allure.epic("Dependency Analysis"),
    allure.feature("Hint Extraction"),
]


def test_requires_phrase_yields_ceo_hint_for_business_number() -> None:
    task = TaskDocument(
        task_id="cto-002",
        title="Set up payroll integration",
        description="Requires Business Number registration to complete first",
    )

    hints = DependencyExtractor().extract(task)

    assert len(hints) == 1
    hint = hints[0]
    assert hint.dependency_type == DependencyType.REQUIRES
    assert hint.raw_match == "Business Number registration to complete first"
    assert hint.inferred_role == "ceo"
    assert hint.confidence == pytest.approx(0.8)
    assert hint.source_task_id == "cto-002"
    assert hint.keywords == ["business", "number", "registration"]
    assert not hint.is_explicit_task_id


def test_routed_task_id_reference_is_explicit_with_high_confidence() -> None:
    task = TaskDocument(task_id="cmo-004", notes="Reuse the copy from TASK-2026-1017-001 output")

    hints = DependencyExtractor().extract(task)

    assert [hint.raw_match for hint in hints] == ["TASK-2026-1017-001"]
    assert hints[0].dependency_type == DependencyType.TASK_ID_REFERENCE
    assert hints[0].is_explicit_task_id
    assert hints[0].confidence == pytest.approx(0.95)


def test_own_task_id_is_not_reported_as_dependency() -> None:
    task = TaskDocument(task_id="cto-003", description="Tracking note for cto-003")

    assert DependencyExtractor().extract(task) == []


def test_workflow_mention_becomes_workflow_reference() -> None:
    task = TaskDocument(task_id="cfo-007", description="Part of the bank account setup effort")

    hints = DependencyExtractor().extract(task)

    assert len(hints) == 1
    assert hints[0].dependency_type == DependencyType.WORKFLOW_REFERENCE
    assert hints[0].raw_match == "bank account setup"
    assert hints[0].is_workflow_reference
    assert hints[0].inferred_role == "cfo"
    assert hints[0].confidence == pytest.approx(0.75)


def test_duplicate_phrases_are_reported_once() -> None:
    task = TaskDocument(
        task_id="devops-1",
        description="Blocked by hosting setup.",
        notes="Still blocked by Hosting Setup.",
    )

    hints = DependencyExtractor().extract(task)

    assert [hint.raw_match.lower() for hint in hints] == ["hosting setup"]
    assert hints[0].dependency_type == DependencyType.BLOCKED_BY


def test_metadata_dependency_notes_are_scanned() -> None:
    task = TaskDocument(
        task_id="qa-9",
        metadata={"dependency_notes": "Waiting for staging database migration"},
    )

    hints = DependencyExtractor().extract(task)

    assert len(hints) == 1
    assert hints[0].dependency_type == DependencyType.WAITING_FOR
    assert hints[0].inferred_role == "cto"


def test_empty_text_yields_no_hints() -> None:
    assert DependencyExtractor().extract(TaskDocument(task_id="cos-1")) == []


def test_custom_phrase_rule_is_added_without_touching_defaults() -> None:
    base = DependencyExtractor()
    extended = base.with_rule(
        PhraseRule.compile(DependencyType.AFTER_COMPLETION, r"follows\s+([a-z ]+?)\s+sign-off"),
    )
    task = TaskDocument(task_id="coo-2", description="Rollout follows vendor contract sign-off")

    assert base.extract(task) == []
    hints = extended.extract(task)
    assert [hint.raw_match for hint in hints] == ["vendor contract"]
    assert hints[0].inferred_role == "coo"


@pytest.mark.parametrize(
    ("raw", "dependency_type", "expected"),
    [
        ("ab", DependencyType.BLOCKED_BY, 0.5),
        ("marketing launch plan", DependencyType.WAITING_FOR, 0.6),
        ("x" * 120, DependencyType.DEPENDS_ON, 0.6),
        ("cto-001", DependencyType.TASK_ID_REFERENCE, 1.0),
    ],
)
def test_score_confidence_stays_in_unit_interval(
    raw: str,
    dependency_type: str,
    expected: float,
) -> None:
    score = score_confidence(raw, dependency_type)

    assert score == pytest.approx(expected)
    assert 0.0 <= score <= 1.0


def test_infer_role_uses_first_table_phrase_then_role_token() -> None:
    assert infer_role("Finalize payroll for staff") == "chro"
    assert infer_role("Sign-off from the cfo") == "cfo"
    assert infer_role("nothing relevant here") is None
    assert infer_role("") is None


def test_normalize_text_and_keywords() -> None:
    assert normalize_text('  "Hosting   Setup"  ') == "hosting setup"
    words = " ".join(f"word{index}" for index in range(20))

    assert len(extract_keywords(words)) == MAX_KEYWORDS
    assert extract_keywords("the task needs to be done first") == []
