"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_dispatch.dispatch.repository import TaskRepository

_ENV_KEYS = (
    "AGENTS",
    "EXECUTOR_COMMAND",
    "EXECUTOR_TIMEOUT_SECONDS",
    "MAX_RETRY_COUNT",
    "RETRY_BASE_SECONDS",
    "POLL_INTERVAL_SECONDS",
    "STALE_AFTER_HOURS",
    "MAX_ACTIVE_PER_AGENT",
    "MAX_QUEUED_PER_AGENT",
    "FALLBACK_AGENT",
)


@pytest.fixture(autouse=True)
def _clean_dispatch_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's shell configuration out of the tests."""

    for key in _ENV_KEYS:
        monkeypatch.delenv(f"AGENT_DISPATCH_{key}", raising=False)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "dispatch.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()
