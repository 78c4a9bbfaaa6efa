from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_dispatch.config import ExecutionSettings, ExtractionSettings, RoutingSettings, Settings

pytestmark = [
    allure.epic("Agent Dispatch"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults_without_overrides() -> None:
    settings = Settings.from_env(db_path=Path("x.db"))

    assert settings.db_path == Path("x.db")
    assert settings.execution.max_retry_count == 3
    assert settings.execution.retry_base_seconds == 1.0
    assert settings.resolution.stale_after_hours == 24.0
    assert settings.routing.max_active_per_agent == 1
    assert settings.routing.max_queued_per_agent == 10
    assert settings.routing.fallback_agent == "cos"
    settings.validate()


def test_from_env_reads_prefixed_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_MAX_RETRY_COUNT", "5")
    monkeypatch.setenv("AGENT_DISPATCH_STALE_AFTER_HOURS", "6.5")
    monkeypatch.setenv("AGENT_DISPATCH_AGENTS", " CTO, web_dev_lead,cto ,, ")
    monkeypatch.setenv("AGENT_DISPATCH_FALLBACK_AGENT", " COO ")
    monkeypatch.setenv("AGENT_DISPATCH_EXECUTOR_COMMAND", "  run-agent {agent}  ")

    settings = Settings.from_env()

    assert settings.execution.max_retry_count == 5
    assert settings.resolution.stale_after_hours == 6.5
    assert settings.execution.agents == ("cto", "web_dev_lead")
    assert settings.routing.fallback_agent == "coo"
    assert settings.execution.executor_command == "run-agent {agent}"


def test_from_env_rejects_invalid_integer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_MAX_RETRY_COUNT", "three")

    with pytest.raises(ValueError, match="Invalid integer value for AGENT_DISPATCH_MAX_RETRY_COUNT"):
        Settings.from_env()


def test_validate_rejects_zero_retry_limit() -> None:
    settings = Settings(execution=ExecutionSettings(max_retry_count=0))

    with pytest.raises(ValueError, match="MAX_RETRY_COUNT"):
        settings.validate()


def test_validate_rejects_out_of_range_thresholds() -> None:
    with pytest.raises(ValueError, match="MIN_MATCH_SCORE"):
        Settings(extraction=ExtractionSettings(min_match_score=1.5)).validate()
    with pytest.raises(ValueError, match="FALLBACK_AGENT"):
        Settings(routing=RoutingSettings(fallback_agent="")).validate()
