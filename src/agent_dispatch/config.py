"""Runtime configuration for routing, execution, and resolution loops."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "AGENT_DISPATCH_"


@dataclass(slots=True)
class ExecutionSettings:
    """Per-agent scheduling loop settings."""

    poll_interval_seconds: float = 5.0
    max_retry_count: int = 3
    retry_base_seconds: float = 1.0
    agents: tuple[str, ...] = ()
    executor_command: str = ""
    executor_timeout_seconds: float = 0.0


@dataclass(slots=True)
class ResolutionSettings:
    """Background resolution job settings."""

    dependency_interval_seconds: float = 30.0
    escalation_interval_seconds: float = 3_600.0
    stale_after_hours: float = 24.0


@dataclass(slots=True)
class RoutingSettings:
    """Capacity ceilings and catch-all role for the router."""

    max_active_per_agent: int = 1
    max_queued_per_agent: int = 10
    fallback_agent: str = "cos"


@dataclass(slots=True)
class ExtractionSettings:
    """Thresholds used when materializing dependency edges from text."""

    min_hint_confidence: float = 0.5
    min_match_score: float = 0.4
    max_matches: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_dispatch.db")
    sqlite_busy_timeout_ms: int = 5_000
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    resolution: ResolutionSettings = field(default_factory=ResolutionSettings)
    routing: RoutingSettings = field(default_factory=RoutingSettings)
    extraction: ExtractionSettings = field(default_factory=ExtractionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".agent_dispatch.db")),
            sqlite_busy_timeout_ms=_env_int("SQLITE_BUSY_TIMEOUT_MS", 5_000),
            execution=ExecutionSettings(
                poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 5.0),
                max_retry_count=_env_int("MAX_RETRY_COUNT", 3),
                retry_base_seconds=_env_float("RETRY_BASE_SECONDS", 1.0),
                agents=_env_csv("AGENTS"),
                executor_command=_env("EXECUTOR_COMMAND", "").strip(),
                executor_timeout_seconds=_env_float("EXECUTOR_TIMEOUT_SECONDS", 0.0),
            ),
            resolution=ResolutionSettings(
                dependency_interval_seconds=_env_float("DEPENDENCY_INTERVAL_SECONDS", 30.0),
                escalation_interval_seconds=_env_float("ESCALATION_INTERVAL_SECONDS", 3_600.0),
                stale_after_hours=_env_float("STALE_AFTER_HOURS", 24.0),
            ),
            routing=RoutingSettings(
                max_active_per_agent=_env_int("MAX_ACTIVE_PER_AGENT", 1),
                max_queued_per_agent=_env_int("MAX_QUEUED_PER_AGENT", 10),
                fallback_agent=_env("FALLBACK_AGENT", "cos").strip().lower(),
            ),
            extraction=ExtractionSettings(
                min_hint_confidence=_env_float("MIN_HINT_CONFIDENCE", 0.5),
                min_match_score=_env_float("MIN_MATCH_SCORE", 0.4),
                max_matches=_env_int("MAX_MATCHES", 3),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError(f"{ENV_PREFIX}SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.execution.poll_interval_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}POLL_INTERVAL_SECONDS must be >= 0.")
        if self.execution.max_retry_count < 1:
            raise ValueError(f"{ENV_PREFIX}MAX_RETRY_COUNT must be >= 1.")
        if self.execution.retry_base_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}RETRY_BASE_SECONDS must be >= 0.")
        if self.execution.executor_timeout_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}EXECUTOR_TIMEOUT_SECONDS must be >= 0.")
        if self.resolution.dependency_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}DEPENDENCY_INTERVAL_SECONDS must be > 0.")
        if self.resolution.escalation_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}ESCALATION_INTERVAL_SECONDS must be > 0.")
        if self.resolution.stale_after_hours <= 0:
            raise ValueError(f"{ENV_PREFIX}STALE_AFTER_HOURS must be > 0.")
        if self.routing.max_active_per_agent < 0 or self.routing.max_queued_per_agent < 0:
            raise ValueError("Routing capacity ceilings must be >= 0.")
        if not self.routing.fallback_agent:
            raise ValueError(f"{ENV_PREFIX}FALLBACK_AGENT must not be empty.")
        for name, value in (
            ("MIN_HINT_CONFIDENCE", self.extraction.min_hint_confidence),
            ("MIN_MATCH_SCORE", self.extraction.min_match_score),
        ):
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{ENV_PREFIX}{name} must be within [0, 1], got {value!r}.")
        if self.extraction.max_matches <= 0:
            raise ValueError(f"{ENV_PREFIX}MAX_MATCHES must be a positive integer.")


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(f"{ENV_PREFIX}{name}", "").strip()
    if not raw:
        return ()
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip().lower()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        values.append(normalized)
    return tuple(values)
