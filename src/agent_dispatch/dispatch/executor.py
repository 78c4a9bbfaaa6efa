"""Contract between the scheduler and whatever performs an agent's work."""

from __future__ import annotations

import json
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_dispatch.dispatch.models import BlockerInfo, TaskView

_STDERR_TAIL = 500


@dataclass(slots=True)
class ExecutionResult:
    """Either completed outputs or a blocker; never both."""

    outputs: dict[str, Any] = field(default_factory=dict)
    blocker: BlockerInfo | None = None

    @classmethod
    def completed(cls, outputs: dict[str, Any] | None = None) -> ExecutionResult:
        return cls(outputs=dict(outputs or {}))

    @classmethod
    def blocked(cls, blocker: BlockerInfo) -> ExecutionResult:
        return cls(blocker=blocker)

    @property
    def is_blocked(self) -> bool:
        return self.blocker is not None


class Executor(Protocol):
    """Runs one task for an agent.

    Called at most once per tick per task. Raising any exception counts as a
    failed attempt and drives the retry policy.
    """

    def execute(self, task: TaskView) -> ExecutionResult: ...


class ExecutorError(RuntimeError):
    """Executor attempt failed; the scheduler counts it toward the retry limit."""


class CommandExecutor:
    """Run a shell command template per task and read the result from stdout.

    The task is written to stdin as JSON. Stdout may be a JSON object with
    ``status`` ``"blocked"`` and a ``blocker`` (``{"type": ..., "payload": ...}``),
    or ``"completed"`` with ``outputs``; any other stdout is kept verbatim as
    the ``stdout`` output. A non-zero exit code raises ``ExecutorError``.
    """

    def __init__(self, command_template: str, *, timeout_seconds: float | None = None) -> None:
        if not command_template.strip():
            raise ValueError("Executor command template must not be empty.")
        self.command_template = command_template.strip()
        self.timeout_seconds = timeout_seconds or None

    def execute(self, task: TaskView) -> ExecutionResult:
        argv = self._build_argv(task)
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                input=json.dumps(task_payload(task), ensure_ascii=False),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise ExecutorError(f"Executor command not found: {argv[0]}") from error
        except subprocess.TimeoutExpired as error:
            raise ExecutorError(
                f"Executor timed out after {self.timeout_seconds:g}s (task_id={task.task_id})",
            ) from error
        if completed.returncode != 0:
            raise ExecutorError(
                f"Executor exited with code {completed.returncode}: "
                f"{completed.stderr.strip()[-_STDERR_TAIL:]}",
            )
        return parse_executor_output(completed.stdout)

    def _build_argv(self, task: TaskView) -> list[str]:
        try:
            rendered = self.command_template.format(
                task_id=shlex.quote(task.task_id),
                agent=shlex.quote(task.assigned_agent or ""),
            )
        except KeyError as error:
            raise ExecutorError(f"Unsupported command template placeholder: {error}") from error
        argv = shlex.split(rendered)
        if not argv:
            raise ExecutorError("Executor command template rendered empty command.")
        return argv


def task_payload(task: TaskView) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "title": task.title,
        "description": task.description,
        "notes": task.notes,
        "agent": task.assigned_agent,
        "team": task.team,
        "workflow": task.workflow,
        "tags": list(task.tags),
        "keywords": list(task.keywords),
        "priority": task.priority,
        "retry_count": task.retry_count,
        "metadata": task.metadata,
    }


def parse_executor_output(stdout: str) -> ExecutionResult:
    text = stdout.strip()
    try:
        parsed = json.loads(text) if text else {}
    except ValueError:
        return ExecutionResult.completed({"stdout": text})
    if not isinstance(parsed, dict):
        return ExecutionResult.completed({"stdout": text})
    if parsed.get("status") == "blocked":
        blocker = parsed.get("blocker")
        if not isinstance(blocker, dict):
            raise ExecutorError("Blocked executor result is missing a blocker object.")
        try:
            return ExecutionResult.blocked(BlockerInfo.from_dict(blocker))
        except ValueError as error:
            raise ExecutorError(str(error)) from error
    outputs = parsed.get("outputs")
    return ExecutionResult.completed(outputs if isinstance(outputs, dict) else parsed)
