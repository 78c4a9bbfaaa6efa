from __future__ import annotations

import shlex
import sys
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from agent_dispatch.dispatch.executor import (
    CommandExecutor,
    ExecutorError,
    parse_executor_output,
)
from agent_dispatch.dispatch.models import BlockerType, TaskStatus, TaskView

pytestmark = [
    allure.epic("Agent Dispatch"),
    allure.feature("Executor Contract"),
]

_AGENT_SCRIPT = """
import json
import sys

task = json.load(sys.stdin)
if task["title"] == "explode":
    sys.stderr.write("agent crashed")
    sys.exit(3)
if task["title"] == "needs approval":
    print(json.dumps({"status": "blocked", "blocker": {"type": "auth", "payload": {"service": "stripe"}}}))
else:
    print(json.dumps({"status": "completed", "outputs": {"handled": sys.argv[1], "agent": sys.argv[2]}}))
"""


def _task(title: str) -> TaskView:
    now = datetime(2026, 10, 17, tzinfo=UTC)
    return TaskView(
        task_id="TASK-2026-1017-001",
        title=title,
        description="",
        notes="",
        assigned_agent="web_dev_lead",
        team="technology",
        workflow=None,
        tags=[],
        keywords=[],
        priority=50,
        status=TaskStatus.ACTIVE,
        retry_count=0,
        blocker=None,
        escalation_type=None,
        escalation_reason=None,
        not_before=None,
        outputs=None,
        metadata={},
        version=1,
        created_at=now,
        updated_at=now,
    )


@pytest.fixture()
def executor(tmp_path: Path) -> CommandExecutor:
    script = tmp_path / "agent.py"
    script.write_text(_AGENT_SCRIPT, encoding="utf-8")
    template = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{task_id}} {{agent}}"
    return CommandExecutor(template, timeout_seconds=30)


def test_command_executor_reads_outputs_from_stdout(executor: CommandExecutor) -> None:
    result = executor.execute(_task("ship it"))

    assert not result.is_blocked
    assert result.outputs == {"handled": "TASK-2026-1017-001", "agent": "web_dev_lead"}


def test_command_executor_maps_blocked_status(executor: CommandExecutor) -> None:
    result = executor.execute(_task("needs approval"))

    assert result.blocker is not None
    assert result.blocker.blocker_type == BlockerType.AUTH
    assert result.blocker.payload == {"service": "stripe"}


def test_command_executor_raises_on_non_zero_exit(executor: CommandExecutor) -> None:
    with pytest.raises(ExecutorError, match="exited with code 3: agent crashed"):
        executor.execute(_task("explode"))


def test_missing_command_and_bad_template_raise() -> None:
    with pytest.raises(ExecutorError, match="not found"):
        CommandExecutor("definitely-not-a-real-agent-binary {task_id}").execute(_task("x"))
    with pytest.raises(ExecutorError, match="placeholder"):
        CommandExecutor("run {prompt_file}").execute(_task("x"))
    with pytest.raises(ValueError, match="must not be empty"):
        CommandExecutor("   ")


def test_parse_executor_output_variants() -> None:
    assert parse_executor_output("").outputs == {}
    assert parse_executor_output("plain text reply\n").outputs == {"stdout": "plain text reply"}
    assert parse_executor_output('{"url": "https://x"}').outputs == {"url": "https://x"}
    assert parse_executor_output("[1, 2]").outputs == {"stdout": "[1, 2]"}
    with pytest.raises(ExecutorError, match="Unknown blocker type"):
        parse_executor_output('{"status": "blocked", "blocker": {"type": "weather"}}')
    with pytest.raises(ExecutorError, match="missing a blocker"):
        parse_executor_output('{"status": "blocked"}')
