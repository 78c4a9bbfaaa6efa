from pathlib import Path

import allure
from sqlalchemy import inspect, text

from agent_dispatch.dispatch.repository import TaskRepository

pytestmark = [
    allure.epic("Agent Dispatch"),
    allure.feature("Task Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "migrations.db")
    try:
        repository.init_schema()
        with repository.engine.connect() as connection:
            version = connection.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1"),
            ).scalar_one()
        assert version == "20261017_0001"

        tables = set(inspect(repository.engine).get_table_names())
        assert {
            "tasks",
            "task_events",
            "dependency_edges",
            "unresolved_dependency_hints",
            "task_dependencies",
            "decisions",
            "task_id_counters",
        } <= tables
    finally:
        repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = TaskRepository(db_path)
    first.init_schema()
    first.close()

    second = TaskRepository(db_path)
    try:
        second.init_schema()
        assert second.list_tasks() == []
    finally:
        second.close()
