from pathlib import Path

import allure
from sqlalchemy import inspect, text

from tryon_studio.orchestrator.repository import TaskRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == "20261001_0001"

    inspector = inspect(repository.engine)
    assert {"users", "assets", "tryon_tasks", "tryon_task_events"} <= set(
        inspector.get_table_names(),
    )
    task_columns = {column["name"] for column in inspector.get_columns("tryon_tasks")}
    assert {"version", "external_job_id", "retry_count", "is_deleted"} <= task_columns
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "twice.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        rows = connection.execute(text("SELECT COUNT(*) FROM alembic_version")).scalar_one()
    assert rows == 1
    repository.close()
