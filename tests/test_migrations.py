from pathlib import Path

import allure
from sqlalchemy import inspect

from agent_loop.repository import AgentRepository
from agent_loop.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Storage"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    assert current_revision(db_path) is None

    repository = AgentRepository(db_path=db_path)
    repository.init_schema()
    repository.init_schema()

    assert current_revision(db_path) == "20261019_0001"
    tables = set(inspect(repository.engine).get_table_names())
    assert {
        "agent_runs",
        "agent_artifacts",
        "agent_evaluations",
        "evaluation_final_scores",
        "user_feedback",
        "agent_fixes",
        "agent_configs",
        "audit_log",
        "project_settings",
        "agent_context_usages",
        "jobs",
    } <= tables
    repository.close()
