from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_loop.errors import RunNotFoundError, ValidationFailedError
from agent_loop.models import (
    AgentConfiguration,
    AgentContext,
    ClosedLoopStatus,
    EvaluationResult,
    ProjectSettings,
    RunLineage,
    RunStatus,
)
from agent_loop.repository import AgentRepository

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Persistence"),
]


@pytest.fixture()
def repository(tmp_path: Path):
    repository = AgentRepository(db_path=tmp_path / "repository.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _config(version: int, *, temperature: float = 0.7) -> AgentConfiguration:
    return AgentConfiguration(
        agent_name="design_spec",
        prompt_template=f"prompt v{version}",
        temperature=temperature,
        max_tokens=2000,
        tool_config={"search": version > 1},
        version=version,
        is_active=True,
    )


def test_create_run_stores_context_and_starts_pending(repository: AgentRepository) -> None:
    run = repository.create_run(
        agent_name="design_spec",
        context=AgentContext(
            user_id="u1",
            project_id="p1",
            wizard_answers={"industry": "florists"},
            extra={"prompt": "CRM"},
        ),
    )

    stored = repository.require_run(run_id=run.run_id)
    assert stored.status == RunStatus.PENDING
    assert stored.closed_loop_status == ClosedLoopStatus.NONE
    assert stored.iteration_count == 0
    assert stored.parent_run_id is None
    assert stored.context.wizard_answers == {"industry": "florists"}
    assert stored.context.extra == {"prompt": "CRM"}
    assert stored.context.run_id == run.run_id


def test_lifecycle_transitions_only_move_forward(repository: AgentRepository) -> None:
    run = repository.create_run(agent_name="design_spec", context=AgentContext(user_id="u1"))

    with pytest.raises(ValidationFailedError, match="Illegal run transition pending -> succeeded"):
        repository.transition_run(run_id=run.run_id, status=RunStatus.SUCCEEDED)

    repository.transition_run(run_id=run.run_id, status=RunStatus.RUNNING)
    with pytest.raises(ValidationFailedError):
        repository.transition_run(run_id=run.run_id, status=RunStatus.RUNNING)
    repository.transition_run(run_id=run.run_id, status=RunStatus.FAILED, error_summary="boom")

    stored = repository.require_run(run_id=run.run_id)
    assert stored.status == RunStatus.FAILED
    assert stored.error_summary == "boom"
    assert stored.started_at is not None
    assert stored.finished_at is not None

    with pytest.raises(ValidationFailedError, match="cannot transition to pending"):
        repository.transition_run(run_id=run.run_id, status=RunStatus.PENDING)


def test_transition_of_missing_run_raises_not_found(repository: AgentRepository) -> None:
    with pytest.raises(RunNotFoundError):
        repository.transition_run(run_id="missing", status=RunStatus.RUNNING)
    with pytest.raises(RunNotFoundError):
        repository.set_closed_loop_status(run_id="missing", status=ClosedLoopStatus.FAILED)


def test_run_chain_follows_lineage_from_any_member(repository: AgentRepository) -> None:
    root = repository.create_run(agent_name="design_spec", context=AgentContext(user_id="u1"))
    child = repository.create_run(
        agent_name="design_spec",
        context=AgentContext(user_id="u1"),
        lineage=RunLineage(parent_run_id=root.run_id, iteration_count=1),
    )
    grandchild = repository.create_run(
        agent_name="design_spec",
        context=AgentContext(user_id="u1"),
        lineage=RunLineage(parent_run_id=child.run_id, iteration_count=2),
    )

    expected = [root.run_id, child.run_id, grandchild.run_id]
    assert [run.run_id for run in repository.run_chain(run_id=child.run_id)] == expected
    assert [run.iteration_count for run in repository.run_chain(run_id=grandchild.run_id)] == [
        0,
        1,
        2,
    ]


def test_activating_config_keeps_single_active_version(repository: AgentRepository) -> None:
    repository.activate_config_version(
        config=_config(1),
        audit_event_type="config_seeded",
        audit_metadata={"version": 1},
    )
    repository.activate_config_version(
        config=_config(2, temperature=0.3),
        audit_event_type="agent_self_repair",
        audit_metadata={"version": 2},
        project_id="p1",
    )

    active = repository.get_active_config(agent_name="design_spec")
    assert active is not None
    assert active.version == 2
    assert active.temperature == 0.3
    assert active.tool_config == {"search": True}
    assert [(item.version, item.is_active) for item in repository.list_configs(
        agent_name="design_spec",
    )] == [(1, False), (2, True)]
    [event] = repository.list_audit_events(event_type="agent_self_repair")
    assert event.project_id == "p1"
    assert event.severity == "warning"
    assert event.metadata == {"version": 2}


def test_final_scores_are_appended_not_overwritten(repository: AgentRepository) -> None:
    run = repository.create_run(agent_name="design_spec", context=AgentContext(user_id="u1"))
    evaluation = repository.save_evaluation(
        EvaluationResult(
            run_id=run.run_id,
            user_id="u1",
            project_id=None,
            task_type="design_spec",
            metric_scores={"clarity": 80.0},
            overall=0.8,
            needs_fix=False,
            notes="fine",
        ),
    )

    repository.append_final_score(evaluation=evaluation, human_rating=5, final_score=0.86)
    repository.append_final_score(evaluation=evaluation, human_rating=1, final_score=0.56)

    scores = repository.list_final_scores(run_id=run.run_id)
    assert [(item.human_rating, item.final_score) for item in scores] == [(5, 0.86), (1, 0.56)]
    stored = repository.latest_evaluation(run_id=run.run_id)
    assert stored is not None
    assert stored.overall == 0.8
    assert stored.metric_scores == {"clarity": 80.0}


def test_project_settings_upsert(repository: AgentRepository) -> None:
    assert repository.get_project_settings(project_id="p1") is None

    repository.upsert_project_settings(
        ProjectSettings(project_id="p1", closed_loop_mode=True, max_iterations=2),
    )
    repository.upsert_project_settings(
        ProjectSettings(project_id="p1", closed_loop_mode=False, max_iterations=0),
    )

    assert repository.get_project_settings(project_id="p1") == ProjectSettings(
        project_id="p1",
        closed_loop_mode=False,
        max_iterations=0,
    )
    with pytest.raises(ValidationFailedError):
        repository.upsert_project_settings(
            ProjectSettings(project_id="p1", closed_loop_mode=True, max_iterations=-1),
        )
