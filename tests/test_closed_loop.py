from __future__ import annotations

import json

import allure
import pytest

from agent_loop.closed_loop import evaluation_from_payload
from agent_loop.errors import ValidationFailedError
from agent_loop.jobs.models import CLOSED_LOOP_QUEUE, JobStatus
from agent_loop.models import (
    AgentContext,
    ClosedLoopStatus,
    ProjectSettings,
    RunStatus,
)

pytestmark = [
    allure.epic("Quality Loop"),
    allure.feature("Closed Loop"),
]

EVALUATOR = "expert evaluator"
EDITOR = "senior editor"


def _design_scores(level: float) -> str:
    return json.dumps(
        {
            "scores": {
                "completeness": level * 100,
                "clarity": level * 100,
                "feasibility": level,
                "safety": level,
            },
            "reasoning": f"scored {level}",
        },
    )


FIX_REPLY = json.dumps(
    {
        "fixedOutput": "## Spec\nImproved draft",
        "fixNotes": "Add data entities and workflows",
        "diffSummary": "Expanded spec",
    },
)


def _enable(runtime, *, max_iterations: int = 3) -> None:
    runtime.repository.upsert_project_settings(
        ProjectSettings(project_id="p1", closed_loop_mode=True, max_iterations=max_iterations),
    )


def _start(runtime) -> str:
    return runtime.runner.run_agent_with_persistence(
        "design_spec",
        AgentContext(user_id="u1", project_id="p1", extra={"prompt": "A CRM for florists"}),
    ).run_id


def _drain(runtime):
    return runtime.worker(CLOSED_LOOP_QUEUE, concurrency=1).run_loop(max_idle_polls=1)


def test_low_score_is_fixed_and_rerun_until_good(runtime, llm) -> None:
    _enable(runtime)
    llm.on(EVALUATOR, _design_scores(0.5), _design_scores(0.75))
    llm.on(EDITOR, FIX_REPLY)
    root_id = _start(runtime)

    summary = _drain(runtime)

    assert summary.processed == 3
    assert summary.failed == 0
    chain = runtime.repository.run_chain(run_id=root_id)
    assert len(chain) == 2
    root, child = chain
    assert child.parent_run_id == root_id
    assert child.iteration_count == 1
    assert child.status == RunStatus.SUCCEEDED
    assert child.closed_loop_status == ClosedLoopStatus.COMPLETED
    assert root.closed_loop_status == ClosedLoopStatus.COMPLETED
    assert runtime.repository.latest_evaluation(run_id=root_id).overall == pytest.approx(0.5)
    child_evaluation = runtime.repository.latest_evaluation(run_id=child.run_id)
    assert child_evaluation.overall == pytest.approx(0.75)
    assert child_evaluation.needs_fix is False

    assert child.context.extra["previous_output"] == "## Spec\nImproved draft"
    assert child.context.extra["correction_instruction"] == "Add data entities and workflows"
    assert child.context.extra["feedback"] == "scored 0.5"
    assert child.context.extra["prompt"] == "A CRM for florists"
    [fix] = runtime.repository.list_fixes(run_id=root_id)
    assert fix.eval_score_before == pytest.approx(0.5)

    rerun_prompt = llm.calls_for("expert product designer")[1].messages[1].content
    assert "Revision request: Add data entities and workflows" in rerun_prompt
    assert "Improved draft" in rerun_prompt


def test_good_first_run_completes_without_fix(runtime, llm) -> None:
    _enable(runtime)
    llm.on(EVALUATOR, _design_scores(0.9))
    root_id = _start(runtime)

    _drain(runtime)

    assert runtime.repository.require_run(run_id=root_id).closed_loop_status == (
        ClosedLoopStatus.COMPLETED
    )
    assert runtime.repository.list_child_runs(run_id=root_id) == []
    assert llm.calls_for(EDITOR) == []


def test_loop_stops_at_max_iterations(runtime, llm) -> None:
    _enable(runtime, max_iterations=2)
    llm.on(EVALUATOR, _design_scores(0.3))
    llm.on(EDITOR, FIX_REPLY)
    root_id = _start(runtime)

    _drain(runtime)

    chain = runtime.repository.run_chain(run_id=root_id)
    assert [run.iteration_count for run in chain] == [0, 1, 2]
    assert [run.closed_loop_status for run in chain] == [
        ClosedLoopStatus.COMPLETED,
        ClosedLoopStatus.COMPLETED,
        ClosedLoopStatus.MAX_ITERATIONS_REACHED,
    ]
    assert len(llm.calls_for(EDITOR)) == 2


def test_zero_max_iterations_never_fixes(runtime, llm) -> None:
    _enable(runtime, max_iterations=0)
    llm.on(EVALUATOR, _design_scores(0.3))
    root_id = _start(runtime)

    _drain(runtime)

    run = runtime.repository.require_run(run_id=root_id)
    assert run.closed_loop_status == ClosedLoopStatus.MAX_ITERATIONS_REACHED
    assert runtime.queue.list_jobs(CLOSED_LOOP_QUEUE, job_name="auto_fix") == []


def test_fix_failure_marks_loop_failed_after_retries(runtime, llm) -> None:
    _enable(runtime)
    llm.on(EVALUATOR, _design_scores(0.4))
    llm.on(EDITOR, "no json at all")
    root_id = _start(runtime)

    _drain(runtime)

    run = runtime.repository.require_run(run_id=root_id)
    assert run.status == RunStatus.SUCCEEDED
    assert run.closed_loop_status == ClosedLoopStatus.FAILED
    [job] = runtime.queue.list_jobs(CLOSED_LOOP_QUEUE, job_name="auto_fix")
    assert job.status == JobStatus.FAILED
    assert job.attempt == runtime.settings.queue.attempts
    assert "AutoFixParseFailedError" in (job.last_error or "")
    assert runtime.repository.list_child_runs(run_id=root_id) == []


def test_failed_child_run_fails_the_loop(runtime, llm) -> None:
    _enable(runtime)
    llm.on(EVALUATOR, _design_scores(0.4))
    llm.on(EDITOR, FIX_REPLY)
    root_id = _start(runtime)
    llm.on("expert product designer", RuntimeError("model crashed"))

    _drain(runtime)

    children = runtime.repository.list_child_runs(run_id=root_id)
    assert len(children) == runtime.settings.queue.attempts
    assert {child.status for child in children} == {RunStatus.FAILED}
    assert {child.closed_loop_status for child in children} == {ClosedLoopStatus.FAILED}
    root = runtime.repository.require_run(run_id=root_id)
    assert root.closed_loop_status == ClosedLoopStatus.FAILED


def test_evaluating_an_unsuccessful_run_is_skipped(runtime) -> None:
    run = runtime.repository.create_run(agent_name="design_spec", context=AgentContext(user_id="u1"))
    runtime.repository.transition_run(run_id=run.run_id, status=RunStatus.FAILED)

    outcome = runtime.closed_loop.evaluate_run(
        run_id=run.run_id,
        project_id=None,
        user_id="u1",
        iteration_count=0,
    )

    assert outcome == {"action": "skipped", "run_status": "failed"}
    stored = runtime.repository.require_run(run_id=run.run_id)
    assert stored.closed_loop_status == ClosedLoopStatus.FAILED
    assert runtime.repository.latest_evaluation(run_id=run.run_id) is None


def test_invalid_job_payload_is_not_retried(runtime) -> None:
    job = runtime.queue.enqueue(CLOSED_LOOP_QUEUE, "evaluate_run", {"user_id": "u1"})

    summary = _drain(runtime)

    assert summary.failed == 1
    stored = runtime.queue.get(job.job_id)
    assert stored.status == JobStatus.FAILED
    assert stored.attempt == 1


def test_max_iterations_defaults_without_project_settings(runtime) -> None:
    assert runtime.closed_loop.max_iterations(None) == 3
    assert runtime.closed_loop.max_iterations("unknown") == 3
    _enable(runtime, max_iterations=0)
    assert runtime.closed_loop.max_iterations("p1") == 0


def test_needs_fix_enqueues_auto_fix_with_evaluation(runtime, llm) -> None:
    llm.on(EVALUATOR, _design_scores(0.5))
    run_id = _start(runtime)

    outcome = runtime.closed_loop.evaluate_run(
        run_id=run_id,
        project_id="p1",
        user_id="u1",
        iteration_count=0,
    )

    assert outcome == {"action": "evaluated", "needs_fix": True}
    assert runtime.repository.require_run(run_id=run_id).closed_loop_status == (
        ClosedLoopStatus.IN_PROGRESS
    )
    [job] = runtime.queue.list_jobs(CLOSED_LOOP_QUEUE, job_name="auto_fix")
    assert job.payload["iteration_count"] == 0
    restored = evaluation_from_payload(job.payload["evaluation"], run_id=run_id)
    stored = runtime.repository.latest_evaluation(run_id=run_id)
    assert restored.evaluation_id == stored.evaluation_id
    assert restored.metric_scores == stored.metric_scores
    assert restored.overall == pytest.approx(0.5)
    assert restored.notes == "scored 0.5"


def test_malformed_evaluation_payload_is_rejected() -> None:
    with pytest.raises(ValidationFailedError):
        evaluation_from_payload({"overall": "high"}, run_id="r1")
    with pytest.raises(ValidationFailedError):
        evaluation_from_payload({"overall": 0.4, "metric_scores": []}, run_id="r1")
