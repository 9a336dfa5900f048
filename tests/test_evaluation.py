from __future__ import annotations

import json

import allure
import pytest

from agent_loop.config import DEFAULT_EVAL_MATRIX_PATH
from agent_loop.errors import (
    AllRatersFailedError,
    EvaluationNotFoundError,
    ProviderError,
    ValidationFailedError,
)
from agent_loop.evaluation import (
    EvaluationEngine,
    EvaluationInput,
    FeedbackService,
    load_eval_matrix,
    parse_eval_matrix,
    weighted_overall,
)
from agent_loop.models import AgentContext

pytestmark = [
    allure.epic("Quality Loop"),
    allure.feature("Evaluation"),
]

EVALUATOR = "expert evaluator"


def _matrix(metrics: dict, *, needs_fix: float = 0.6):
    return parse_eval_matrix(
        {
            "version": "test",
            "taskTypes": {"scored": {"description": "test task", "metrics": metrics}},
            "defaultMetrics": metrics,
            "qualityThresholds": {"needs_fix": needs_fix},
        },
    )


SINGLE_METRIC = {"quality": {"weight": 1.0, "description": "overall quality", "scale": "0-1"}}
MIXED_METRICS = {
    "helpfulness": {"weight": 0.4, "description": "helps", "scale": "0-100"},
    "factuality": {"weight": 0.6, "description": "true", "scale": "0-1"},
}


def _scores(**scores: float) -> str:
    return json.dumps({"scores": scores, "reasoning": "looks fine"})


def _engine(runtime, llm, matrix, *, models: tuple[str, ...] = ()) -> EvaluationEngine:
    return EvaluationEngine(
        repository=runtime.repository,
        llm=llm,
        matrix=matrix,
        default_model="judge",
        default_models=models,
    )


def _run_id(runtime, *, project_id: str | None = None) -> str:
    return runtime.repository.create_run(
        agent_name="design_spec",
        context=AgentContext(user_id="u1", project_id=project_id),
    ).run_id


def _input(run_id: str, *, project_id: str | None = None) -> EvaluationInput:
    return EvaluationInput(
        run_id=run_id,
        user_id="u1",
        task_type="scored",
        prompt="Write a spec",
        output="## Spec\nA spec",
        project_id=project_id,
    )


def test_weighted_overall_normalizes_scales() -> None:
    metrics = _matrix(MIXED_METRICS).metrics_for("scored")

    assert weighted_overall(metrics, {"helpfulness": 80, "factuality": 0.9}) == pytest.approx(0.86)
    assert weighted_overall(metrics, {"helpfulness": 250, "factuality": -1}) == pytest.approx(0.4)
    assert weighted_overall((), {}) == 0.5


def test_bundled_matrix_has_defaults_and_threshold() -> None:
    matrix = load_eval_matrix(DEFAULT_EVAL_MATRIX_PATH)

    assert matrix.needs_fix_threshold == 0.6
    assert [metric.name for metric in matrix.metrics_for("design_spec")] == [
        "completeness",
        "clarity",
        "feasibility",
        "safety",
    ]
    assert matrix.metrics_for("unknown_task") == matrix.default_metrics


def test_matrix_rejects_bad_scale() -> None:
    with pytest.raises(ValueError, match="scale must be one of"):
        _matrix({"quality": {"weight": 1, "scale": "1-10"}})


def test_single_rater_persists_weighted_result(runtime, llm) -> None:
    llm.on(EVALUATOR, _scores(helpfulness=80, factuality=0.9))
    run_id = _run_id(runtime)

    result = _engine(runtime, llm, _matrix(MIXED_METRICS)).evaluate_agent_run(_input(run_id))

    assert result.overall == pytest.approx(0.86)
    assert result.needs_fix is False
    assert result.notes == "looks fine"
    assert result.consensus_details is None
    stored = runtime.repository.latest_evaluation(run_id=run_id)
    assert stored is not None
    assert stored.metric_scores == {"helpfulness": 80.0, "factuality": 0.9}
    [request] = llm.calls
    assert request.model == "judge"
    assert request.temperature == 0.1
    assert request.max_tokens == 800


@pytest.mark.parametrize(("score", "needs_fix"), [(0.6, False), (0.599, True)])
def test_needs_fix_threshold_is_exclusive(runtime, llm, score: float, needs_fix: bool) -> None:
    llm.on(EVALUATOR, _scores(quality=score))

    result = _engine(runtime, llm, _matrix(SINGLE_METRIC)).evaluate_agent_run(
        _input(_run_id(runtime)),
    )

    assert result.needs_fix is needs_fix


def test_unparseable_reply_scores_midpoints(runtime, llm) -> None:
    llm.on(EVALUATOR, "I refuse to output JSON today.")

    result = _engine(runtime, llm, _matrix(MIXED_METRICS)).evaluate_agent_run(
        _input(_run_id(runtime)),
    )

    assert result.metric_scores == {"helpfulness": 50.0, "factuality": 0.5}
    assert result.overall == pytest.approx(0.5)
    assert result.needs_fix is True
    assert "could not be parsed" in result.notes


def test_scores_are_clamped_and_missing_metrics_use_midpoint(runtime, llm) -> None:
    llm.on(EVALUATOR, '```json\n{"scores": {"helpfulness": 140}}\n```')

    result = _engine(runtime, llm, _matrix(MIXED_METRICS)).evaluate_agent_run(
        _input(_run_id(runtime)),
    )

    assert result.metric_scores == {"helpfulness": 100.0, "factuality": 0.5}


def test_consensus_averages_successful_raters(runtime, llm) -> None:
    llm.on("judge-a", _scores(helpfulness=80, factuality=0.8))
    llm.on("judge-b", _scores(helpfulness=90, factuality=1.0))

    result = _engine(
        runtime,
        llm,
        _matrix(MIXED_METRICS),
        models=("judge-a", "judge-b"),
    ).evaluate_agent_run(_input(_run_id(runtime)))

    assert result.metric_scores["helpfulness"] == pytest.approx(85.0)
    assert result.metric_scores["factuality"] == pytest.approx(0.9)
    assert result.consensus_details is not None
    assert result.consensus_details["models"] == ["judge-a", "judge-b"]
    assert [item["success"] for item in result.consensus_details["individual_results"]] == [
        True,
        True,
    ]
    assert result.notes.splitlines() == ["[judge-a] looks fine", "[judge-b] looks fine"]


def test_consensus_survives_one_failed_rater(runtime, llm) -> None:
    llm.on("judge-a", _scores(helpfulness=80, factuality=0.7))
    llm.on("judge-b", ProviderError("HTTP 503 from judge-b", status_code=503))

    result = _engine(
        runtime,
        llm,
        _matrix(MIXED_METRICS),
        models=("judge-a", "judge-b"),
    ).evaluate_agent_run(_input(_run_id(runtime)))

    assert result.metric_scores == {"helpfulness": 80.0, "factuality": 0.7}
    individual = result.consensus_details["individual_results"]
    assert individual[1]["model"] == "judge-b"
    assert individual[1]["success"] is False
    assert "HTTP 503" in individual[1]["error"]


def test_consensus_averages_only_raters_that_scored_a_metric(runtime, llm) -> None:
    llm.on("judge-a", _scores(helpfulness=80, factuality=0.9))
    llm.on("judge-b", _scores(factuality=0.7))

    result = _engine(
        runtime,
        llm,
        _matrix(MIXED_METRICS),
        models=("judge-a", "judge-b"),
    ).evaluate_agent_run(_input(_run_id(runtime)))

    assert result.metric_scores["helpfulness"] == pytest.approx(80.0)
    assert result.metric_scores["factuality"] == pytest.approx(0.8)


def test_consensus_metric_nobody_scored_uses_midpoint(runtime, llm) -> None:
    llm.on("judge-a", _scores(factuality=1.0))
    llm.on("judge-b", _scores(factuality=0.8, helpfulness="high"))

    result = _engine(
        runtime,
        llm,
        _matrix(MIXED_METRICS),
        models=("judge-a", "judge-b"),
    ).evaluate_agent_run(_input(_run_id(runtime)))

    assert result.metric_scores["helpfulness"] == pytest.approx(50.0)
    assert result.metric_scores["factuality"] == pytest.approx(0.9)


def test_consensus_fails_when_every_rater_fails(runtime, llm) -> None:
    llm.on("judge-a", RuntimeError("socket closed"))
    llm.on("judge-b", "no json")
    run_id = _run_id(runtime)

    with pytest.raises(AllRatersFailedError) as raised:
        _engine(
            runtime,
            llm,
            _matrix(MIXED_METRICS),
            models=("judge-a", "judge-b"),
        ).evaluate_agent_run(_input(run_id))

    assert set(raised.value.details["errors"]) == {"judge-a", "judge-b"}
    assert runtime.repository.latest_evaluation(run_id=run_id) is None


def test_request_models_override_defaults(runtime, llm) -> None:
    llm.on(EVALUATOR, _scores(quality=0.9))
    request = _input(_run_id(runtime))
    request.models = ("judge-x",)

    _engine(runtime, llm, _matrix(SINGLE_METRIC), models=("judge-a", "judge-b")).evaluate_agent_run(
        request,
    )

    assert [call.model for call in llm.calls] == ["judge-x"]


def test_feedback_blends_into_final_score(runtime, llm) -> None:
    llm.on(EVALUATOR, _scores(quality=0.8))
    engine = _engine(runtime, llm, _matrix(SINGLE_METRIC))
    feedback = FeedbackService(repository=runtime.repository, engine=engine)
    run_id = _run_id(runtime)
    engine.evaluate_agent_run(_input(run_id))

    feedback.submit_feedback(run_id=run_id, user_id="u2", rating=5, comment="great")
    feedback.submit_feedback(run_id=run_id, user_id="u2", rating=1)

    scores = runtime.repository.list_final_scores(run_id=run_id)
    assert [item.human_rating for item in scores] == [5, 1]
    assert scores[0].final_score == pytest.approx(0.7 * 0.8 + 0.3 * 1.0)
    assert scores[1].final_score == pytest.approx(0.7 * 0.8)
    assert runtime.repository.latest_evaluation(run_id=run_id).overall == pytest.approx(0.8)
    latest = feedback.get_feedback_for_run(run_id)
    assert latest is not None
    assert latest.rating == 1


def test_feedback_before_evaluation_is_kept(runtime) -> None:
    run_id = _run_id(runtime)

    stored = runtime.feedback.submit_feedback(run_id=run_id, user_id="u1", rating=4)

    assert stored.rating == 4
    assert runtime.repository.list_final_scores(run_id=run_id) == []
    with pytest.raises(EvaluationNotFoundError):
        runtime.evaluation.incorporate_user_feedback(run_id)


def test_feedback_rating_is_validated(runtime) -> None:
    run_id = _run_id(runtime)

    with pytest.raises(ValidationFailedError):
        runtime.feedback.submit_feedback(run_id=run_id, user_id="u1", rating=6)
    assert runtime.feedback.get_feedback_for_run(run_id) is None


def test_incorporate_without_feedback_returns_none(runtime, llm) -> None:
    llm.on(EVALUATOR, _scores(quality=0.8))
    engine = _engine(runtime, llm, _matrix(SINGLE_METRIC))
    run_id = _run_id(runtime)
    engine.evaluate_agent_run(_input(run_id))

    assert engine.incorporate_user_feedback(run_id) is None


def test_project_average_scores(runtime, llm) -> None:
    llm.on(EVALUATOR, _scores(quality=0.4), _scores(quality=0.8))
    engine = _engine(runtime, llm, _matrix(SINGLE_METRIC))
    for _ in range(2):
        engine.evaluate_agent_run(_input(_run_id(runtime, project_id="p1"), project_id="p1"))

    averages = engine.project_average_scores("p1")

    assert averages.evaluations == 2
    assert averages.overall == pytest.approx(0.6)
    assert averages.metric_scores == {"quality": pytest.approx(0.6)}
    assert len(engine.list_project_evaluations("p1")) == 2
    assert engine.project_average_scores("empty").evaluations == 0
