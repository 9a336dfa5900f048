"""LLM-as-judge evaluation of agent runs with optional multi-rater consensus."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from agent_loop.errors import (
    AllRatersFailedError,
    EvaluationNotFoundError,
    EvaluationPersistFailedError,
    ParseFailedError,
)
from agent_loop.evaluation.matrix import EvalMatrix, MetricSpec
from agent_loop.llm.client import LlmClient, LlmRequest, system_and_user
from agent_loop.llm.json_payload import extract_json_object
from agent_loop.models import (
    EvaluationResult,
    FinalScoreView,
    ProjectAverageScores,
    RaterResult,
)
from agent_loop.repository import AgentRepository

logger = logging.getLogger(__name__)

EVAL_TEMPERATURE = 0.1
EVAL_MAX_TOKENS = 800
AUTOMATED_WEIGHT = 0.7
HUMAN_WEIGHT = 0.3

_SYSTEM_PROMPT = (
    "You are an expert evaluator of AI-generated content. "
    "Score strictly against the listed metrics. Always output valid JSON."
)


@dataclass(slots=True)
class EvaluationInput:
    """What to score: one run's prompt and output under a task type."""

    run_id: str
    user_id: str
    task_type: str
    prompt: str
    output: str
    project_id: str | None = None
    models: tuple[str, ...] = ()


def weighted_overall(metrics: tuple[MetricSpec, ...], scores: dict[str, float]) -> float:
    """Weighted average of scale-normalized metric scores, in [0, 1]."""

    total_weight = sum(metric.weight for metric in metrics)
    if total_weight <= 0:
        return 0.5
    weighted = sum(
        metric.weight * metric.normalize(scores.get(metric.name, metric.midpoint))
        for metric in metrics
    )
    return weighted / total_weight


def build_evaluation_prompt(
    *,
    task_type: str,
    prompt: str,
    output: str,
    metrics: tuple[MetricSpec, ...],
) -> str:
    metric_lines = "\n".join(
        f"- **{metric.name}** ({metric.scale}, weight: {metric.weight:g}): {metric.description}"
        for metric in metrics
    )
    example_scores = ", ".join(f'"{metric.name}": <number>' for metric in metrics)
    return (
        f"Evaluate the following AI output for task type: {task_type}\n\n"
        f"## Original request\n{prompt}\n\n"
        f"## Output to evaluate\n{output}\n\n"
        f"## Metrics\n{metric_lines}\n\n"
        "Score each metric on its own scale. Respond with JSON only:\n"
        f'{{"scores": {{{example_scores}}}, "reasoning": "<short justification>"}}'
    )


class EvaluationEngine:
    """Scores agent output against the metric matrix and persists the result."""

    def __init__(
        self,
        *,
        repository: AgentRepository,
        llm: LlmClient,
        matrix: EvalMatrix,
        default_model: str,
        default_models: tuple[str, ...] = (),
    ) -> None:
        self.repository = repository
        self.llm = llm
        self.matrix = matrix
        self.default_model = default_model
        self.default_models = default_models

    def evaluate_agent_run(self, request: EvaluationInput) -> EvaluationResult:
        metrics = self.matrix.metrics_for(request.task_type)
        prompt = build_evaluation_prompt(
            task_type=request.task_type,
            prompt=request.prompt,
            output=request.output,
            metrics=metrics,
        )
        models = request.models or self.default_models or (self.default_model,)

        consensus_details: dict[str, Any] | None = None
        if len(models) <= 1:
            scores, notes = self._single_rater(model=models[0], prompt=prompt, metrics=metrics)
        else:
            scores, notes, consensus_details = self._consensus(
                run_id=request.run_id,
                models=models,
                prompt=prompt,
                metrics=metrics,
            )

        overall = weighted_overall(metrics, scores)
        threshold = self.matrix.needs_fix_threshold
        result = EvaluationResult(
            run_id=request.run_id,
            user_id=request.user_id,
            project_id=request.project_id,
            task_type=request.task_type,
            metric_scores=scores,
            overall=overall,
            needs_fix=overall < threshold,
            notes=notes,
            consensus_details=consensus_details,
        )
        try:
            self.repository.save_evaluation(result)
        except SQLAlchemyError as error:
            raise EvaluationPersistFailedError(
                f"Failed to persist evaluation for run {request.run_id}",
                details={"run_id": request.run_id},
            ) from error

        logger.info(
            "Evaluated run %s: task_type=%s overall=%.3f needs_fix=%s raters=%d",
            request.run_id,
            request.task_type,
            overall,
            result.needs_fix,
            len(models),
        )
        return result

    def incorporate_user_feedback(self, run_id: str) -> FinalScoreView | None:
        """Blend the latest human rating into the latest automated score.

        The result is appended as a new final score; the automated evaluation is
        never modified. Returns None when the run has no feedback yet.
        """

        evaluation = self.repository.latest_evaluation(run_id=run_id)
        if evaluation is None:
            raise EvaluationNotFoundError(run_id)
        feedback = self.repository.latest_feedback(run_id=run_id)
        if feedback is None:
            return None

        human = (feedback.rating - 1) / 4
        final_score = AUTOMATED_WEIGHT * evaluation.overall + HUMAN_WEIGHT * human
        view = self.repository.append_final_score(
            evaluation=evaluation,
            human_rating=feedback.rating,
            final_score=final_score,
        )
        logger.info(
            "Final score for run %s: automated=%.3f rating=%d final=%.3f",
            run_id,
            evaluation.overall,
            feedback.rating,
            final_score,
        )
        return view

    def list_project_evaluations(self, project_id: str) -> list[EvaluationResult]:
        return self.repository.list_project_evaluations(project_id=project_id)

    def project_average_scores(self, project_id: str) -> ProjectAverageScores:
        evaluations = self.repository.list_project_evaluations(project_id=project_id)
        if not evaluations:
            return ProjectAverageScores(evaluations=0, overall=0.0, metric_scores={})

        totals: dict[str, float] = {}
        counts: dict[str, int] = {}
        for evaluation in evaluations:
            for name, value in evaluation.metric_scores.items():
                totals[name] = totals.get(name, 0.0) + value
                counts[name] = counts.get(name, 0) + 1
        return ProjectAverageScores(
            evaluations=len(evaluations),
            overall=sum(item.overall for item in evaluations) / len(evaluations),
            metric_scores={name: totals[name] / counts[name] for name in sorted(totals)},
        )

    def _single_rater(
        self,
        *,
        model: str,
        prompt: str,
        metrics: tuple[MetricSpec, ...],
    ) -> tuple[dict[str, float], str]:
        text = self._call_rater(model=model, prompt=prompt)
        try:
            scores, reasoning = _parse_scores(text, metrics)
        except ParseFailedError as error:
            logger.warning("Evaluation response from %s unparseable, using midpoints: %s", model, error)
            return (
                {metric.name: metric.midpoint for metric in metrics},
                f"Evaluation response could not be parsed: {error}",
            )
        for metric in metrics:
            scores.setdefault(metric.name, metric.midpoint)
        return scores, reasoning

    def _consensus(
        self,
        *,
        run_id: str,
        models: tuple[str, ...],
        prompt: str,
        metrics: tuple[MetricSpec, ...],
    ) -> tuple[dict[str, float], str, dict[str, Any]]:
        def _rate(model: str) -> RaterResult:
            try:
                scores, reasoning = _parse_scores(self._call_rater(model=model, prompt=prompt), metrics)
            except Exception as error:  # noqa: BLE001
                logger.warning("Rater %s failed for run %s: %s", model, run_id, error)
                return RaterResult(model=model, success=False, error=str(error))
            return RaterResult(model=model, success=True, scores=scores, reasoning=reasoning)

        with ThreadPoolExecutor(max_workers=len(models), thread_name_prefix="rater") as pool:
            results = list(pool.map(_rate, models))

        succeeded = [result for result in results if result.success]
        if not succeeded:
            raise AllRatersFailedError(
                run_id,
                {result.model: result.error or "unknown error" for result in results},
            )

        scores: dict[str, float] = {}
        for metric in metrics:
            values = [result.scores[metric.name] for result in succeeded if metric.name in result.scores]
            scores[metric.name] = sum(values) / len(values) if values else metric.midpoint

        notes = "\n".join(
            f"[{result.model}] {result.reasoning}" for result in succeeded if result.reasoning
        )
        details = {
            "models": list(models),
            "individual_results": [result.to_dict() for result in results],
        }
        return scores, notes, details

    def _call_rater(self, *, model: str, prompt: str) -> str:
        response = self.llm.call(
            LlmRequest(
                model=model,
                messages=system_and_user(_SYSTEM_PROMPT, prompt),
                temperature=EVAL_TEMPERATURE,
                max_tokens=EVAL_MAX_TOKENS,
            ),
        )
        return response.text


def _parse_scores(text: str, metrics: tuple[MetricSpec, ...]) -> tuple[dict[str, float], str]:
    """Extract clamped per-metric scores and reasoning from a rater reply.

    Metrics the rater omitted or scored with a non-number are left out.
    """

    payload = extract_json_object(text)
    if payload is None:
        raise ParseFailedError("Rater response contains no JSON object")
    raw_scores = payload.get("scores")
    if not isinstance(raw_scores, dict):
        raise ParseFailedError("Rater response is missing a scores object")

    scores: dict[str, float] = {}
    for metric in metrics:
        value = raw_scores.get(metric.name)
        if isinstance(value, int | float) and not isinstance(value, bool):
            scores[metric.name] = metric.clamp(float(value))
    reasoning = payload.get("reasoning")
    return scores, reasoning if isinstance(reasoning, str) else ""
