"""Evaluate, fix and re-run state machine driven by closed-loop queue jobs."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from agent_loop.agents.auto_fix import AutoFixAgent, AutoFixInput
from agent_loop.agents.runner import EVALUATE_RUN_JOB, AgentRunner, joined_output
from agent_loop.errors import AppError, ValidationFailedError
from agent_loop.evaluation.engine import EvaluationEngine, EvaluationInput
from agent_loop.jobs.models import CLOSED_LOOP_QUEUE, JobView
from agent_loop.jobs.queue import JobQueue
from agent_loop.jobs.worker import JobHandler
from agent_loop.models import (
    ClosedLoopStatus,
    EvaluationResult,
    RunLineage,
    RunStatus,
    RunView,
)
from agent_loop.repository import AgentRepository

logger = logging.getLogger(__name__)

AUTO_FIX_JOB = "auto_fix"
NO_PROMPT = "No prompt"


class ClosedLoopController:
    """Handles ``evaluate_run`` and ``auto_fix`` jobs for one run chain.

    Each step enqueues the next, so a chain is processed strictly in order.
    Any error marks the current run's loop status ``failed`` and propagates
    so the queue retry policy applies.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: AgentRepository,
        runner: AgentRunner,
        engine: EvaluationEngine,
        auto_fixer: AutoFixAgent,
        queue: JobQueue,
        default_max_iterations: int = 3,
    ) -> None:
        self.repository = repository
        self.runner = runner
        self.engine = engine
        self.auto_fixer = auto_fixer
        self.queue = queue
        self.default_max_iterations = default_max_iterations

    def handlers(self) -> dict[str, JobHandler]:
        return {
            EVALUATE_RUN_JOB: self._handle_evaluate_run,
            AUTO_FIX_JOB: self._handle_auto_fix,
        }

    def evaluate_run(
        self,
        *,
        run_id: str,
        project_id: str | None,
        user_id: str,
        iteration_count: int,
    ) -> dict[str, Any]:
        run = self.repository.require_run(run_id=run_id)
        try:
            self.repository.set_closed_loop_status(
                run_id=run_id,
                status=ClosedLoopStatus.IN_PROGRESS,
            )
            if run.status != RunStatus.SUCCEEDED:
                logger.warning(
                    "Closed loop for run %s stopped: run status is %s",
                    run_id,
                    run.status.value,
                )
                self.repository.set_closed_loop_status(
                    run_id=run_id,
                    status=ClosedLoopStatus.FAILED,
                )
                return {"action": "skipped", "run_status": run.status.value}

            evaluation = self.engine.evaluate_agent_run(
                EvaluationInput(
                    run_id=run_id,
                    user_id=user_id,
                    project_id=project_id,
                    task_type=run.agent_name,
                    prompt=_run_prompt(run),
                    output=joined_output(self.repository.list_artifacts(run_id=run_id)),
                ),
            )
            if not evaluation.needs_fix:
                self.repository.set_closed_loop_status(
                    run_id=run_id,
                    status=ClosedLoopStatus.COMPLETED,
                )
                logger.info("Closed loop completed for run %s", run_id)
                return {"action": "evaluated", "needs_fix": False}

            max_iterations = self.max_iterations(project_id)
            if iteration_count < max_iterations:
                self.queue.enqueue(
                    CLOSED_LOOP_QUEUE,
                    AUTO_FIX_JOB,
                    {
                        "run_id": run_id,
                        "project_id": project_id,
                        "user_id": user_id,
                        "evaluation": evaluation_to_payload(evaluation),
                        "iteration_count": iteration_count,
                    },
                )
                logger.info(
                    "Run %s needs fix: overall=%.3f iteration=%d/%d",
                    run_id,
                    evaluation.overall,
                    iteration_count,
                    max_iterations,
                )
            else:
                self.repository.set_closed_loop_status(
                    run_id=run_id,
                    status=ClosedLoopStatus.MAX_ITERATIONS_REACHED,
                )
                logger.warning(
                    "Max iterations reached for run %s: iteration=%d max=%d",
                    run_id,
                    iteration_count,
                    max_iterations,
                )
        except Exception:
            self._mark_failed(run_id)
            raise
        return {"action": "evaluated", "needs_fix": True}

    def auto_fix(
        self,
        *,
        run_id: str,
        project_id: str | None,
        user_id: str,
        evaluation: EvaluationResult,
        iteration_count: int,
    ) -> dict[str, Any]:
        run = self.repository.require_run(run_id=run_id)
        try:
            fix = self.auto_fixer.attempt_auto_fix(
                AutoFixInput(
                    run_id=run_id,
                    user_id=user_id,
                    project_id=project_id,
                    user_prompt=_run_prompt(run),
                    original_output=joined_output(self.repository.list_artifacts(run_id=run_id)),
                    evaluation=evaluation,
                ),
            )
            context = replace(run.context, extra=dict(run.context.extra), run_id=None)
            context.extra.update(
                {
                    "previous_output": fix.fixed_output,
                    "feedback": evaluation.notes,
                    "correction_instruction": fix.fix_notes,
                },
            )
            child = self.runner.run_agent_with_persistence(
                run.agent_name,
                context,
                lineage=RunLineage(parent_run_id=run_id, iteration_count=iteration_count + 1),
            )
            self.queue.enqueue(
                CLOSED_LOOP_QUEUE,
                EVALUATE_RUN_JOB,
                {
                    "run_id": child.run_id,
                    "project_id": project_id,
                    "user_id": user_id,
                    "iteration_count": iteration_count + 1,
                },
            )
            self.repository.set_closed_loop_status(
                run_id=run_id,
                status=ClosedLoopStatus.COMPLETED,
            )
        except Exception:
            self._mark_failed(run_id)
            raise

        logger.info(
            "Run %s re-run as %s (iteration %d)",
            run_id,
            child.run_id,
            iteration_count + 1,
        )
        return {"action": "fixed_and_rerun", "new_run_id": child.run_id}

    def max_iterations(self, project_id: str | None) -> int:
        if project_id is None:
            return self.default_max_iterations
        settings = self.repository.get_project_settings(project_id=project_id)
        if settings is None:
            return self.default_max_iterations
        return settings.max_iterations

    def _handle_evaluate_run(self, job: JobView) -> dict[str, Any]:
        payload = job.payload
        return self.evaluate_run(
            run_id=_required_str(payload, "run_id"),
            project_id=payload.get("project_id"),
            user_id=_required_str(payload, "user_id"),
            iteration_count=int(payload.get("iteration_count", 0)),
        )

    def _handle_auto_fix(self, job: JobView) -> dict[str, Any]:
        payload = job.payload
        raw_evaluation = payload.get("evaluation")
        if not isinstance(raw_evaluation, dict):
            raise ValidationFailedError("auto_fix payload requires an evaluation object")
        run_id = _required_str(payload, "run_id")
        return self.auto_fix(
            run_id=run_id,
            project_id=payload.get("project_id"),
            user_id=_required_str(payload, "user_id"),
            evaluation=evaluation_from_payload(raw_evaluation, run_id=run_id),
            iteration_count=int(payload.get("iteration_count", 0)),
        )

    def _mark_failed(self, run_id: str) -> None:
        """Fail the run's loop and any child left ``in_progress`` by an aborted re-run."""

        try:
            self.repository.set_closed_loop_status(run_id=run_id, status=ClosedLoopStatus.FAILED)
            for child in self.repository.list_child_runs(run_id=run_id):
                if child.closed_loop_status == ClosedLoopStatus.IN_PROGRESS:
                    self.repository.set_closed_loop_status(
                        run_id=child.run_id,
                        status=ClosedLoopStatus.FAILED,
                    )
        except (AppError, SQLAlchemyError):
            logger.exception("Failed to mark closed loop failed for run %s", run_id)


def evaluation_to_payload(evaluation: EvaluationResult) -> dict[str, Any]:
    return {
        "evaluation_id": evaluation.evaluation_id,
        "task_type": evaluation.task_type,
        "metric_scores": dict(evaluation.metric_scores),
        "overall": evaluation.overall,
        "needs_fix": evaluation.needs_fix,
        "notes": evaluation.notes,
    }


def evaluation_from_payload(raw: dict[str, Any], *, run_id: str) -> EvaluationResult:
    metric_scores = raw.get("metric_scores", {})
    overall = raw.get("overall")
    if not isinstance(metric_scores, dict):
        raise ValidationFailedError("evaluation.metric_scores must be an object")
    if not isinstance(overall, int | float):
        raise ValidationFailedError("evaluation.overall must be a number")
    return EvaluationResult(
        run_id=run_id,
        user_id="",
        project_id=None,
        task_type=str(raw.get("task_type", "")),
        metric_scores={str(name): float(value) for name, value in metric_scores.items()},
        overall=float(overall),
        needs_fix=bool(raw.get("needs_fix", True)),
        notes=str(raw.get("notes", "")),
        evaluation_id=raw.get("evaluation_id"),
    )


def _run_prompt(run: RunView) -> str:
    prompt = run.context.extra.get("prompt")
    return prompt if isinstance(prompt, str) and prompt.strip() else NO_PROMPT


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationFailedError(f"Job payload requires {key}")
    return value
