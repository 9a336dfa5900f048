"""Corrective rewrite of low-scoring agent output."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from agent_loop.errors import AutoFixParseFailedError
from agent_loop.llm.client import LlmClient, LlmRequest, system_and_user
from agent_loop.llm.json_payload import extract_json_object
from agent_loop.models import AgentFixWrite, AutoFixResult, EvaluationResult
from agent_loop.repository import AgentRepository

logger = logging.getLogger(__name__)

AUTOFIX_TEMPERATURE = 0.2
AUTOFIX_MAX_TOKENS = 4_000
DEFAULT_FIX_NOTES = "Auto-fixed based on evaluation"
DEFAULT_DIFF_SUMMARY = "Improved content quality"

_SYSTEM_PROMPT = (
    "You are a senior editor who repairs AI-generated deliverables. "
    "Fix every weakness the evaluation points out while keeping what already works. "
    "Always output valid JSON."
)


@dataclass(slots=True)
class AutoFixInput:
    run_id: str
    user_id: str
    user_prompt: str
    original_output: str
    evaluation: EvaluationResult
    project_id: str | None = None


class AutoFixAgent:
    def __init__(self, *, repository: AgentRepository, llm: LlmClient, model: str) -> None:
        self.repository = repository
        self.llm = llm
        self.model = model

    def attempt_auto_fix(self, request: AutoFixInput) -> AutoFixResult:
        """Ask the model for an improved output.

        Raises ``AutoFixParseFailedError`` when the reply has no usable
        ``fixedOutput``; storing the fix record is best-effort.
        """

        response = self.llm.call(
            LlmRequest(
                model=self.model,
                messages=system_and_user(_SYSTEM_PROMPT, build_fix_prompt(request)),
                temperature=AUTOFIX_TEMPERATURE,
                max_tokens=AUTOFIX_MAX_TOKENS,
            ),
        )
        payload = extract_json_object(response.text)
        if payload is None:
            raise AutoFixParseFailedError(
                f"Auto-fix response for run {request.run_id} is not valid JSON",
                details={"run_id": request.run_id},
            )
        fixed_output = payload.get("fixedOutput")
        if not isinstance(fixed_output, str) or not fixed_output.strip():
            raise AutoFixParseFailedError(
                f"Auto-fix response for run {request.run_id} has no fixedOutput",
                details={"run_id": request.run_id},
            )

        result = AutoFixResult(
            fixed_output=fixed_output,
            fix_notes=_text_or(payload.get("fixNotes"), DEFAULT_FIX_NOTES),
            diff_summary=_text_or(payload.get("diffSummary"), DEFAULT_DIFF_SUMMARY),
        )
        try:
            self.repository.add_fix(
                AgentFixWrite(
                    run_id=request.run_id,
                    user_id=request.user_id,
                    project_id=request.project_id,
                    original_output=request.original_output,
                    fixed_output=result.fixed_output,
                    fix_notes=result.fix_notes,
                    diff_summary=result.diff_summary,
                    eval_score_before=request.evaluation.overall,
                ),
            )
        except SQLAlchemyError:
            logger.warning("Failed to store fix record for run %s", request.run_id, exc_info=True)

        logger.info("Auto-fix produced for run %s: %s", request.run_id, result.diff_summary)
        return result


def build_fix_prompt(request: AutoFixInput) -> str:
    evaluation = request.evaluation
    scores = json.dumps(evaluation.metric_scores, ensure_ascii=False, sort_keys=True, indent=2)
    return (
        f"Task type: {evaluation.task_type}\n\n"
        f"## User request\n{request.user_prompt}\n\n"
        f"## Evaluation\nOverall score: {evaluation.overall:.2f}\n"
        f"Metric scores:\n{scores}\n"
        f"Notes: {evaluation.notes or 'none'}\n\n"
        f"## Original output\n{request.original_output}\n\n"
        "Rewrite the output so it scores higher on every weak metric. Respond with JSON only:\n"
        '{"fixedOutput": "<full improved output>", '
        '"fixNotes": "<what was changed and why>", '
        '"diffSummary": "<one line summary>"}'
    )


def _text_or(value: object, default: str) -> str:
    return value if isinstance(value, str) and value.strip() else default
