"""Domain models for agent runs, evaluations and configuration versions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    """Run lifecycle states; transitions only move forward."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED)


class ClosedLoopStatus(str, Enum):
    """Evaluate/fix/re-run progress for one run."""

    NONE = "none"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ClosedLoopStatus.COMPLETED,
            ClosedLoopStatus.MAX_ITERATIONS_REACHED,
            ClosedLoopStatus.FAILED,
        )


ARTIFACT_TYPES = ("plan", "task_list", "spec", "copy", "log")


@dataclass(slots=True)
class AgentContext:
    """Opaque payload an agent runs against."""

    user_id: str
    project_id: str | None = None
    wizard_answers: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "project_id": self.project_id,
            "wizard_answers": dict(self.wizard_answers),
            "extra": dict(self.extra),
            "config": dict(self.config),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AgentContext:
        user_id = raw.get("user_id")
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValueError("context.user_id must be a non-empty string")
        project_id = raw.get("project_id")
        if project_id is not None and not isinstance(project_id, str):
            raise TypeError("context.project_id must be a string when provided")
        for key in ("wizard_answers", "extra", "config"):
            if not isinstance(raw.get(key, {}), dict):
                raise TypeError(f"context.{key} must be an object")
        return cls(
            user_id=user_id,
            project_id=project_id,
            wizard_answers=dict(raw.get("wizard_answers", {})),
            extra=dict(raw.get("extra", {})),
            config=dict(raw.get("config", {})),
            run_id=raw.get("run_id"),
        )


@dataclass(slots=True)
class Artifact:
    """One typed output unit of a run."""

    type: str
    title: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentResult:
    """What an agent returns from ``run``."""

    artifacts: list[Artifact] = field(default_factory=list)


@dataclass(slots=True)
class RunLineage:
    """Closed-loop parentage for a child run."""

    parent_run_id: str
    iteration_count: int


@dataclass(slots=True)
class RunView:
    """Readable run view for controllers and loop logic."""

    run_id: str
    agent_name: str
    user_id: str
    project_id: str | None
    status: RunStatus
    context: AgentContext
    parent_run_id: str | None
    iteration_count: int
    closed_loop_status: ClosedLoopStatus
    error_summary: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


@dataclass(slots=True)
class RunOutcome:
    """Result of running an agent with persistence."""

    run_id: str
    output: AgentResult


@dataclass(slots=True)
class ContextSliceUsage:
    """Context slice recorded against a run for analytics."""

    slice_type: str
    weight: float
    source: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RaterResult:
    """Raw result of one rater in a consensus evaluation."""

    model: str
    success: bool
    scores: dict[str, float] = field(default_factory=dict)
    reasoning: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "success": self.success,
            "scores": dict(self.scores),
            "reasoning": self.reasoning,
            "error": self.error,
        }


@dataclass(slots=True)
class EvaluationResult:
    """Per-run quality assessment.

    ``metric_scores`` keep each metric on its declared scale (``0-1`` or
    ``0-100``); ``overall`` is the weighted average after normalization to 0-1.
    """

    run_id: str
    user_id: str
    project_id: str | None
    task_type: str
    metric_scores: dict[str, float]
    overall: float
    needs_fix: bool
    notes: str
    consensus_details: dict[str, Any] | None = None
    evaluation_id: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class FinalScoreView:
    """Feedback-adjusted score appended to an evaluation."""

    evaluation_id: str
    run_id: str
    automated_score: float
    human_rating: int
    final_score: float
    created_at: datetime


@dataclass(slots=True)
class FeedbackView:
    feedback_id: str
    run_id: str
    user_id: str
    rating: int
    comment: str | None
    created_at: datetime


@dataclass(slots=True)
class ProjectAverageScores:
    """Mean evaluation scores over all runs of a project."""

    evaluations: int
    overall: float
    metric_scores: dict[str, float]


@dataclass(slots=True)
class AutoFixResult:
    fixed_output: str
    fix_notes: str
    diff_summary: str
    success: bool = True


@dataclass(slots=True)
class AgentFixWrite:
    """Immutable record of a corrective rewrite."""

    run_id: str
    user_id: str
    project_id: str | None
    original_output: str
    fixed_output: str
    fix_notes: str
    diff_summary: str
    eval_score_before: float | None


@dataclass(slots=True)
class AgentConfiguration:
    """Versioned tunable parameters for an agent."""

    agent_name: str
    prompt_template: str
    temperature: float
    max_tokens: int
    tool_config: dict[str, Any]
    version: int
    is_active: bool
    config_id: str | None = None
    created_at: datetime | None = None

    def to_context_config(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "prompt_template": self.prompt_template,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "tool_config": dict(self.tool_config),
        }


@dataclass(slots=True)
class ProjectSettings:
    """Per-project closed-loop switches."""

    project_id: str
    closed_loop_mode: bool
    max_iterations: int


@dataclass(slots=True)
class AuditEventView:
    event_type: str
    severity: str
    user_id: str
    project_id: str | None
    metadata: dict[str, Any]
    created_at: datetime
