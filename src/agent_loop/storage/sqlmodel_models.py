"""SQLModel ORM tables for agent runs, quality control and the job queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class AgentRunRow(SQLModel, table=True):
    __tablename__ = "agent_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_runs_agent_time", "agent_name", "created_at"),
        Index("idx_agent_runs_project_time", "project_id", "created_at"),
    )

    run_id: str = Field(primary_key=True)
    agent_name: str = Field(index=True)
    user_id: str = Field(index=True)
    project_id: str | None = Field(default=None)
    status: str = Field(index=True)
    context_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    parent_run_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("agent_runs.run_id", ondelete="SET NULL"), index=True),
    )
    iteration_count: int = Field(default=0)
    closed_loop_status: str = Field(default="none", index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class AgentArtifactRow(SQLModel, table=True):
    __tablename__ = "agent_artifacts"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_artifacts_run_position", "run_id", "position"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(ForeignKey("agent_runs.run_id", ondelete="CASCADE"), nullable=False),
    )
    position: int = Field(default=0)
    artifact_type: str
    title: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentContextUsageRow(SQLModel, table=True):
    __tablename__ = "agent_context_usages"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    slice_type: str
    weight: float = Field(default=0.0)
    source_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentEvaluationRow(SQLModel, table=True):
    __tablename__ = "agent_evaluations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_evaluations_run_time", "run_id", "created_at"),)

    evaluation_id: str = Field(primary_key=True)
    run_id: str = Field(
        sa_column=Column(ForeignKey("agent_runs.run_id", ondelete="CASCADE"), nullable=False),
    )
    user_id: str
    project_id: str | None = Field(default=None, index=True)
    task_type: str
    metric_scores_json: str = Field(sa_column=Column(Text, nullable=False))
    overall: float
    needs_fix: bool = Field(default=False)
    notes: str | None = Field(default=None, sa_column=Column(Text))
    consensus_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EvaluationFinalScoreRow(SQLModel, table=True):
    __tablename__ = "evaluation_final_scores"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    evaluation_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_evaluations.evaluation_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    run_id: str = Field(index=True)
    automated_score: float
    human_rating: int
    final_score: float
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UserFeedbackRow(SQLModel, table=True):
    __tablename__ = "user_feedback"  # type: ignore[bad-override]

    feedback_id: str = Field(primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str
    rating: int
    comment: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentFixRow(SQLModel, table=True):
    __tablename__ = "agent_fixes"  # type: ignore[bad-override]

    fix_id: str = Field(primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str
    project_id: str | None = None
    original_output: str = Field(sa_column=Column(Text, nullable=False))
    fixed_output: str = Field(sa_column=Column(Text, nullable=False))
    fix_notes: str = Field(default="", sa_column=Column(Text, nullable=False))
    diff_summary: str = Field(default="", sa_column=Column(Text, nullable=False))
    eval_score_before: float | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentConfigRow(SQLModel, table=True):
    __tablename__ = "agent_configs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("agent_name", "version", name="uq_agent_configs_agent_version"),
        Index(
            "uq_agent_configs_single_active",
            "agent_name",
            unique=True,
            sqlite_where=text("is_active = 1"),
        ),
    )

    config_id: str = Field(primary_key=True)
    agent_name: str = Field(index=True)
    version: int
    prompt_template: str = Field(default="", sa_column=Column(Text, nullable=False))
    temperature: float
    max_tokens: int
    tool_config_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    is_active: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AuditLogRow(SQLModel, table=True):
    __tablename__ = "audit_log"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(index=True)
    severity: str = Field(default="info")
    user_id: str
    project_id: str | None = None
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProjectSettingsRow(SQLModel, table=True):
    __tablename__ = "project_settings"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    closed_loop_mode: bool = Field(default=False)
    max_iterations: int = Field(default=3)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_queue_ready", "queue_name", "status", "run_after"),)

    job_id: str = Field(primary_key=True)
    queue_name: str
    job_name: str
    job_key: str | None = Field(default=None, unique=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    backoff_type: str = Field(default="exponential")
    backoff_delay_ms: int = Field(default=1_000)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    worker_id: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
