"""Persistence facade for agent runs, evaluations, fixes and configuration versions."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_loop.errors import RunNotFoundError, ValidationFailedError
from agent_loop.models import (
    AgentConfiguration,
    AgentContext,
    AgentFixWrite,
    Artifact,
    AuditEventView,
    ClosedLoopStatus,
    ContextSliceUsage,
    EvaluationResult,
    FeedbackView,
    FinalScoreView,
    ProjectSettings,
    RunLineage,
    RunStatus,
    RunView,
)
from agent_loop.storage.alembic_runner import upgrade_head
from agent_loop.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_optional,
    utc_now,
)
from agent_loop.storage.sqlmodel_models import (
    AgentArtifactRow,
    AgentConfigRow,
    AgentContextUsageRow,
    AgentEvaluationRow,
    AgentFixRow,
    AgentRunRow,
    AuditLogRow,
    EvaluationFinalScoreRow,
    ProjectSettingsRow,
    UserFeedbackRow,
)

_ALLOWED_TRANSITIONS: dict[RunStatus, tuple[RunStatus, ...]] = {
    RunStatus.RUNNING: (RunStatus.PENDING,),
    RunStatus.SUCCEEDED: (RunStatus.RUNNING,),
    RunStatus.FAILED: (RunStatus.PENDING, RunStatus.RUNNING),
}


class AgentRepository:
    """Run, evaluation and configuration persistence backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Runs

    def create_run(
        self,
        *,
        agent_name: str,
        context: AgentContext,
        lineage: RunLineage | None = None,
        closed_loop_status: ClosedLoopStatus = ClosedLoopStatus.NONE,
    ) -> RunView:
        """Insert a pending run."""

        now = utc_now()
        with Session(self.engine) as session:
            row = AgentRunRow(
                run_id=str(uuid4()),
                agent_name=agent_name,
                user_id=context.user_id,
                project_id=context.project_id,
                status=RunStatus.PENDING.value,
                context_json=_dumps(context.to_dict()),
                parent_run_id=lineage.parent_run_id if lineage is not None else None,
                iteration_count=lineage.iteration_count if lineage is not None else 0,
                closed_loop_status=closed_loop_status.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def transition_run(
        self,
        *,
        run_id: str,
        status: RunStatus,
        error_summary: str | None = None,
    ) -> None:
        """Move a run forward in its lifecycle; any other move is rejected."""

        allowed_from = _ALLOWED_TRANSITIONS.get(status)
        if allowed_from is None:
            raise ValidationFailedError(f"Run cannot transition to {status.value}")
        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status == RunStatus.RUNNING:
            values["started_at"] = now
        else:
            values["finished_at"] = now
        if error_summary is not None:
            values["error_summary"] = error_summary[:4000]

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRunRow)
                .where(
                    col(AgentRunRow.run_id) == run_id,
                    col(AgentRunRow.status).in_([item.value for item in allowed_from]),
                )
                .values(**values),
            )
            if result.rowcount == 1:
                session.commit()
                return
            session.rollback()
            current = session.exec(
                select(AgentRunRow.status).where(AgentRunRow.run_id == run_id),
            ).one_or_none()
        if current is None:
            raise RunNotFoundError(run_id)
        raise ValidationFailedError(
            f"Illegal run transition {current} -> {status.value}",
            details={"run_id": run_id, "from": current, "to": status.value},
        )

    def set_closed_loop_status(self, *, run_id: str, status: ClosedLoopStatus) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRunRow)
                .where(col(AgentRunRow.run_id) == run_id)
                .values(closed_loop_status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RunNotFoundError(run_id)
            session.commit()

    def get_run(self, *, run_id: str) -> RunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentRunRow).where(AgentRunRow.run_id == run_id),
            ).one_or_none()
            return _to_run_view(row) if row is not None else None

    def require_run(self, *, run_id: str) -> RunView:
        run = self.get_run(run_id=run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_runs(
        self,
        *,
        agent_name: str | None = None,
        project_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[RunView]:
        """Most recent runs first."""

        with Session(self.engine) as session:
            query = select(AgentRunRow)
            if agent_name is not None:
                query = query.where(AgentRunRow.agent_name == agent_name)
            if project_id is not None:
                query = query.where(AgentRunRow.project_id == project_id)
            if status is not None:
                query = query.where(AgentRunRow.status == status.value)
            rows = session.exec(
                query.order_by(col(AgentRunRow.created_at).desc()).limit(max(1, limit)),
            ).all()
            return [_to_run_view(row) for row in rows]

    def list_child_runs(self, *, run_id: str) -> list[RunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentRunRow)
                .where(AgentRunRow.parent_run_id == run_id)
                .order_by(col(AgentRunRow.created_at).asc()),
            ).all()
            return [_to_run_view(row) for row in rows]

    def run_chain(self, *, run_id: str) -> list[RunView]:
        """Return the closed-loop chain containing the run, root first."""

        root = self.require_run(run_id=run_id)
        while root.parent_run_id is not None:
            parent = self.get_run(run_id=root.parent_run_id)
            if parent is None:
                break
            root = parent

        chain = [root]
        seen = {root.run_id}
        current = root
        while True:
            children = [
                child for child in self.list_child_runs(run_id=current.run_id)
                if child.run_id not in seen
            ]
            if not children:
                return chain
            current = children[-1]
            seen.add(current.run_id)
            chain.append(current)

    # Artifacts and context usage

    def add_artifact(self, *, run_id: str, position: int, artifact: Artifact) -> None:
        with Session(self.engine) as session:
            session.add(
                AgentArtifactRow(
                    run_id=run_id,
                    position=position,
                    artifact_type=artifact.type,
                    title=artifact.title,
                    content=artifact.content,
                    metadata_json=_dumps(artifact.metadata),
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_artifacts(self, *, run_id: str) -> list[Artifact]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentArtifactRow)
                .where(AgentArtifactRow.run_id == run_id)
                .order_by(col(AgentArtifactRow.position).asc(), col(AgentArtifactRow.id).asc()),
            ).all()
            return [
                Artifact(
                    type=row.artifact_type,
                    title=row.title,
                    content=row.content,
                    metadata=_loads(row.metadata_json),
                )
                for row in rows
            ]

    def add_context_usages(self, *, run_id: str, slices: list[ContextSliceUsage]) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            for item in slices:
                session.add(
                    AgentContextUsageRow(
                        run_id=run_id,
                        slice_type=item.slice_type,
                        weight=item.weight,
                        source_json=_dumps(item.source),
                        created_at=now,
                    ),
                )
            session.commit()

    def list_context_usages(self, *, run_id: str) -> list[ContextSliceUsage]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentContextUsageRow).where(AgentContextUsageRow.run_id == run_id),
            ).all()
            return [
                ContextSliceUsage(
                    slice_type=row.slice_type,
                    weight=row.weight,
                    source=_loads(row.source_json),
                )
                for row in rows
            ]

    # Evaluations and feedback

    def save_evaluation(self, result: EvaluationResult) -> EvaluationResult:
        now = utc_now()
        evaluation_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                AgentEvaluationRow(
                    evaluation_id=evaluation_id,
                    run_id=result.run_id,
                    user_id=result.user_id,
                    project_id=result.project_id,
                    task_type=result.task_type,
                    metric_scores_json=_dumps(result.metric_scores),
                    overall=result.overall,
                    needs_fix=result.needs_fix,
                    notes=result.notes,
                    consensus_json=(
                        _dumps(result.consensus_details)
                        if result.consensus_details is not None
                        else None
                    ),
                    created_at=now,
                ),
            )
            session.commit()
        result.evaluation_id = evaluation_id
        result.created_at = now
        return result

    def latest_evaluation(self, *, run_id: str) -> EvaluationResult | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentEvaluationRow)
                .where(AgentEvaluationRow.run_id == run_id)
                .order_by(col(AgentEvaluationRow.created_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_evaluation(row) if row is not None else None

    def list_project_evaluations(self, *, project_id: str) -> list[EvaluationResult]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentEvaluationRow)
                .where(AgentEvaluationRow.project_id == project_id)
                .order_by(col(AgentEvaluationRow.created_at).desc()),
            ).all()
            return [_to_evaluation(row) for row in rows]

    def append_final_score(
        self,
        *,
        evaluation: EvaluationResult,
        human_rating: int,
        final_score: float,
    ) -> FinalScoreView:
        if evaluation.evaluation_id is None:
            raise ValidationFailedError("Evaluation must be persisted before scoring feedback")
        now = utc_now()
        with Session(self.engine) as session:
            session.add(
                EvaluationFinalScoreRow(
                    evaluation_id=evaluation.evaluation_id,
                    run_id=evaluation.run_id,
                    automated_score=evaluation.overall,
                    human_rating=human_rating,
                    final_score=final_score,
                    created_at=now,
                ),
            )
            session.commit()
        return FinalScoreView(
            evaluation_id=evaluation.evaluation_id,
            run_id=evaluation.run_id,
            automated_score=evaluation.overall,
            human_rating=human_rating,
            final_score=final_score,
            created_at=now,
        )

    def list_final_scores(self, *, run_id: str) -> list[FinalScoreView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(EvaluationFinalScoreRow)
                .where(EvaluationFinalScoreRow.run_id == run_id)
                .order_by(col(EvaluationFinalScoreRow.id).asc()),
            ).all()
            return [
                FinalScoreView(
                    evaluation_id=row.evaluation_id,
                    run_id=row.run_id,
                    automated_score=row.automated_score,
                    human_rating=row.human_rating,
                    final_score=row.final_score,
                    created_at=to_utc_aware(row.created_at),
                )
                for row in rows
            ]

    def add_feedback(
        self,
        *,
        run_id: str,
        user_id: str,
        rating: int,
        comment: str | None,
    ) -> FeedbackView:
        with Session(self.engine) as session:
            row = UserFeedbackRow(
                feedback_id=str(uuid4()),
                run_id=run_id,
                user_id=user_id,
                rating=rating,
                comment=comment,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_feedback_view(row)

    def latest_feedback(self, *, run_id: str) -> FeedbackView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(UserFeedbackRow)
                .where(UserFeedbackRow.run_id == run_id)
                .order_by(col(UserFeedbackRow.created_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_feedback_view(row) if row is not None else None

    # Fixes

    def add_fix(self, payload: AgentFixWrite) -> str:
        fix_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                AgentFixRow(
                    fix_id=fix_id,
                    run_id=payload.run_id,
                    user_id=payload.user_id,
                    project_id=payload.project_id,
                    original_output=payload.original_output,
                    fixed_output=payload.fixed_output,
                    fix_notes=payload.fix_notes,
                    diff_summary=payload.diff_summary,
                    eval_score_before=payload.eval_score_before,
                    created_at=utc_now(),
                ),
            )
            session.commit()
        return fix_id

    def list_fixes(self, *, run_id: str) -> list[AgentFixWrite]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentFixRow)
                .where(AgentFixRow.run_id == run_id)
                .order_by(col(AgentFixRow.created_at).asc()),
            ).all()
            return [
                AgentFixWrite(
                    run_id=row.run_id,
                    user_id=row.user_id,
                    project_id=row.project_id,
                    original_output=row.original_output,
                    fixed_output=row.fixed_output,
                    fix_notes=row.fix_notes,
                    diff_summary=row.diff_summary,
                    eval_score_before=row.eval_score_before,
                )
                for row in rows
            ]

    # Agent configuration versions

    def get_active_config(self, *, agent_name: str) -> AgentConfiguration | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentConfigRow)
                .where(
                    AgentConfigRow.agent_name == agent_name,
                    col(AgentConfigRow.is_active).is_(True),
                )
                .order_by(col(AgentConfigRow.version).desc())
                .limit(1),
            ).one_or_none()
            return _to_config(row) if row is not None else None

    def list_configs(self, *, agent_name: str) -> list[AgentConfiguration]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentConfigRow)
                .where(AgentConfigRow.agent_name == agent_name)
                .order_by(col(AgentConfigRow.version).asc()),
            ).all()
            return [_to_config(row) for row in rows]

    def activate_config_version(
        self,
        *,
        config: AgentConfiguration,
        audit_event_type: str,
        audit_metadata: dict[str, Any],
        project_id: str | None = None,
    ) -> AgentConfiguration:
        """Deactivate the current version and insert ``config`` as active in one transaction."""

        now = utc_now()
        config_id = str(uuid4())
        with Session(self.engine) as session:
            session.exec(
                sa_update(AgentConfigRow)
                .where(
                    col(AgentConfigRow.agent_name) == config.agent_name,
                    col(AgentConfigRow.is_active).is_(True),
                )
                .values(is_active=False),
            )
            session.add(
                AgentConfigRow(
                    config_id=config_id,
                    agent_name=config.agent_name,
                    version=config.version,
                    prompt_template=config.prompt_template,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                    tool_config_json=_dumps(config.tool_config),
                    is_active=True,
                    created_at=now,
                ),
            )
            session.add(
                AuditLogRow(
                    event_type=audit_event_type,
                    severity="warning",
                    user_id="system",
                    project_id=project_id,
                    metadata_json=_dumps(audit_metadata),
                    created_at=now,
                ),
            )
            session.commit()
        config.config_id = config_id
        config.is_active = True
        config.created_at = now
        return config

    def list_audit_events(self, *, event_type: str | None = None) -> list[AuditEventView]:
        with Session(self.engine) as session:
            query = select(AuditLogRow)
            if event_type is not None:
                query = query.where(AuditLogRow.event_type == event_type)
            rows = session.exec(query.order_by(col(AuditLogRow.id).asc())).all()
            return [
                AuditEventView(
                    event_type=row.event_type,
                    severity=row.severity,
                    user_id=row.user_id,
                    project_id=row.project_id,
                    metadata=_loads(row.metadata_json),
                    created_at=to_utc_aware(row.created_at),
                )
                for row in rows
            ]

    # Project settings

    def get_project_settings(self, *, project_id: str) -> ProjectSettings | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProjectSettingsRow).where(ProjectSettingsRow.project_id == project_id),
            ).one_or_none()
            if row is None:
                return None
            return ProjectSettings(
                project_id=row.project_id,
                closed_loop_mode=row.closed_loop_mode,
                max_iterations=row.max_iterations,
            )

    def upsert_project_settings(self, settings: ProjectSettings) -> ProjectSettings:
        if settings.max_iterations < 0:
            raise ValidationFailedError("max_iterations must be >= 0")
        with Session(self.engine) as session:
            row = session.exec(
                select(ProjectSettingsRow).where(
                    ProjectSettingsRow.project_id == settings.project_id,
                ),
            ).one_or_none()
            if row is None:
                row = ProjectSettingsRow(project_id=settings.project_id, updated_at=utc_now())
            row.closed_loop_mode = settings.closed_loop_mode
            row.max_iterations = settings.max_iterations
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
        return settings


def _dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _loads(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    payload = json.loads(raw)
    return payload if isinstance(payload, dict) else {}


def _to_run_view(row: AgentRunRow) -> RunView:
    context = AgentContext.from_dict(_loads(row.context_json))
    context.run_id = row.run_id
    return RunView(
        run_id=row.run_id,
        agent_name=row.agent_name,
        user_id=row.user_id,
        project_id=row.project_id,
        status=RunStatus(row.status),
        context=context,
        parent_run_id=row.parent_run_id,
        iteration_count=row.iteration_count,
        closed_loop_status=ClosedLoopStatus(row.closed_loop_status),
        error_summary=row.error_summary,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        started_at=to_utc_aware_optional(row.started_at),
        finished_at=to_utc_aware_optional(row.finished_at),
    )


def _to_evaluation(row: AgentEvaluationRow) -> EvaluationResult:
    return EvaluationResult(
        evaluation_id=row.evaluation_id,
        run_id=row.run_id,
        user_id=row.user_id,
        project_id=row.project_id,
        task_type=row.task_type,
        metric_scores={key: float(value) for key, value in _loads(row.metric_scores_json).items()},
        overall=row.overall,
        needs_fix=row.needs_fix,
        notes=row.notes or "",
        consensus_details=_loads(row.consensus_json) if row.consensus_json else None,
        created_at=to_utc_aware(row.created_at),
    )


def _to_feedback_view(row: UserFeedbackRow) -> FeedbackView:
    return FeedbackView(
        feedback_id=row.feedback_id,
        run_id=row.run_id,
        user_id=row.user_id,
        rating=row.rating,
        comment=row.comment,
        created_at=to_utc_aware(row.created_at),
    )


def _to_config(row: AgentConfigRow) -> AgentConfiguration:
    return AgentConfiguration(
        config_id=row.config_id,
        agent_name=row.agent_name,
        prompt_template=row.prompt_template,
        temperature=row.temperature,
        max_tokens=row.max_tokens,
        tool_config=_loads(row.tool_config_json),
        version=row.version,
        is_active=row.is_active,
        created_at=to_utc_aware(row.created_at),
    )
