"""Execute one agent with durable run lifecycle, enrichment and closed-loop hand-off."""

from __future__ import annotations

import logging
from dataclasses import replace

from sqlalchemy.exc import SQLAlchemyError

from agent_loop.agents.base import Agent
from agent_loop.agents.context import (
    DEFAULT_CONTEXT_MAX_TOKENS,
    ContextBuilder,
    NullContextBuilder,
)
from agent_loop.agents.registry import AgentRegistry
from agent_loop.errors import (
    AgentRunFailedError,
    AppError,
    PersistFailedError,
    RunCreateFailedError,
)
from agent_loop.jobs.models import CLOSED_LOOP_QUEUE
from agent_loop.jobs.queue import JobQueue
from agent_loop.models import (
    AgentContext,
    AgentResult,
    Artifact,
    ClosedLoopStatus,
    ContextSliceUsage,
    RunLineage,
    RunOutcome,
    RunStatus,
    RunView,
)
from agent_loop.repository import AgentRepository

logger = logging.getLogger(__name__)

EVALUATE_RUN_JOB = "evaluate_run"


class AgentRunner:
    """Runs agents and keeps the run record truthful.

    A run always ends ``succeeded`` or ``failed``; only failures of the agent
    itself (or of context building) fail the run. Artifact writes, context-usage
    records and closed-loop scheduling are best-effort.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: AgentRepository,
        registry: AgentRegistry,
        queue: JobQueue,
        context_builder: ContextBuilder | None = None,
        closed_loop_default: bool = False,
        context_max_tokens: int = DEFAULT_CONTEXT_MAX_TOKENS,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.queue = queue
        self.context_builder = context_builder or NullContextBuilder()
        self.closed_loop_default = closed_loop_default
        self.context_max_tokens = context_max_tokens

    def run_agent_with_persistence(
        self,
        agent_name: str,
        context: AgentContext,
        *,
        lineage: RunLineage | None = None,
    ) -> RunOutcome:
        """Run ``agent_name`` and persist the run.

        Closed-loop children pass ``lineage``; they start ``in_progress`` and are
        never scheduled for evaluation here, the loop controller chains them.
        """

        agent = self.registry.get(agent_name)
        try:
            run = self.repository.create_run(
                agent_name=agent_name,
                context=context,
                lineage=lineage,
                closed_loop_status=(
                    ClosedLoopStatus.IN_PROGRESS if lineage is not None else ClosedLoopStatus.NONE
                ),
            )
        except SQLAlchemyError as error:
            raise RunCreateFailedError(
                f"Failed to create run for agent {agent_name}",
                details={"agent_name": agent_name},
            ) from error

        run_id = run.run_id
        logger.info("Agent run %s started: agent=%s", run_id, agent_name)
        try:
            self.repository.transition_run(run_id=run_id, status=RunStatus.RUNNING)
            run_context = self._prepare_context(agent=agent, context=context, run_id=run_id)
            result = agent.run(run_context)
        except Exception as error:
            self._mark_failed(run_id=run_id, error=error)
            if isinstance(error, AppError):
                raise
            raise AgentRunFailedError(agent_name, run_id, error) from error

        self._save_artifacts(run_id=run_id, artifacts=result.artifacts)
        try:
            self.repository.transition_run(run_id=run_id, status=RunStatus.SUCCEEDED)
        except SQLAlchemyError as error:
            self._mark_failed(run_id=run_id, error=error)
            raise PersistFailedError(
                f"Failed to record success of run {run_id}",
                details={"run_id": run_id, "agent_name": agent_name},
            ) from error
        logger.info(
            "Agent run %s succeeded: agent=%s artifacts=%d",
            run_id,
            agent_name,
            len(result.artifacts),
        )

        if lineage is None:
            self._maybe_start_closed_loop(run)
        return RunOutcome(run_id=run_id, output=result)

    def closed_loop_enabled(self, project_id: str | None) -> bool:
        if project_id is None:
            return False
        settings = self.repository.get_project_settings(project_id=project_id)
        if settings is None:
            return self.closed_loop_default
        return settings.closed_loop_mode

    def _prepare_context(self, *, agent: Agent, context: AgentContext, run_id: str) -> AgentContext:
        run_context = replace(
            context,
            extra=dict(context.extra),
            config=dict(context.config),
            run_id=run_id,
        )
        self._inject_active_config(agent_name=agent.name, context=run_context)

        if not agent.needs_context or context.project_id is None:
            return run_context

        built = self.context_builder.build_context(
            user_id=context.user_id,
            project_id=context.project_id,
            task_type=agent.context_task_type or "general",
            max_tokens=self.context_max_tokens,
        )
        if built.user_prompt:
            run_context.extra["enriched_context"] = built.user_prompt
        if built.system_prompt:
            run_context.extra["enriched_system_prompt"] = built.system_prompt
        logger.info(
            "Context injected for run %s: agent=%s slices=%d",
            run_id,
            agent.name,
            len(built.slices),
        )

        try:
            self.repository.add_context_usages(
                run_id=run_id,
                slices=[
                    ContextSliceUsage(slice_type=item.type, weight=item.weight, source=item.source)
                    for item in built.slices
                ],
            )
        except SQLAlchemyError:
            logger.warning("Failed to record context usage for run %s", run_id, exc_info=True)
        return run_context

    def _inject_active_config(self, *, agent_name: str, context: AgentContext) -> None:
        try:
            active = self.repository.get_active_config(agent_name=agent_name)
        except SQLAlchemyError:
            logger.warning("Failed to load active config for %s", agent_name, exc_info=True)
            return
        if active is None:
            return
        merged = active.to_context_config()
        merged.update(context.config)
        context.config = merged

    def _save_artifacts(self, *, run_id: str, artifacts: list[Artifact]) -> None:
        for position, artifact in enumerate(artifacts):
            try:
                self.repository.add_artifact(run_id=run_id, position=position, artifact=artifact)
            except SQLAlchemyError:
                logger.warning(
                    "Failed to store artifact %d (%s) for run %s",
                    position,
                    artifact.title,
                    run_id,
                    exc_info=True,
                )

    def _mark_failed(self, *, run_id: str, error: Exception) -> None:
        logger.error("Agent run %s failed: %s", run_id, error)
        try:
            self.repository.transition_run(
                run_id=run_id,
                status=RunStatus.FAILED,
                error_summary=f"{type(error).__name__}: {error}",
            )
        except (AppError, SQLAlchemyError):
            logger.exception("Failed to mark run %s as failed", run_id)

    def _maybe_start_closed_loop(self, run: RunView) -> None:
        # Pending precedes the job; a worker may finish the job before enqueue returns.
        try:
            if not self.closed_loop_enabled(run.project_id):
                return
            self.repository.set_closed_loop_status(
                run_id=run.run_id,
                status=ClosedLoopStatus.PENDING,
            )
        except (AppError, SQLAlchemyError):
            logger.exception("Failed to schedule closed loop for run %s", run.run_id)
            return

        try:
            self.queue.enqueue(
                CLOSED_LOOP_QUEUE,
                EVALUATE_RUN_JOB,
                {
                    "run_id": run.run_id,
                    "project_id": run.project_id,
                    "user_id": run.user_id,
                    "iteration_count": run.iteration_count,
                },
            )
        except (AppError, SQLAlchemyError):
            logger.exception("Failed to enqueue closed-loop evaluation for run %s", run.run_id)
            try:
                self.repository.set_closed_loop_status(
                    run_id=run.run_id,
                    status=ClosedLoopStatus.NONE,
                )
            except (AppError, SQLAlchemyError):
                logger.exception("Failed to reset closed-loop status for run %s", run.run_id)
            return
        logger.info("Closed loop scheduled for run %s", run.run_id)


def joined_output(result: AgentResult | list[Artifact]) -> str:
    """Plain-text rendering of artifacts used as evaluation input."""

    artifacts = result.artifacts if isinstance(result, AgentResult) else result
    return "\n\n".join(
        f"## {artifact.title}\n{artifact.content}" if artifact.title else artifact.content
        for artifact in artifacts
    )
