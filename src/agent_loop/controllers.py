"""Controllers for agent-loop CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_loop.config import Settings
from agent_loop.jobs.models import JobStatus
from agent_loop.llm.client import LlmClient
from agent_loop.models import AgentContext, ProjectSettings, RunView
from agent_loop.runtime import WORKER_QUEUES, Runtime, open_runtime


@dataclass(slots=True)
class AgentsListCommand:
    db_path: Path | None


@dataclass(slots=True)
class AgentRunCommand:
    """CLI input for a single persisted agent run."""

    db_path: Path | None
    agent_name: str
    user_id: str
    project_id: str | None
    prompt: str | None
    wizard_answers: str | None
    show_content: bool = False


@dataclass(slots=True)
class RunInspectCommand:
    db_path: Path | None
    run_id: str


@dataclass(slots=True)
class ProjectSetCommand:
    db_path: Path | None
    project_id: str
    closed_loop: bool
    max_iterations: int


@dataclass(slots=True)
class FeedbackSubmitCommand:
    db_path: Path | None
    run_id: str
    user_id: str
    rating: int
    comment: str | None


@dataclass(slots=True)
class RepairCheckCommand:
    db_path: Path | None
    agent_name: str
    project_id: str | None


@dataclass(slots=True)
class RepairScheduleCommand:
    db_path: Path | None
    agent_names: tuple[str, ...]


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    queue_name: str
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1
    concurrency: int | None = None


@dataclass(slots=True)
class QueueCommand:
    db_path: Path | None
    queue_name: str | None


class AgentLoopCliController:
    """Coordinates agent runs, closed-loop workers and inspection CLI operations."""

    def __init__(self, llm_client: LlmClient | None = None) -> None:
        self.llm_client = llm_client

    def list_agents(self, command: AgentsListCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            agents = runtime.registry.list()
            lines = [f"Agents: {len(agents)}"]
            for agent in agents:
                active = runtime.repository.get_active_config(agent_name=agent.name)
                version = str(active.version) if active is not None else "-"
                lines.append(
                    f"  {agent.name} needs_context={agent.needs_context} "
                    f"config_version={version} - {agent.description}",
                )
        return lines

    def run_agent(self, command: AgentRunCommand) -> list[str]:
        extra: dict[str, Any] = {}
        if command.prompt:
            extra["prompt"] = command.prompt
        context = AgentContext(
            user_id=command.user_id,
            project_id=command.project_id,
            wizard_answers=_parse_json_object(command.wizard_answers, option="--wizard-answers"),
            extra=extra,
        )
        with self._runtime(command.db_path) as runtime:
            outcome = runtime.runner.run_agent_with_persistence(command.agent_name, context)
            run = runtime.repository.require_run(run_id=outcome.run_id)

        lines = [
            f"Run: {run.run_id} agent={run.agent_name} status={run.status.value} "
            f"closed_loop={run.closed_loop_status.value}",
            f"Artifacts: {len(outcome.output.artifacts)}",
        ]
        for artifact in outcome.output.artifacts:
            lines.append(f"  [{artifact.type}] {artifact.title} ({len(artifact.content)} chars)")
            if command.show_content:
                lines.append(artifact.content)
        return lines

    def inspect_run(self, command: RunInspectCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            repository = runtime.repository
            run = repository.get_run(run_id=command.run_id)
            if run is None:
                return [f"Run not found: {command.run_id}"]
            artifacts = repository.list_artifacts(run_id=run.run_id)
            usages = repository.list_context_usages(run_id=run.run_id)
            evaluation = repository.latest_evaluation(run_id=run.run_id)
            final_scores = repository.list_final_scores(run_id=run.run_id)
            fixes = repository.list_fixes(run_id=run.run_id)
            feedback = repository.latest_feedback(run_id=run.run_id)

        lines = [
            *_run_lines(run),
            f"Artifacts: {len(artifacts)}",
            *(f"  [{artifact.type}] {artifact.title}" for artifact in artifacts),
            f"Context slices: {len(usages)}",
        ]
        if evaluation is None:
            lines.append("Evaluation: -")
        else:
            lines.append(
                f"Evaluation: overall={evaluation.overall:.3f} needs_fix={evaluation.needs_fix} "
                f"task_type={evaluation.task_type}",
            )
            for name, value in sorted(evaluation.metric_scores.items()):
                lines.append(f"  {name}={value:g}")
        for score in final_scores:
            lines.append(
                f"Final score: {score.final_score:.3f} "
                f"(automated={score.automated_score:.3f} rating={score.human_rating})",
            )
        if feedback is not None:
            lines.append(f"Feedback: rating={feedback.rating} comment={feedback.comment or '-'}")
        lines.append(f"Fixes: {len(fixes)}")
        for fix in fixes:
            lines.append(f"  {fix.diff_summary} (score before={fix.eval_score_before})")
        return lines

    def run_chain(self, command: RunInspectCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            chain = runtime.repository.run_chain(run_id=command.run_id)
            evaluations = {
                run.run_id: runtime.repository.latest_evaluation(run_id=run.run_id)
                for run in chain
            }

        lines = [f"Chain length: {len(chain)}"]
        for run in chain:
            evaluation = evaluations.get(run.run_id)
            overall = f"{evaluation.overall:.3f}" if evaluation is not None else "-"
            lines.append(
                f"  #{run.iteration_count} {run.run_id} status={run.status.value} "
                f"closed_loop={run.closed_loop_status.value} overall={overall}",
            )
        return lines

    def set_project(self, command: ProjectSetCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            settings = runtime.repository.upsert_project_settings(
                ProjectSettings(
                    project_id=command.project_id,
                    closed_loop_mode=command.closed_loop,
                    max_iterations=command.max_iterations,
                ),
            )
        return [
            f"Project {settings.project_id}: closed_loop={settings.closed_loop_mode} "
            f"max_iterations={settings.max_iterations}",
        ]

    def submit_feedback(self, command: FeedbackSubmitCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            feedback = runtime.feedback.submit_feedback(
                run_id=command.run_id,
                user_id=command.user_id,
                rating=command.rating,
                comment=command.comment,
            )
            final_scores = runtime.repository.list_final_scores(run_id=command.run_id)

        lines = [f"Feedback stored: run={feedback.run_id} rating={feedback.rating}"]
        if final_scores:
            lines.append(f"Final score: {final_scores[-1].final_score:.3f}")
        return lines

    def check_repair(self, command: RepairCheckCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            runtime.registry.get(command.agent_name)
            repaired = runtime.self_repair.check_and_repair_agent(
                command.agent_name,
                command.project_id,
            )
            active = runtime.repository.get_active_config(agent_name=command.agent_name)
        version = str(active.version) if active is not None else "-"
        return [f"Agent {command.agent_name}: repaired={repaired} active_version={version}"]

    def schedule_repair(self, command: RepairScheduleCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            agent_names = command.agent_names or tuple(
                agent.name for agent in runtime.registry.list()
            )
            jobs = runtime.repair_scheduler.schedule(agent_names)
        return [
            f"Health checks scheduled: {len(jobs)}",
            *(f"  {job.payload.get('agent_name')} job_id={job.job_id}" for job in jobs),
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            worker = runtime.worker(command.queue_name, concurrency=command.concurrency)
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            f"Worker summary ({command.queue_name}): "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"idle_polls={summary.idle_polls}",
        ]

    def queue_stats(self, command: QueueCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            names = _queue_names(runtime, command.queue_name)
            stats = [runtime.queue.stats(name) for name in names]

        lines = []
        for item in stats:
            counts = " ".join(f"{status.value}={item.count(status)}" for status in JobStatus)
            lines.append(f"{item.queue_name}: {counts}")
        return lines or ["No queues."]

    def purge_queue(self, command: QueueCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            names = _queue_names(runtime, command.queue_name)
            summaries = [(name, runtime.queue.purge(name)) for name in names]
        return [
            f"Purged {name}: succeeded={summary.succeeded_removed} failed={summary.failed_removed}"
            for name, summary in summaries
        ] or ["No queues."]

    @contextmanager
    def _runtime(self, db_path: Path | None) -> Iterator[Runtime]:
        settings = Settings.from_env(db_path=db_path)
        with open_runtime(settings, llm_client=self.llm_client) as runtime:
            yield runtime


def _run_lines(run: RunView) -> list[str]:
    return [
        f"Run: {run.run_id}",
        f"Agent: {run.agent_name}",
        f"Status: {run.status.value}",
        f"Closed loop: {run.closed_loop_status.value}",
        f"Parent: {run.parent_run_id or '-'}",
        f"Iteration: {run.iteration_count}",
        f"Project: {run.project_id or '-'}",
        f"Error: {run.error_summary or '-'}",
        f"Created: {run.created_at.isoformat()}",
    ]


def _queue_names(runtime: Runtime, queue_name: str | None) -> list[str]:
    if queue_name is not None:
        return [queue_name]
    return sorted(set(runtime.queue.queue_names()) | set(WORKER_QUEUES))


def _parse_json_object(raw: str | None, *, option: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"{option} must be valid JSON: {error.msg}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"{option} must be a JSON object")
    return payload
