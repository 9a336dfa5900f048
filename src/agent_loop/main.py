"""CLI entrypoint for agent-loop."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_loop import __version__
from agent_loop.controllers import (
    AgentLoopCliController,
    AgentRunCommand,
    AgentsListCommand,
    FeedbackSubmitCommand,
    ProjectSetCommand,
    QueueCommand,
    RepairCheckCommand,
    RepairScheduleCommand,
    RunInspectCommand,
    WorkerRunCommand,
)
from agent_loop.errors import AppError
from agent_loop.runtime import WORKER_QUEUES

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentLoopCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-loop")
@click.option("--verbose", is_flag=True, default=False, help="Log progress to stderr.")
def agent_loop(verbose: bool) -> None:
    """Agent runs with closed-loop evaluation and self-repair."""

    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@agent_loop.group()
def agents() -> None:
    """Agent registry and execution commands."""


@agents.command("list")
@_db_path_option
def agents_list(db_path: Path | None) -> None:
    """List registered agents with their active configuration version."""

    _emit_lines(_guarded(lambda: CONTROLLER.list_agents(AgentsListCommand(db_path=db_path))))


@agents.command("run")
@_db_path_option
@click.argument("agent_name")
@click.option("--user-id", required=True, help="Owner of the run.")
@click.option("--project-id", default=None, help="Project the run belongs to.")
@click.option("--prompt", default=None, help="User request passed to the agent.")
@click.option(
    "--wizard-answers",
    default=None,
    help="JSON object with project wizard answers.",
)
@click.option(
    "--show-content/--no-show-content",
    default=False,
    show_default=True,
    help="Print artifact content after the summary.",
)
def agents_run(  # noqa: PLR0913
    db_path: Path | None,
    agent_name: str,
    user_id: str,
    project_id: str | None,
    prompt: str | None,
    wizard_answers: str | None,
    show_content: bool,
) -> None:
    """Run one agent and persist the run, its artifacts and closed-loop hand-off."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_agent(
                AgentRunCommand(
                    db_path=db_path,
                    agent_name=agent_name,
                    user_id=user_id,
                    project_id=project_id,
                    prompt=prompt,
                    wizard_answers=wizard_answers,
                    show_content=show_content,
                ),
            ),
        ),
    )


@agent_loop.group()
def runs() -> None:
    """Run inspection commands."""


@runs.command("inspect")
@_db_path_option
@click.argument("run_id")
def runs_inspect(db_path: Path | None, run_id: str) -> None:
    """Show one run with artifacts, evaluation, feedback and fixes."""

    _emit_lines(_guarded(lambda: CONTROLLER.inspect_run(RunInspectCommand(db_path, run_id))))


@runs.command("chain")
@_db_path_option
@click.argument("run_id")
def runs_chain(db_path: Path | None, run_id: str) -> None:
    """Show the closed-loop parent/child chain containing a run."""

    _emit_lines(_guarded(lambda: CONTROLLER.run_chain(RunInspectCommand(db_path, run_id))))


@agent_loop.group()
def project() -> None:
    """Per-project closed-loop settings."""


@project.command("set")
@_db_path_option
@click.argument("project_id")
@click.option(
    "--closed-loop/--no-closed-loop",
    default=True,
    show_default=True,
    help="Evaluate and auto-fix successful runs of this project.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=0),
    default=3,
    show_default=True,
    help="Maximum auto-fix re-runs per chain.",
)
def project_set(
    db_path: Path | None,
    project_id: str,
    closed_loop: bool,
    max_iterations: int,
) -> None:
    """Create or update project closed-loop settings."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.set_project(
                ProjectSetCommand(
                    db_path=db_path,
                    project_id=project_id,
                    closed_loop=closed_loop,
                    max_iterations=max_iterations,
                ),
            ),
        ),
    )


@agent_loop.group()
def feedback() -> None:
    """User feedback commands."""


@feedback.command("submit")
@_db_path_option
@click.argument("run_id")
@click.option("--user-id", required=True, help="Who is rating the run.")
@click.option("--rating", type=click.IntRange(min=1, max=5), required=True, help="1-5 rating.")
@click.option("--comment", default=None, help="Optional free-text comment.")
def feedback_submit(
    db_path: Path | None,
    run_id: str,
    user_id: str,
    rating: int,
    comment: str | None,
) -> None:
    """Rate a run and blend the rating into its final score."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.submit_feedback(
                FeedbackSubmitCommand(
                    db_path=db_path,
                    run_id=run_id,
                    user_id=user_id,
                    rating=rating,
                    comment=comment,
                ),
            ),
        ),
    )


@agent_loop.group()
def repair() -> None:
    """Agent self-repair commands."""


@repair.command("check")
@_db_path_option
@click.argument("agent_name")
@click.option("--project-id", default=None, help="Project recorded on the audit event.")
def repair_check(db_path: Path | None, agent_name: str, project_id: str | None) -> None:
    """Check an agent's recent failure rate now and repair it if needed."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.check_repair(
                RepairCheckCommand(db_path=db_path, agent_name=agent_name, project_id=project_id),
            ),
        ),
    )


@repair.command("schedule")
@_db_path_option
@click.option(
    "--agent",
    "agent_names",
    multiple=True,
    help="Agent to check. Can be repeated. Defaults to every registered agent.",
)
def repair_schedule(db_path: Path | None, agent_names: tuple[str, ...]) -> None:
    """Enqueue this hour's health checks; repeated calls within the hour are no-ops."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.schedule_repair(
                RepairScheduleCommand(db_path=db_path, agent_names=agent_names),
            ),
        ),
    )


@agent_loop.group()
def worker() -> None:
    """Queue worker commands."""


@worker.command("run")
@_db_path_option
@click.option(
    "--queue",
    "queue_name",
    type=click.Choice(WORKER_QUEUES),
    required=True,
    help="Queue to consume.",
)
@click.option("--once", is_flag=True, default=False, help="Process at most one batch.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Jobs processed in parallel (defaults to AGENT_LOOP_QUEUE_CONCURRENCY).",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    queue_name: str,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    concurrency: int | None,
) -> None:
    """Run a closed-loop or self-repair worker."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_worker(
                WorkerRunCommand(
                    db_path=db_path,
                    queue_name=queue_name,
                    once=once,
                    max_jobs=max_jobs,
                    max_idle_polls=max_idle_polls,
                    concurrency=concurrency,
                ),
            ),
        ),
    )


@agent_loop.group()
def queue() -> None:
    """Job queue maintenance commands."""


@queue.command("stats")
@_db_path_option
@click.option("--queue", "queue_name", default=None, help="Only this queue.")
def queue_stats(db_path: Path | None, queue_name: str | None) -> None:
    """Show job counts per status."""

    _emit_lines(_guarded(lambda: CONTROLLER.queue_stats(QueueCommand(db_path, queue_name))))


@queue.command("purge")
@_db_path_option
@click.option("--queue", "queue_name", default=None, help="Only this queue.")
def queue_purge(db_path: Path | None, queue_name: str | None) -> None:
    """Apply the retention policy to finished jobs."""

    _emit_lines(_guarded(lambda: CONTROLLER.purge_queue(QueueCommand(db_path, queue_name))))


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except AppError as error:
        raise click.ClickException(f"{error.code}: {error.message}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_loop()
