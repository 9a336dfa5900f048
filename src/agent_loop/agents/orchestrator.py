"""Orchestrator agent: runs the design, workflow and content agents as one plan."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from agent_loop.agents.llm_agents import CONTENT_STRATEGIST, DESIGN_SPEC, WORKFLOW_DESIGNER
from agent_loop.agents.registry import AgentRegistry
from agent_loop.errors import AppError
from agent_loop.messaging.bus import AgentMessageBus
from agent_loop.messaging.models import BROADCAST
from agent_loop.models import AgentContext, AgentResult, Artifact

logger = logging.getLogger(__name__)

ORCHESTRATOR = "orchestrator"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class OrchestratorTask:
    id: str
    type: str
    agent: str
    status: TaskStatus = TaskStatus.PENDING
    dependencies: tuple[str, ...] = ()
    error: str | None = None
    artifacts: list[Artifact] = field(default_factory=list)


def plan_tasks() -> list[OrchestratorTask]:
    return [
        OrchestratorTask(id="design", type="design_spec", agent=DESIGN_SPEC),
        OrchestratorTask(
            id="workflow",
            type="workflow_design",
            agent=WORKFLOW_DESIGNER,
            dependencies=("design",),
        ),
        OrchestratorTask(
            id="content",
            type="content_strategy",
            agent=CONTENT_STRATEGIST,
            dependencies=("design",),
        ),
    ]


class OrchestratorAgent:
    """Runs every planned task in list order and concatenates their artifacts.

    Task ``dependencies`` are recorded for observers but do not gate execution:
    a task runs even when a task it depends on failed. One failing sub-agent
    never aborts the plan.
    """

    name = ORCHESTRATOR
    description = "Master agent that coordinates design, workflow and content generation"
    needs_context = True
    context_task_type = "general"

    def __init__(self, *, registry: AgentRegistry, bus: AgentMessageBus | None = None) -> None:
        self.registry = registry
        self.bus = bus
        self._lock = threading.Lock()
        self.tasks: dict[str, OrchestratorTask] = {}

    def run(self, context: AgentContext) -> AgentResult:
        tasks = {task.id: task for task in plan_tasks()}
        with self._lock:
            self.tasks = tasks

        # Sub-agents run on their own defaults, not the orchestrator config.
        sub_context = replace(context, config={})
        artifacts: list[Artifact] = []
        for task in tasks.values():
            if task.status != TaskStatus.PENDING:
                continue
            task.status = TaskStatus.RUNNING
            self._publish("task_started", task, context)
            try:
                result = self.registry.get(task.agent).run(sub_context)
            except Exception as error:  # noqa: BLE001
                task.status = TaskStatus.FAILED
                task.error = f"{type(error).__name__}: {error}"
                logger.warning("Orchestrator task %s (%s) failed: %s", task.id, task.agent, error)
                self._publish("task_failed", task, context)
                continue
            task.artifacts = list(result.artifacts)
            task.status = TaskStatus.COMPLETED
            artifacts.extend(result.artifacts)
            self._publish("task_completed", task, context)

        logger.info(
            "Orchestrator finished: completed=%d failed=%d artifacts=%d",
            sum(1 for task in tasks.values() if task.status == TaskStatus.COMPLETED),
            sum(1 for task in tasks.values() if task.status == TaskStatus.FAILED),
            len(artifacts),
        )
        return AgentResult(artifacts=artifacts)

    def _publish(self, event: str, task: OrchestratorTask, context: AgentContext) -> None:
        if self.bus is None:
            return
        data: dict[str, Any] = {
            "task_id": task.id,
            "task_type": task.type,
            "agent": task.agent,
            "status": task.status.value,
            "dependencies": list(task.dependencies),
            "run_id": context.run_id,
            "project_id": context.project_id,
        }
        if task.error is not None:
            data["error"] = task.error
        try:
            self.bus.notify(BROADCAST, event, data, sender=ORCHESTRATOR)
        except (AppError, SQLAlchemyError):
            logger.warning("Failed to publish %s for task %s", event, task.id, exc_info=True)
