"""Process-wide wiring of registry, queue, bus and controllers."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from agent_loop.agents.auto_fix import AutoFixAgent
from agent_loop.agents.context import ContextBuilder
from agent_loop.agents.llm_agents import build_builtin_agents
from agent_loop.agents.orchestrator import OrchestratorAgent
from agent_loop.agents.registry import AgentRegistry
from agent_loop.agents.runner import AgentRunner
from agent_loop.agents.self_repair import SelfRepairController, SelfRepairScheduler
from agent_loop.closed_loop import ClosedLoopController
from agent_loop.config import Settings
from agent_loop.evaluation.engine import EvaluationEngine
from agent_loop.evaluation.feedback import FeedbackService
from agent_loop.evaluation.matrix import load_eval_matrix
from agent_loop.jobs.models import CLOSED_LOOP_QUEUE, SELF_REPAIR_QUEUE, BackoffPolicy
from agent_loop.jobs.queue import JobQueue
from agent_loop.jobs.repository import JobRepository
from agent_loop.jobs.worker import JobHandler, QueueWorker
from agent_loop.llm.client import HttpLlmClient, LlmClient
from agent_loop.messaging.bus import AgentMessageBus
from agent_loop.repository import AgentRepository

logger = logging.getLogger(__name__)

WORKER_QUEUES = (CLOSED_LOOP_QUEUE, SELF_REPAIR_QUEUE)


@dataclass(slots=True)
class Runtime:
    """Single-instance services shared by CLI commands and workers."""

    settings: Settings
    repository: AgentRepository
    job_repository: JobRepository
    queue: JobQueue
    llm: LlmClient
    registry: AgentRegistry
    bus: AgentMessageBus
    runner: AgentRunner
    evaluation: EvaluationEngine
    feedback: FeedbackService
    auto_fixer: AutoFixAgent
    closed_loop: ClosedLoopController
    self_repair: SelfRepairController
    repair_scheduler: SelfRepairScheduler
    _owned_llm: HttpLlmClient | None = field(default=None, repr=False)

    def handlers_for(self, queue_name: str) -> dict[str, JobHandler]:
        if queue_name == CLOSED_LOOP_QUEUE:
            return self.closed_loop.handlers()
        if queue_name == SELF_REPAIR_QUEUE:
            return self.repair_scheduler.handlers()
        raise ValueError(f"Unknown worker queue: {queue_name}")

    def worker(self, queue_name: str, *, concurrency: int | None = None) -> QueueWorker:
        return QueueWorker(
            queue=self.queue,
            queue_name=queue_name,
            handlers=self.handlers_for(queue_name),
            worker_id=self.settings.queue.worker_id,
            concurrency=concurrency or self.settings.queue.concurrency,
            poll_interval_seconds=self.settings.queue.poll_interval_seconds,
            stale_job_seconds=self.settings.queue.stale_job_seconds,
        )

    def close(self) -> None:
        self.bus.stop()
        if self._owned_llm is not None:
            self._owned_llm.close()
        self.repository.close()
        self.job_repository.close()


def register_default_agents(
    registry: AgentRegistry,
    *,
    llm: LlmClient,
    model: str,
    bus: AgentMessageBus | None = None,
) -> None:
    for agent in build_builtin_agents(llm, model=model):
        registry.register(agent)
    registry.register(OrchestratorAgent(registry=registry, bus=bus))


def build_runtime(
    settings: Settings,
    *,
    llm_client: LlmClient | None = None,
    context_builder: ContextBuilder | None = None,
) -> Runtime:
    """Construct every service once; migrations run before anything touches the DB."""

    settings.validate()
    repository = AgentRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    job_repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    queue = JobQueue(
        job_repository,
        default_attempts=settings.queue.attempts,
        default_backoff=BackoffPolicy(delay_ms=settings.queue.backoff_ms),
    )

    owned_llm: HttpLlmClient | None = None
    if llm_client is None:
        owned_llm = HttpLlmClient(
            base_url=settings.llm.base_url,
            api_key=settings.llm.api_key,
            timeout_seconds=settings.llm.timeout_seconds,
        )
        llm_client = owned_llm

    bus = AgentMessageBus(
        queue=queue,
        worker_id=settings.queue.worker_id,
        default_timeout_seconds=settings.queue.bus_request_timeout_seconds,
    )
    registry = AgentRegistry()
    register_default_agents(
        registry,
        llm=llm_client,
        model=settings.llm.default_model,
        bus=bus,
    )
    runner = AgentRunner(
        repository=repository,
        registry=registry,
        queue=queue,
        context_builder=context_builder,
        closed_loop_default=settings.closed_loop.default_enabled,
    )
    evaluation = EvaluationEngine(
        repository=repository,
        llm=llm_client,
        matrix=load_eval_matrix(settings.evaluation.matrix_path),
        default_model=settings.evaluation.model,
        default_models=settings.rater_models(),
    )
    auto_fixer = AutoFixAgent(
        repository=repository,
        llm=llm_client,
        model=settings.evaluation.autofix_model,
    )
    closed_loop = ClosedLoopController(
        repository=repository,
        runner=runner,
        engine=evaluation,
        auto_fixer=auto_fixer,
        queue=queue,
        default_max_iterations=settings.closed_loop.default_max_iterations,
    )
    self_repair = SelfRepairController(
        repository=repository,
        llm=llm_client,
        model=settings.self_repair.model,
        sample_size=settings.self_repair.sample_size,
        min_sample_size=settings.self_repair.min_sample_size,
        failure_threshold=settings.self_repair.failure_threshold,
    )
    logger.debug("Runtime built: db=%s agents=%d", settings.db_path, len(registry.list()))
    return Runtime(
        settings=settings,
        repository=repository,
        job_repository=job_repository,
        queue=queue,
        llm=llm_client,
        registry=registry,
        bus=bus,
        runner=runner,
        evaluation=evaluation,
        feedback=FeedbackService(repository=repository, engine=evaluation),
        auto_fixer=auto_fixer,
        closed_loop=closed_loop,
        self_repair=self_repair,
        repair_scheduler=SelfRepairScheduler(
            queue=queue,
            controller=self_repair,
            interval_seconds=settings.self_repair.interval_seconds,
        ),
        _owned_llm=owned_llm,
    )


@contextmanager
def open_runtime(settings: Settings, *, llm_client: LlmClient | None = None) -> Iterator[Runtime]:
    runtime = build_runtime(settings, llm_client=llm_client)
    try:
        yield runtime
    finally:
        runtime.close()
