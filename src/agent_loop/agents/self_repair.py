"""Agent health checks and automatic configuration repair."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from agent_loop.errors import ValidationFailedError
from agent_loop.jobs.models import SELF_REPAIR_QUEUE, JobOptions, JobView
from agent_loop.jobs.queue import JobQueue
from agent_loop.jobs.worker import JobHandler
from agent_loop.llm.client import LlmClient, LlmRequest, system_and_user
from agent_loop.llm.json_payload import extract_json_object
from agent_loop.models import AgentConfiguration, RunStatus
from agent_loop.repository import AgentRepository
from agent_loop.storage.common import utc_now

logger = logging.getLogger(__name__)

CHECK_AGENT_HEALTH_JOB = "check_agent_health"
SELF_REPAIR_AUDIT_EVENT = "agent_self_repair"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2_000
SUGGESTION_TEMPERATURE = 0.2
MAX_TEMPERATURE = 2.0

_SYSTEM_PROMPT = "You are an expert AI systems optimizer."


@dataclass(slots=True)
class HealthSample:
    run_id: str
    status: RunStatus
    needs_fix: bool | None
    overall: float | None

    @property
    def is_failure(self) -> bool:
        return self.status == RunStatus.FAILED or bool(self.needs_fix)


@dataclass(slots=True)
class OptimizationSuggestion:
    """Proposed changes; ``None`` fields keep the current value."""

    reasoning: str
    temperature: float | None = None
    max_tokens: int | None = None
    prompt_template: str | None = None
    tool_config: dict[str, Any] | None = None


class SelfRepairController:
    """Re-tunes an agent's active configuration after a sustained failure rate.

    Repair is advisory: every failure inside a check is logged and reported
    as ``False`` so a scheduler is never brought down by it.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: AgentRepository,
        llm: LlmClient,
        model: str,
        sample_size: int = 10,
        min_sample_size: int = 5,
        failure_threshold: float = 0.6,
    ) -> None:
        self.repository = repository
        self.llm = llm
        self.model = model
        self.sample_size = sample_size
        self.min_sample_size = min_sample_size
        self.failure_threshold = failure_threshold

    def check_and_repair_agent(self, agent_name: str, project_id: str | None = None) -> bool:
        logger.info("Checking health of agent %s", agent_name)
        try:
            samples = self.health_samples(agent_name)
            if len(samples) < self.min_sample_size:
                logger.info(
                    "Not enough runs to judge agent %s: %d < %d",
                    agent_name,
                    len(samples),
                    self.min_sample_size,
                )
                return False

            failure_rate = sum(1 for sample in samples if sample.is_failure) / len(samples)
            if failure_rate < self.failure_threshold:
                logger.info("Agent %s healthy: failure_rate=%.2f", agent_name, failure_rate)
                return False

            logger.warning(
                "Agent %s unhealthy: failure_rate=%.2f, starting self-repair",
                agent_name,
                failure_rate,
            )
            current = self.current_config(agent_name)
            suggestion = self.generate_optimization(
                agent_name=agent_name,
                current=current,
                samples=samples,
                failure_rate=failure_rate,
            )
            self.apply_optimization(
                current=current,
                suggestion=suggestion,
                project_id=project_id,
            )
        except Exception:
            logger.exception("Self-repair failed for agent %s", agent_name)
            return False
        return True

    def health_samples(self, agent_name: str) -> list[HealthSample]:
        samples: list[HealthSample] = []
        for run in self.repository.list_runs(agent_name=agent_name, limit=self.sample_size):
            evaluation = self.repository.latest_evaluation(run_id=run.run_id)
            samples.append(
                HealthSample(
                    run_id=run.run_id,
                    status=run.status,
                    needs_fix=evaluation.needs_fix if evaluation is not None else None,
                    overall=evaluation.overall if evaluation is not None else None,
                ),
            )
        return samples

    def current_config(self, agent_name: str) -> AgentConfiguration:
        active = self.repository.get_active_config(agent_name=agent_name)
        if active is not None:
            return active
        return AgentConfiguration(
            agent_name=agent_name,
            prompt_template="",
            temperature=DEFAULT_TEMPERATURE,
            max_tokens=DEFAULT_MAX_TOKENS,
            tool_config={},
            version=0,
            is_active=False,
        )

    def generate_optimization(
        self,
        *,
        agent_name: str,
        current: AgentConfiguration,
        samples: list[HealthSample],
        failure_rate: float,
    ) -> OptimizationSuggestion:
        summary = [
            {"status": sample.status.value, "needs_fix": sample.needs_fix, "score": sample.overall}
            for sample in samples
        ]
        prompt = (
            f"The AI agent '{agent_name}' is underperforming with a failure rate of "
            f"{failure_rate * 100:.0f}%.\n\n"
            "Current configuration:\n"
            f"- Temperature: {current.temperature}\n"
            f"- Max tokens: {current.max_tokens}\n"
            f"- Prompt template (excerpt): {current.prompt_template[:500]}\n\n"
            f"Recent performance:\n{json.dumps(summary, indent=2)}\n\n"
            "Analyze the failures and suggest configuration changes to improve performance. "
            "You can modify temperature, maxTokens, or the prompt template.\n"
            "Respond with JSON:\n"
            '{"temperature": <number|null>, "maxTokens": <number|null>, '
            '"promptTemplate": <string|null>, "reasoning": "<explanation>"}'
        )
        response = self.llm.call(
            LlmRequest(
                model=self.model,
                messages=system_and_user(_SYSTEM_PROMPT, prompt),
                temperature=SUGGESTION_TEMPERATURE,
            ),
        )
        return parse_suggestion(response.text)

    def apply_optimization(
        self,
        *,
        current: AgentConfiguration,
        suggestion: OptimizationSuggestion,
        project_id: str | None = None,
    ) -> AgentConfiguration:
        new_config = AgentConfiguration(
            agent_name=current.agent_name,
            prompt_template=suggestion.prompt_template or current.prompt_template,
            temperature=(
                suggestion.temperature
                if suggestion.temperature is not None
                else current.temperature
            ),
            max_tokens=(
                suggestion.max_tokens if suggestion.max_tokens is not None else current.max_tokens
            ),
            tool_config=(
                suggestion.tool_config
                if suggestion.tool_config is not None
                else dict(current.tool_config)
            ),
            version=current.version + 1,
            is_active=True,
        )
        changes = _config_changes(current, new_config)
        self.repository.activate_config_version(
            config=new_config,
            audit_event_type=SELF_REPAIR_AUDIT_EVENT,
            audit_metadata={
                "agent_name": current.agent_name,
                "previous_version": current.version,
                "new_version": new_config.version,
                "changes": changes,
                "reasoning": suggestion.reasoning,
            },
            project_id=project_id,
        )
        logger.warning(
            "Agent %s repaired: version %d -> %d changes=%s",
            current.agent_name,
            current.version,
            new_config.version,
            sorted(changes),
        )
        return new_config


def parse_suggestion(text: str) -> OptimizationSuggestion:
    """Read a suggestion leniently; invalid fields mean "no change"."""

    payload = extract_json_object(text)
    if payload is None:
        logger.error("Failed to parse optimization suggestion")
        return OptimizationSuggestion(reasoning="Failed to generate valid suggestion")

    temperature = payload.get("temperature")
    if not _is_number(temperature) or not 0.0 <= float(temperature) <= MAX_TEMPERATURE:
        temperature = None
    max_tokens = payload.get("maxTokens")
    if not _is_number(max_tokens) or int(max_tokens) <= 0:
        max_tokens = None
    prompt_template = payload.get("promptTemplate")
    if not isinstance(prompt_template, str) or not prompt_template.strip():
        prompt_template = None
    tool_config = payload.get("toolConfig")
    if not isinstance(tool_config, dict):
        tool_config = None
    reasoning = payload.get("reasoning")

    return OptimizationSuggestion(
        reasoning=reasoning if isinstance(reasoning, str) else "",
        temperature=float(temperature) if temperature is not None else None,
        max_tokens=int(max_tokens) if max_tokens is not None else None,
        prompt_template=prompt_template,
        tool_config=tool_config,
    )


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _config_changes(
    current: AgentConfiguration,
    new: AgentConfiguration,
) -> dict[str, dict[str, Any]]:
    changes: dict[str, dict[str, Any]] = {}
    for key in ("prompt_template", "temperature", "max_tokens", "tool_config"):
        before = getattr(current, key)
        after = getattr(new, key)
        if before != after:
            changes[key] = {"from": before, "to": after}
    return changes


class SelfRepairScheduler:
    """Enqueues health checks on the self-repair queue."""

    def __init__(
        self,
        *,
        queue: JobQueue,
        controller: SelfRepairController,
        interval_seconds: int = 3_600,
    ) -> None:
        self.queue = queue
        self.controller = controller
        self.interval_seconds = interval_seconds

    def handlers(self) -> dict[str, JobHandler]:
        return {CHECK_AGENT_HEALTH_JOB: self._handle_check}

    def schedule_check(self, agent_name: str, project_id: str | None = None) -> JobView:
        """On-demand check."""

        return self.queue.enqueue(
            SELF_REPAIR_QUEUE,
            CHECK_AGENT_HEALTH_JOB,
            {"agent_name": agent_name, "project_id": project_id},
        )

    def schedule(
        self,
        agent_names: Iterable[str],
        *,
        now: datetime | None = None,
    ) -> list[JobView]:
        """Enqueue one check per agent for the current interval.

        Calling this more than once within the same interval is a no-op thanks
        to the per-interval job key.
        """

        bucket = int((now or utc_now()).timestamp()) // max(1, self.interval_seconds)
        return [
            self.queue.enqueue(
                SELF_REPAIR_QUEUE,
                CHECK_AGENT_HEALTH_JOB,
                {"agent_name": agent_name, "project_id": None},
                JobOptions(job_key=f"health-check:{agent_name}:{bucket}"),
            )
            for agent_name in agent_names
        ]

    def _handle_check(self, job: JobView) -> dict[str, Any]:
        agent_name = job.payload.get("agent_name")
        if not isinstance(agent_name, str) or not agent_name:
            raise ValidationFailedError("check_agent_health payload requires agent_name")
        repaired = self.controller.check_and_repair_agent(
            agent_name,
            job.payload.get("project_id"),
        )
        return {"repaired": repaired, "checked_at": utc_now().isoformat()}
