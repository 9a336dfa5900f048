"""Agent capability contract and the prompt-driven agent building block."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Protocol

from agent_loop.llm.client import LlmClient, LlmRequest, system_and_user
from agent_loop.models import AgentContext, AgentResult, Artifact

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2_000


class Agent(Protocol):
    """Polymorphic unit of work looked up by name.

    ``needs_context`` asks the runner to enrich the context before ``run``;
    ``context_task_type`` is the hint passed to the enrichment collaborator.
    """

    name: str
    description: str
    needs_context: bool
    context_task_type: str | None

    def run(self, context: AgentContext) -> AgentResult:
        """Produce artifacts for the given context."""


PromptBuilder = Callable[[AgentContext], str]


class PromptAgent:
    """Single-call agent: build a prompt, call the model, wrap the text as artifacts."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str,
        description: str,
        llm: LlmClient,
        model: str,
        system_prompt: str,
        build_prompt: PromptBuilder,
        artifacts: tuple[tuple[str, str], ...],
        needs_context: bool = False,
        context_task_type: str | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.llm = llm
        self.model = model
        self.system_prompt = system_prompt
        self.build_prompt = build_prompt
        self.artifact_specs = artifacts
        self.needs_context = needs_context
        self.context_task_type = context_task_type

    def run(self, context: AgentContext) -> AgentResult:
        config = context.config
        system_prompt = str(config.get("prompt_template") or self.system_prompt)
        prompt = self.build_prompt(context)
        revision = revision_section(context)
        if revision:
            prompt = f"{prompt}\n\n{revision}"

        response = self.llm.call(
            LlmRequest(
                model=str(config.get("model") or self.model),
                messages=system_and_user(system_prompt, prompt),
                temperature=float(config.get("temperature", DEFAULT_TEMPERATURE)),
                max_tokens=int(config.get("max_tokens", DEFAULT_MAX_TOKENS)),
            ),
        )
        logger.debug(
            "Agent %s produced %d chars with %s",
            self.name,
            len(response.text),
            response.model,
        )
        metadata = {
            "model": response.model,
            "config_version": config.get("version"),
            "total_tokens": response.usage.total_tokens,
        }
        return AgentResult(
            artifacts=[
                Artifact(type=artifact_type, title=title, content=response.text, metadata=metadata)
                for artifact_type, title in self.artifact_specs
            ],
        )


def describe_project(context: AgentContext) -> str:
    """Project and wizard information shared by the built-in prompt agents."""

    lines: list[str] = []
    if context.project_id:
        lines.append(f"Project: {context.project_id}")
    project_info = context.extra.get("project")
    if isinstance(project_info, dict):
        lines.extend(f"{key.title()}: {value}" for key, value in sorted(project_info.items()))
    if context.extra.get("prompt"):
        lines.append(f"Request: {context.extra['prompt']}")
    if context.wizard_answers:
        lines.append("Wizard Answers:")
        lines.append(json.dumps(context.wizard_answers, indent=2, ensure_ascii=False))
    enriched = context.extra.get("enriched_context")
    if enriched:
        lines.append(f"Relevant context:\n{enriched}")
    return "\n".join(lines)


def revision_section(context: AgentContext) -> str:
    """Correction request appended when a run is re-executed by the quality loop."""

    instruction = context.extra.get("correction_instruction")
    if not instruction:
        return ""
    parts = [f"Revision request: {instruction}"]
    if context.extra.get("feedback"):
        parts.append(f"Reviewer feedback:\n{context.extra['feedback']}")
    if context.extra.get("previous_output"):
        parts.append(f"Improved draft to build on:\n{context.extra['previous_output']}")
    return "\n\n".join(parts)
