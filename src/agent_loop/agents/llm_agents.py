"""Built-in prompt agents for product design, workflows and content."""

from __future__ import annotations

from agent_loop.agents.base import PromptAgent, describe_project
from agent_loop.llm.client import LlmClient
from agent_loop.models import AgentContext

DESIGN_SPEC = "design_spec"
WORKFLOW_DESIGNER = "workflow_designer"
CONTENT_STRATEGIST = "content_strategist"


def _design_spec_prompt(context: AgentContext) -> str:
    return (
        "Create a concise, actionable high-level app spec (markdown) for the following:\n"
        f"{describe_project(context)}\n"
        "Include sections: Overview, Target Users, Core Features, Data Entities, Workflows, "
        "Monetization, Next Steps."
    )


def _workflow_prompt(context: AgentContext) -> str:
    return (
        "Design the key workflows and automations for this project.\n"
        f"Context:\n{describe_project(context)}\n"
        "Include sections: Events/Triggers, Actions, Integrations, Error handling, "
        "Monitoring suggestions, and Implementation tasks as a bullet list."
    )


def _content_prompt(context: AgentContext) -> str:
    return (
        "Create a concise content strategy and sample copy pack.\n"
        f"Context:\n{describe_project(context)}\n"
        "Provide: 1) Content strategy with channels, tone and messaging pillars. "
        "2) Sample copy: landing page headline and subheadline, three short social posts, "
        "one email subject and body. Format the output in markdown."
    )


def build_builtin_agents(llm: LlmClient, *, model: str) -> list[PromptAgent]:
    return [
        PromptAgent(
            name=DESIGN_SPEC,
            description="Generates high-level app spec from project info and wizard answers",
            llm=llm,
            model=model,
            system_prompt="You are an expert product designer.",
            build_prompt=_design_spec_prompt,
            artifacts=(("plan", "High-Level App Spec"),),
            needs_context=True,
            context_task_type="app_spec_suggestion",
        ),
        PromptAgent(
            name=WORKFLOW_DESIGNER,
            description="Designs key workflows and automations for a project",
            llm=llm,
            model=model,
            system_prompt="You are an expert SaaS workflow and automation designer.",
            build_prompt=_workflow_prompt,
            artifacts=(("plan", "Workflow Plan"),),
            needs_context=True,
            context_task_type="workflow_suggestion",
        ),
        PromptAgent(
            name=CONTENT_STRATEGIST,
            description="Generates content strategy and example copy for the project",
            llm=llm,
            model=model,
            system_prompt="You are an expert content strategist.",
            build_prompt=_content_prompt,
            artifacts=(("plan", "Content Strategy"), ("copy", "Sample Copy Pack")),
            needs_context=True,
            context_task_type="marketing_copy",
        ),
    ]
