from __future__ import annotations

import allure

from agent_loop.agents.orchestrator import OrchestratorAgent, TaskStatus, plan_tasks
from agent_loop.errors import ProviderError
from agent_loop.messaging import BROADCAST
from agent_loop.models import AgentConfiguration, AgentContext, RunStatus

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Orchestrator"),
]


def test_plan_runs_design_before_dependents() -> None:
    tasks = plan_tasks()

    assert [(task.id, task.agent, task.dependencies) for task in tasks] == [
        ("design", "design_spec", ()),
        ("workflow", "workflow_designer", ("design",)),
        ("content", "content_strategist", ("design",)),
    ]
    assert {task.status for task in tasks} == {TaskStatus.PENDING}


def test_orchestrator_run_concatenates_sub_agent_artifacts(runtime, llm) -> None:
    llm.on("expert product designer", "spec text")
    llm.on("workflow and automation designer", "workflow text")
    llm.on("expert content strategist", "content text")

    outcome = runtime.runner.run_agent_with_persistence(
        "orchestrator",
        AgentContext(user_id="u1", extra={"prompt": "A CRM for florists"}),
    )

    assert [(item.title, item.content) for item in outcome.output.artifacts] == [
        ("High-Level App Spec", "spec text"),
        ("Workflow Plan", "workflow text"),
        ("Content Strategy", "content text"),
        ("Sample Copy Pack", "content text"),
    ]
    run = runtime.repository.require_run(run_id=outcome.run_id)
    assert run.status == RunStatus.SUCCEEDED
    assert len(runtime.repository.list_artifacts(run_id=outcome.run_id)) == 4


def test_failed_sub_agent_does_not_abort_plan(runtime, llm) -> None:
    llm.on("workflow and automation designer", ProviderError("HTTP 503", status_code=503))
    events: list[tuple[str, str, str]] = []
    runtime.bus.subscribe(
        BROADCAST,
        lambda message: events.append(
            (message.event, message.data["task_id"], message.data["status"]),
        ),
    )

    outcome = runtime.runner.run_agent_with_persistence("orchestrator", AgentContext(user_id="u1"))
    runtime.bus.drain()

    assert runtime.repository.require_run(run_id=outcome.run_id).status == RunStatus.SUCCEEDED
    assert [item.title for item in outcome.output.artifacts] == [
        "High-Level App Spec",
        "Content Strategy",
        "Sample Copy Pack",
    ]
    assert events == [
        ("task_started", "design", "running"),
        ("task_completed", "design", "completed"),
        ("task_started", "workflow", "running"),
        ("task_failed", "workflow", "failed"),
        ("task_started", "content", "running"),
        ("task_completed", "content", "completed"),
    ]
    orchestrator = runtime.registry.get("orchestrator")
    assert orchestrator.tasks["workflow"].error == "ProviderError: HTTP 503"


def test_sub_agents_do_not_inherit_orchestrator_config(runtime, llm) -> None:
    runtime.repository.activate_config_version(
        config=AgentConfiguration(
            agent_name="orchestrator",
            prompt_template="Coordinate everything.",
            temperature=0.1,
            max_tokens=300,
            tool_config={},
            version=1,
            is_active=True,
        ),
        audit_event_type="config_seeded",
        audit_metadata={},
    )

    runtime.runner.run_agent_with_persistence("orchestrator", AgentContext(user_id="u1"))

    assert len(llm.calls) == 3
    assert {call.temperature for call in llm.calls} == {0.7}
    assert all(call.messages[0].content != "Coordinate everything." for call in llm.calls)


def test_orchestrator_without_bus(runtime, llm) -> None:
    agent = OrchestratorAgent(registry=runtime.registry)

    result = agent.run(AgentContext(user_id="u1"))

    assert len(result.artifacts) == 4
    assert {task.status for task in agent.tasks.values()} == {TaskStatus.COMPLETED}
