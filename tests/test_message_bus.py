from __future__ import annotations

import time

import allure
import pytest

from agent_loop.errors import RequestFailedError, RequestTimeoutError, ValidationFailedError
from agent_loop.messaging import BROADCAST, AgentMessage, MessageType

pytestmark = [
    allure.epic("Agent Messaging"),
    allure.feature("Message Bus"),
]


def _echo_responder(bus):
    def _handler(message: AgentMessage) -> None:
        if message.type == MessageType.REQUEST:
            bus.respond(message, success=True, result={"echo": message.payload})

    return _handler


def test_request_resolves_with_correlated_response(runtime) -> None:
    bus = runtime.bus
    bus.subscribe("design_spec", _echo_responder(bus))

    future = bus.request("design_spec", "generate", {"idea": "crm"}, sender="orchestrator")
    assert bus.pending_count == 1
    bus.drain()

    response = future.result(timeout=1)
    assert response.type == MessageType.RESPONSE
    assert response.sender == "design_spec"
    assert response.to == "orchestrator"
    assert response.correlation_id is not None
    assert response.result == {"echo": {"idea": "crm"}}
    assert bus.pending_count == 0


def test_unsuccessful_response_fails_the_request(runtime) -> None:
    bus = runtime.bus

    def _reject(message: AgentMessage) -> None:
        bus.respond(message, success=False, error={"code": "busy", "message": "Agent busy"})

    bus.subscribe("workflow_designer", _reject, message_filter=lambda m: m.type == MessageType.REQUEST)

    future = bus.request("workflow_designer", "plan")
    bus.drain()

    with pytest.raises(RequestFailedError, match="Agent busy"):
        future.result(timeout=1)
    assert bus.pending_count == 0


def test_request_times_out_without_leaking(runtime) -> None:
    bus = runtime.bus

    future = bus.request("content_strategist", "write", timeout_seconds=0.05)

    with pytest.raises(RequestTimeoutError) as raised:
        future.result(timeout=2)
    assert raised.value.details["timeout_seconds"] == 0.05
    assert bus.pending_count == 0


def test_late_response_after_timeout_is_dropped(runtime) -> None:
    bus = runtime.bus
    future = bus.request("design_spec", "generate", timeout_seconds=0.05)
    with pytest.raises(RequestTimeoutError):
        future.result(timeout=2)

    bus.subscribe("design_spec", _echo_responder(bus))
    summary = bus.drain()

    assert summary.failed == 0
    assert summary.processed == 2
    assert bus.pending_count == 0


def test_response_with_unknown_correlation_id_is_dropped(runtime) -> None:
    bus = runtime.bus
    received: list[str] = []
    bus.subscribe("orchestrator", lambda message: received.append(message.id))

    bus.deliver(
        AgentMessage(
            id="r1",
            type=MessageType.RESPONSE,
            sender="design_spec",
            to="orchestrator",
            timestamp=0,
            correlation_id="never-sent",
            success=True,
        ),
    )

    assert received == ["r1"]
    assert bus.pending_count == 0


def test_cancelled_request_is_forgotten(runtime) -> None:
    bus = runtime.bus

    future = bus.request("design_spec", "generate", timeout_seconds=30)
    assert future.cancel()

    assert bus.pending_count == 0


def test_non_positive_timeout_is_rejected(runtime) -> None:
    with pytest.raises(ValidationFailedError):
        runtime.bus.request("design_spec", "generate", timeout_seconds=0)
    assert runtime.bus.pending_count == 0


def test_broadcast_fan_out_respects_priority_filter_and_failures(runtime) -> None:
    bus = runtime.bus
    seen: list[str] = []

    def _broken(_: AgentMessage) -> None:
        seen.append("broken")
        raise RuntimeError("handler bug")

    bus.subscribe(BROADCAST, lambda message: seen.append(f"low:{message.event}"), priority=1)
    bus.subscribe(BROADCAST, _broken, priority=10)
    bus.subscribe(
        BROADCAST,
        lambda message: seen.append(f"filtered:{message.event}"),
        message_filter=lambda message: message.event == "task_completed",
        priority=5,
    )

    bus.emit_event("task_started", {"task": "design"})
    bus.emit_event("task_completed", {"task": "design"})
    summary = bus.drain()

    assert summary.succeeded == 2
    assert seen == [
        "broken",
        "low:task_started",
        "broken",
        "filtered:task_completed",
        "low:task_completed",
    ]


def test_notifications_only_reach_their_target(runtime) -> None:
    bus = runtime.bus
    design: list[str] = []
    workflow: list[str] = []
    bus.subscribe("design_spec", lambda message: design.append(message.event))
    bus.subscribe("workflow_designer", lambda message: workflow.append(message.event))

    bus.notify("design_spec", "agent.progress", {"percent": 50})
    bus.drain()

    assert design == ["agent.progress"]
    assert workflow == []


def test_unsubscribe_stops_delivery(runtime) -> None:
    bus = runtime.bus
    seen: list[str] = []
    unsubscribe = bus.subscribe("design_spec", lambda message: seen.append(message.event))

    bus.notify("design_spec", "first")
    bus.drain()
    unsubscribe()
    unsubscribe()
    bus.notify("design_spec", "second")
    bus.drain()

    assert seen == ["first"]


def test_metrics_report_queue_and_pending_requests(runtime) -> None:
    bus = runtime.bus
    bus.notify("design_spec", "one")
    bus.notify("design_spec", "two")
    bus.request("design_spec", "generate", timeout_seconds=30)

    before = bus.metrics()
    bus.drain()
    after = bus.metrics()

    assert before.waiting == 3
    assert before.pending_requests == 1
    assert after.waiting == 0
    assert after.completed == 3
    assert after.failed == 0
    assert after.pending_requests == 1


def test_background_worker_delivers_and_stop_cancels_pending(runtime) -> None:
    bus = runtime.bus
    bus.subscribe("design_spec", _echo_responder(bus))
    bus.start()
    try:
        response = bus.request("design_spec", "generate", "ping").result(timeout=5)
        assert response.result == {"echo": "ping"}
    finally:
        bus.stop()

    orphan = bus.request("workflow_designer", "plan", timeout_seconds=30)
    bus.stop()
    assert orphan.cancelled()
    assert bus.pending_count == 0


def test_message_dict_uses_from_key_and_omits_empty_fields() -> None:
    message = AgentMessage(
        id="m1",
        type=MessageType.NOTIFICATION,
        sender="orchestrator",
        to="design_spec",
        timestamp=1_700_000_000_000,
        event="task.created",
        data={"task": "design"},
    )

    raw = message.to_dict()

    assert raw == {
        "id": "m1",
        "type": "notification",
        "from": "orchestrator",
        "to": "design_spec",
        "timestamp": 1_700_000_000_000,
        "event": "task.created",
        "data": {"task": "design"},
    }
    assert AgentMessage.from_dict(raw) == message
    with pytest.raises(ValueError):
        AgentMessage.from_dict({"type": "event", "from": "a", "to": "b"})


def test_timer_cleanup_is_prompt(runtime) -> None:
    bus = runtime.bus
    futures = [bus.request("design_spec", "generate", timeout_seconds=0.05) for _ in range(5)]

    deadline = time.monotonic() + 2
    while bus.pending_count and time.monotonic() < deadline:
        time.sleep(0.01)

    assert bus.pending_count == 0
    assert all(isinstance(future.exception(timeout=1), RequestTimeoutError) for future in futures)


def test_drain_resumes_after_stop(runtime) -> None:
    bus = runtime.bus
    seen: list[str] = []
    bus.subscribe("design_spec", lambda message: seen.append(message.event))
    bus.stop()

    bus.notify("design_spec", "after-stop")
    summary = bus.drain()

    assert summary.succeeded == 1
    assert seen == ["after-stop"]
