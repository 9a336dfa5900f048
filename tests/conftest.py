"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from agent_loop.config import QueueSettings, Settings
from agent_loop.llm.client import LlmRequest, LlmResponse, LlmUsage
from agent_loop.runtime import Runtime, build_runtime

Reply = str | Exception | Callable[[LlmRequest], str]


class ScriptedLlm:
    """Fake LLM that answers by matching a marker in the system prompt or model name.

    A list of replies is consumed in order and its last item repeats.
    """

    def __init__(self, default: str = "Generated content") -> None:
        self.default = default
        self.calls: list[LlmRequest] = []
        self._routes: list[tuple[str, list[Reply]]] = []
        self._lock = threading.Lock()

    def on(self, marker: str, *replies: Reply) -> ScriptedLlm:
        self._routes.append((marker, list(replies)))
        return self

    def call(self, request: LlmRequest) -> LlmResponse:
        with self._lock:
            self.calls.append(request)
            reply = self._next_reply(request)
        if isinstance(reply, Exception):
            raise reply
        text = reply(request) if callable(reply) else reply
        return LlmResponse(text=text, model=request.model, usage=LlmUsage(total_tokens=10))

    def calls_for(self, marker: str) -> list[LlmRequest]:
        return [request for request in self.calls if _matches(marker, request)]

    def _next_reply(self, request: LlmRequest) -> Reply:
        for marker, replies in self._routes:
            if _matches(marker, request):
                return replies.pop(0) if len(replies) > 1 else replies[0]
        return self.default


def _matches(marker: str, request: LlmRequest) -> bool:
    system = request.messages[0].content if request.messages else ""
    return marker == request.model or marker in system


@pytest.fixture()
def llm() -> ScriptedLlm:
    return ScriptedLlm()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "agent-loop.db",
        queue=QueueSettings(
            backoff_ms=0,
            poll_interval_seconds=0.01,
            worker_id="test-worker",
            bus_request_timeout_seconds=5.0,
        ),
    )


@pytest.fixture()
def runtime(settings: Settings, llm: ScriptedLlm):
    built: Runtime = build_runtime(settings, llm_client=llm)
    try:
        yield built
    finally:
        built.close()
