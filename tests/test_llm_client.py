from __future__ import annotations

import json

import allure
import httpx
import pytest

from agent_loop.errors import ProviderError
from agent_loop.llm.client import HttpLlmClient, LlmRequest, system_and_user

pytestmark = [
    allure.epic("LLM Runtime"),
    allure.feature("HTTP Client"),
]


def _client(handler) -> HttpLlmClient:
    return HttpLlmClient(
        base_url="https://llm.example.com/v1/",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )


def _request() -> LlmRequest:
    return LlmRequest(
        model="gpt-test",
        messages=system_and_user("You are terse.", "Say hi"),
        temperature=0.2,
        max_tokens=50,
    )


def test_successful_completion_returns_text_and_usage() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "gpt-test-2024",
                "choices": [{"message": {"role": "assistant", "content": "hi"}}],
                "usage": {"prompt_tokens": 7, "completion_tokens": 1, "total_tokens": 8},
            },
        )

    with _client(handler) as client:
        response = client.call(_request())

    assert response.text == "hi"
    assert response.model == "gpt-test-2024"
    assert response.usage.total_tokens == 8
    [request] = seen
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body["temperature"] == 0.2
    assert body["max_tokens"] == 50
    assert [message["role"] for message in body["messages"]] == ["system", "user"]


def test_auth_error_is_not_transient() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            401,
            json={"error": {"message": "Incorrect API key provided", "code": "invalid_api_key"}},
        )

    with _client(handler) as client, pytest.raises(ProviderError) as raised:
        client.call(_request())

    assert raised.value.status_code == 401
    assert not raised.value.transient
    assert not raised.value.retryable
    assert raised.value.details["failure_class"] == "access_or_auth"
    assert "invalid_api_key" in raised.value.message


def test_server_error_is_transient() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    with _client(handler) as client, pytest.raises(ProviderError) as raised:
        client.call(_request())

    assert raised.value.transient
    assert raised.value.retryable
    assert "upstream exploded" in raised.value.message


def test_exhausted_quota_is_not_retried() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={"error": {"message": "You exceeded your quota", "type": "insufficient_quota"}},
        )

    with _client(handler) as client, pytest.raises(ProviderError) as raised:
        client.call(_request())

    assert raised.value.details["failure_class"] == "billing_or_quota"
    assert not raised.value.transient


def test_network_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _client(handler) as client, pytest.raises(ProviderError) as raised:
        client.call(_request())

    assert raised.value.status_code is None
    assert raised.value.transient
    assert raised.value.message.startswith("Network error from gpt-test")


def test_malformed_payload_raises_provider_error() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    with _client(handler) as client, pytest.raises(ProviderError, match="Malformed completion"):
        client.call(_request())
