"""LLM client interface and an OpenAI-compatible HTTP implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from agent_loop.errors import ProviderError
from agent_loop.llm.failure_classifier import classify_provider_failure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass(slots=True)
class LlmMessage:
    role: str
    content: str


@dataclass(slots=True)
class LlmRequest:
    """One chat completion call."""

    model: str
    messages: list[LlmMessage]
    temperature: float = 0.7
    max_tokens: int | None = None


@dataclass(slots=True)
class LlmUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(slots=True)
class LlmResponse:
    text: str
    model: str
    usage: LlmUsage = field(default_factory=LlmUsage)


class LlmClient(Protocol):
    """Protocol implemented by model call adapters.

    Implementations raise ``ProviderError`` for failed calls so queue workers
    can tell misconfiguration (4xx) from transient failures (5xx, network).
    """

    def call(self, request: LlmRequest) -> LlmResponse:
        """Run one completion and return the generated text."""


class HttpLlmClient:
    """Chat-completions client for OpenAI-compatible endpoints."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def call(self, request: LlmRequest) -> LlmResponse:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": message.role, "content": message.content}
                for message in request.messages
            ],
            "temperature": request.temperature,
        }
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens

        try:
            response = self._client.post("/chat/completions", json=body)
        except httpx.HTTPError as exc:
            logger.warning("LLM request to %s failed: %s", request.model, exc)
            raise _provider_error(model=request.model, status_code=None, message=str(exc)) from exc

        if not response.is_success:
            message = _error_message(response)
            logger.warning(
                "LLM request to %s returned HTTP %d: %s",
                request.model,
                response.status_code,
                message,
            )
            raise _provider_error(
                model=request.model,
                status_code=response.status_code,
                message=message,
            )

        try:
            payload = response.json()
            choice = payload["choices"][0]
            text = choice["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError(
                f"Malformed completion payload from {request.model}",
                status_code=response.status_code,
                transient=True,
            ) from exc

        usage = payload.get("usage") or {}
        return LlmResponse(
            text=text,
            model=str(payload.get("model") or request.model),
            usage=LlmUsage(
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
                total_tokens=int(usage.get("total_tokens") or 0),
            ),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpLlmClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _provider_error(*, model: str, status_code: int | None, message: str) -> ProviderError:
    classification = classify_provider_failure(status_code=status_code, message=message)
    prefix = f"HTTP {status_code}" if status_code is not None else "Network error"
    return ProviderError(
        f"{prefix} from {model}: {message}",
        status_code=status_code,
        transient=classification.transient,
        details=classification.to_event_details(model=model, status_code=status_code),
    )


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            code = error.get("code") or error.get("type")
            return f"{error['message']} ({code})" if code else str(error["message"])
        if isinstance(error, str):
            return error
    return response.text[:500]


def system_and_user(system: str, user: str) -> list[LlmMessage]:
    return [LlmMessage(role="system", content=system), LlmMessage(role="user", content=user)]
