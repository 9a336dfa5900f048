"""Typed application errors shared by agents, evaluation and queue workers."""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base error carrying a stable code and a retry hint for queue workers."""

    code = "app_error"
    retryable = True

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(AppError):
    code = "not_found"
    retryable = False


class AgentNotFoundError(NotFoundError):
    code = "agent_not_found"

    def __init__(self, agent_name: str) -> None:
        super().__init__(f"Agent not found: {agent_name}", details={"agent_name": agent_name})
        self.agent_name = agent_name


class RunNotFoundError(NotFoundError):
    code = "run_not_found"

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Agent run not found: {run_id}", details={"run_id": run_id})
        self.run_id = run_id


class EvaluationNotFoundError(NotFoundError):
    code = "evaluation_not_found"

    def __init__(self, run_id: str) -> None:
        super().__init__(f"No evaluation found for run: {run_id}", details={"run_id": run_id})
        self.run_id = run_id


class ValidationFailedError(AppError):
    code = "validation_failed"
    retryable = False


class ProviderError(AppError):
    """LLM provider call failed.

    4xx responses mean the request itself is wrong (bad key, unknown model) and
    retrying will not help. 5xx responses, 429 and network errors are transient.
    """

    code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        transient: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code
        self._transient = transient

    @property
    def transient(self) -> bool:
        if self._transient is not None:
            return self._transient
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


class PersistFailedError(AppError):
    code = "persist_failed"
    retryable = False


class RunCreateFailedError(PersistFailedError):
    code = "run_create_failed"


class EvaluationPersistFailedError(PersistFailedError):
    code = "evaluation_persist_failed"


class AgentRunFailedError(AppError):
    """Agent raised a non-application error; the run has been marked failed."""

    code = "agent_run_failed"

    def __init__(self, agent_name: str, run_id: str, cause: BaseException) -> None:
        super().__init__(
            f"Agent {agent_name} failed in run {run_id}: {cause}",
            details={"agent_name": agent_name, "run_id": run_id},
        )
        self.agent_name = agent_name
        self.run_id = run_id


class ParseFailedError(AppError):
    code = "parse_failed"


class AutoFixParseFailedError(ParseFailedError):
    code = "autofix_parse_failed"


class AllRatersFailedError(AppError):
    code = "all_raters_failed"

    def __init__(self, run_id: str, errors: dict[str, str]) -> None:
        super().__init__(
            f"All {len(errors)} evaluation raters failed for run {run_id}",
            details={"run_id": run_id, "errors": errors},
        )


class RequestTimeoutError(AppError):
    code = "request_timeout"

    def __init__(self, correlation_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Request timeout after {timeout_seconds:g}s",
            details={"correlation_id": correlation_id, "timeout_seconds": timeout_seconds},
        )
        self.correlation_id = correlation_id


class RequestFailedError(AppError):
    code = "request_failed"
    retryable = False
