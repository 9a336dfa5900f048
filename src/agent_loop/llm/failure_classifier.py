"""Deterministic provider failure classification for queue retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

PROVIDER_FAILURE_CLASSIFIER_VERSION = 1


class ProviderFailureClass(str, Enum):
    """Normalized provider failure classes."""

    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    MODEL_NOT_AVAILABLE = "model_not_available"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    MISCONFIGURED = "misconfigured"

    @property
    def transient(self) -> bool:
        return self in (ProviderFailureClass.RATE_LIMITED, ProviderFailureClass.TRANSIENT)


_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "quota",
    "resource_exhausted",
    "billing",
    "payment",
    "credits",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "invalid_api_key",
    "unauthorized",
    "forbidden",
    "permission denied",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model_not_found",
    "model not found",
    "unknown model",
    "unsupported model",
    "does not exist",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "overloaded",
    "connection reset",
    "connection refused",
    "network error",
)


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: ProviderFailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class.transient

    def to_event_details(self, *, model: str, status_code: int | None) -> dict[str, object]:
        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "model": model,
            "status_code": status_code,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(  # noqa: PLR0911
    *,
    status_code: int | None,
    message: str,
) -> ProviderFailureClassification:
    """Classify a failed provider call; ``status_code`` is None for network errors."""

    haystack = message.lower()

    if status_code is None:
        return ProviderFailureClassification(
            failure_class=ProviderFailureClass.TRANSIENT,
            matched_rule="network_error",
            matched_pattern=_first_match(haystack, _TRANSIENT_PATTERNS),
        )

    if status_code >= 500:
        return ProviderFailureClassification(
            failure_class=ProviderFailureClass.TRANSIENT,
            matched_rule="server_error_status",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if status_code == 402 or pattern is not None:
        return ProviderFailureClassification(
            failure_class=ProviderFailureClass.BILLING_OR_QUOTA,
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    if status_code == 429:
        return ProviderFailureClassification(
            failure_class=ProviderFailureClass.RATE_LIMITED,
            matched_rule="rate_limit_status",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if status_code in (401, 403) or pattern is not None:
        return ProviderFailureClassification(
            failure_class=ProviderFailureClass.ACCESS_OR_AUTH,
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            failure_class=ProviderFailureClass.MODEL_NOT_AVAILABLE,
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    return ProviderFailureClassification(
        failure_class=ProviderFailureClass.MISCONFIGURED,
        matched_rule="fallback_client_error",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
