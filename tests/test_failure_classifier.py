from __future__ import annotations

import allure

from agent_loop.llm.failure_classifier import (
    PROVIDER_FAILURE_CLASSIFIER_VERSION,
    ProviderFailureClass,
    classify_provider_failure,
)

pytestmark = [
    allure.epic("LLM Runtime"),
    allure.feature("Provider Failures"),
]


def test_classifier_version_is_stable() -> None:
    assert PROVIDER_FAILURE_CLASSIFIER_VERSION == 1


def test_network_errors_are_transient() -> None:
    classified = classify_provider_failure(status_code=None, message="Connection refused")

    assert classified.failure_class == ProviderFailureClass.TRANSIENT
    assert classified.matched_rule == "network_error"
    assert classified.matched_pattern == "connection refused"
    assert classified.transient


def test_server_errors_are_transient() -> None:
    classified = classify_provider_failure(status_code=503, message="Service Unavailable")

    assert classified.failure_class == ProviderFailureClass.TRANSIENT
    assert classified.matched_rule == "server_error_status"


def test_quota_wins_over_rate_limit_status() -> None:
    classified = classify_provider_failure(
        status_code=429,
        message="You exceeded your current quota (insufficient_quota)",
    )

    assert classified.failure_class == ProviderFailureClass.BILLING_OR_QUOTA
    assert classified.matched_pattern == "insufficient_quota"
    assert not classified.transient


def test_plain_rate_limit_is_transient() -> None:
    classified = classify_provider_failure(status_code=429, message="Rate limit reached")

    assert classified.failure_class == ProviderFailureClass.RATE_LIMITED
    assert classified.transient


def test_auth_failures_are_not_transient() -> None:
    classified = classify_provider_failure(status_code=401, message="Incorrect API key")

    assert classified.failure_class == ProviderFailureClass.ACCESS_OR_AUTH
    assert classified.matched_pattern is None
    assert not classified.transient


def test_unknown_model_maps_to_model_not_available() -> None:
    classified = classify_provider_failure(
        status_code=404,
        message="The model `gpt-9` does not exist",
    )

    assert classified.failure_class == ProviderFailureClass.MODEL_NOT_AVAILABLE
    assert classified.matched_pattern == "does not exist"


def test_other_client_errors_are_misconfiguration() -> None:
    classified = classify_provider_failure(status_code=400, message="Bad request")

    assert classified.failure_class == ProviderFailureClass.MISCONFIGURED
    assert classified.to_event_details(model="gpt", status_code=400) == {
        "classifier_version": 1,
        "model": "gpt",
        "status_code": 400,
        "failure_class": "misconfigured",
        "matched_rule": "fallback_client_error",
        "matched_pattern": None,
    }
