from __future__ import annotations

import allure
import httpx
import pytest

from tryon_studio.provider.failure_classifier import (
    PROVIDER_FAILURE_CLASSIFIER_VERSION,
    FailureClass,
    classify_status_code,
    classify_transport_error,
)

pytestmark = [
    allure.epic("Provider Client"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert PROVIDER_FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize("status_code", [500, 502, 503, 504, 429, 408])
def test_server_errors_and_rate_limits_are_transient(status_code: int) -> None:
    assert classify_status_code(status_code).failure_class == FailureClass.TRANSIENT


@pytest.mark.parametrize("status_code", [400, 401, 403, 404, 422])
def test_client_errors_are_permanent(status_code: int) -> None:
    assert classify_status_code(status_code).failure_class == FailureClass.PERMANENT


def test_auth_failures_have_dedicated_reason() -> None:
    classified = classify_status_code(401)
    assert classified.reason_code == "provider_access_or_auth"
    assert classified.to_event_details(operation="submit") == {
        "classifier_version": 1,
        "operation": "submit",
        "failure_class": "permanent",
        "reason_code": "provider_access_or_auth",
        "matched_rule": "access_or_auth_status",
    }


def test_timeouts_and_network_errors_are_transient() -> None:
    timeout = classify_transport_error(httpx.ReadTimeout("slow"))
    network = classify_transport_error(httpx.ConnectError("refused"))
    parse = classify_transport_error(ValueError("bad json"))

    assert timeout.is_transient and timeout.reason_code == "provider_timeout"
    assert network.is_transient and network.reason_code == "provider_network_error"
    assert parse.is_transient and parse.matched_rule == "parse_error"
