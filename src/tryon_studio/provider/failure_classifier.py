"""Deterministic provider failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import httpx

PROVIDER_FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_STATUS_CODES: frozenset[int] = frozenset({408, 425, 429})
_ACCESS_OR_AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str

    @property
    def is_transient(self) -> bool:
        return self.failure_class == FailureClass.TRANSIENT

    def to_event_details(self, *, operation: str) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and task events."""

        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "operation": operation,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
        }


def classify_status_code(status_code: int) -> ProviderFailureClassification:
    """Classify an unsuccessful HTTP response code."""

    if status_code in _RATE_LIMIT_STATUS_CODES:
        return ProviderFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="provider_rate_limited",
            matched_rule="rate_limit_status",
        )
    if status_code >= 500:  # noqa: PLR2004
        return ProviderFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="provider_server_error",
            matched_rule="server_error_status",
        )
    if status_code in _ACCESS_OR_AUTH_STATUS_CODES:
        return ProviderFailureClassification(
            failure_class=FailureClass.PERMANENT,
            reason_code="provider_access_or_auth",
            matched_rule="access_or_auth_status",
        )
    if status_code == 404:  # noqa: PLR2004
        return ProviderFailureClassification(
            failure_class=FailureClass.PERMANENT,
            reason_code="provider_job_not_found",
            matched_rule="not_found_status",
        )
    return ProviderFailureClassification(
        failure_class=FailureClass.PERMANENT,
        reason_code="provider_request_rejected",
        matched_rule="fallback_client_error",
    )


def classify_transport_error(exc: Exception) -> ProviderFailureClassification:
    """Classify an exception raised before any HTTP response was received."""

    if isinstance(exc, httpx.TimeoutException):
        return ProviderFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="provider_timeout",
            matched_rule="timeout",
        )
    if isinstance(exc, httpx.TransportError):
        return ProviderFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="provider_network_error",
            matched_rule="transport_error",
        )
    if isinstance(exc, ValueError):
        # Undecodable body from an otherwise successful response.
        return ProviderFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="provider_malformed_response",
            matched_rule="parse_error",
        )
    return ProviderFailureClassification(
        failure_class=FailureClass.TRANSIENT,
        reason_code="provider_unknown_error",
        matched_rule="fallback_transient",
    )
