"""Provider contracts: errors and payloads exchanged with the generation API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tryon_studio.orchestrator.models import TaskState
from tryon_studio.provider.failure_classifier import ProviderFailureClassification


class ProviderError(Exception):
    """Base error for provider calls."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: dict[str, Any] | None = None,
        reason_code: str | None = None,
        classification: ProviderFailureClassification | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload
        self.classification = classification
        if reason_code is None and classification is not None:
            reason_code = classification.reason_code
        self.reason_code = reason_code

    def diagnostics(self, *, operation: str) -> dict[str, object]:
        """Classifier details for task events and logs."""

        if self.classification is not None:
            return self.classification.to_event_details(operation=operation)
        return {"operation": operation, "reason_code": self.reason_code}


class ProviderRejection(ProviderError):
    """Permanent provider refusal (4xx validation, auth); never retried."""

    code = "PROVIDER_REJECTED"


class ProviderTransientError(ProviderError):
    """Network, timeout, 429 or 5xx failure; safe to retry later."""

    code = "PROVIDER_UNAVAILABLE"


@dataclass(slots=True)
class ImagePart:
    """One uploaded image in a multipart submission."""

    file_name: str
    content: bytes
    mime_type: str


@dataclass(slots=True)
class SubmitRequest:
    """Inputs for one provider job submission."""

    model_image: ImagePart
    garment_images: tuple[ImagePart, ...]
    cloth_type: str
    hd_mode: bool
    combo: bool


@dataclass(slots=True)
class ProviderStatus:
    """Normalized status response for one provider job."""

    job_id: str
    raw_status: str
    state_hint: TaskState
    progress_hint: int
    result_handle: str | None = None
    quality_score: float | None = None
    error_payload: dict[str, Any] | None = None
    payload: dict[str, Any] = field(default_factory=dict)
