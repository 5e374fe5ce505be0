"""HTTP client for the remote try-on generation API."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from tryon_studio.config import ProviderSettings
from tryon_studio.orchestrator.models import TaskState
from tryon_studio.provider.base import (
    ProviderError,
    ProviderRejection,
    ProviderStatus,
    ProviderTransientError,
    SubmitRequest,
)
from tryon_studio.provider.failure_classifier import (
    ProviderFailureClassification,
    classify_status_code,
    classify_transport_error,
)

logger = logging.getLogger(__name__)

TASKS_PATH = "/api/tryon/v2/tasks"
CONNECT_TIMEOUT_SECONDS = 10.0

_STATUS_MAP: dict[str, TaskState] = {
    "created": TaskState.CREATED,
    "pending": TaskState.CREATED,
    "queued": TaskState.CREATED,
    "processing": TaskState.PROCESSING,
    "in_progress": TaskState.PROCESSING,
    "running": TaskState.PROCESSING,
    "completed": TaskState.COMPLETED,
    "success": TaskState.COMPLETED,
    "succeeded": TaskState.COMPLETED,
    "failed": TaskState.FAILED,
    "error": TaskState.FAILED,
    # A job cancelled on the provider side will never produce a result.
    "cancelled": TaskState.FAILED,
    "canceled": TaskState.FAILED,
}

_ESTIMATED_PROGRESS: dict[TaskState, int] = {
    TaskState.CREATED: 0,
    TaskState.PROCESSING: 50,
    TaskState.COMPLETED: 100,
    TaskState.FAILED: 0,
}


def map_provider_status(raw_status: object) -> TaskState:
    """Map the provider's open status vocabulary; unknown values mean still pending."""

    if not isinstance(raw_status, str):
        return TaskState.CREATED
    return _STATUS_MAP.get(raw_status.strip().lower(), TaskState.CREATED)


def estimate_progress(state: TaskState) -> int:
    return _ESTIMATED_PROGRESS.get(state, 0)


def resolve_progress(payload: dict[str, Any], state: TaskState) -> int:
    """Provider progress clamped to 0..100, else a coarse per-state estimate."""

    raw = payload.get("progress")
    if isinstance(raw, bool) or raw is None:
        return estimate_progress(state)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return estimate_progress(state)
    return int(min(100.0, max(0.0, value)))


class ProviderClient:
    """Submit jobs, poll their status and download results.

    Only ``submit`` retries internally; ``status`` and ``download`` rely on the
    caller's cadence (reconciliation tick, single materialization attempt).
    """

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=settings.base_url,
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=CONNECT_TIMEOUT_SECONDS),
            headers={"X-API-KEY": settings.api_key},
            transport=transport,
        )
        # Signed URLs point at third-party storage; never send the API key there.
        self._download_client = httpx.Client(
            timeout=httpx.Timeout(
                settings.download_timeout_seconds,
                connect=CONNECT_TIMEOUT_SECONDS,
            ),
            transport=transport,
            follow_redirects=True,
        )

    def submit(self, request: SubmitRequest) -> str:
        """Create a provider job and return its id."""

        attempts = max(1, self._settings.submit_max_attempts)
        attempt = 1
        while True:
            try:
                return self._submit_once(request)
            except ProviderTransientError as exc:
                if attempt >= attempts:
                    raise ProviderTransientError(
                        f"Provider submit failed after {attempts} attempts: {exc.message}",
                        status_code=exc.status_code,
                        payload=exc.payload,
                        reason_code=exc.reason_code,
                        classification=exc.classification,
                    ) from exc
                delay = self._settings.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Provider submit attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt,
                    attempts,
                    exc.reason_code,
                    delay,
                )
                self._sleep(delay)
                attempt += 1

    def status(self, job_id: str) -> ProviderStatus:
        """Query one job. Raises ProviderRejection or ProviderTransientError."""

        response = self._request("status", "GET", f"{TASKS_PATH}/{job_id}")
        payload = _json_body(response, operation="status")
        raw_status = payload.get("status")
        state = map_provider_status(raw_status)
        quality = payload.get("quality_score")
        return ProviderStatus(
            job_id=job_id,
            raw_status=str(raw_status) if raw_status is not None else "",
            state_hint=state,
            progress_hint=resolve_progress(payload, state),
            result_handle=payload.get("download_signed_url") or None,
            quality_score=float(quality) if isinstance(quality, int | float) else None,
            error_payload=payload if state == TaskState.FAILED else None,
            payload=payload,
        )

    def download(self, result_handle: str) -> bytes:
        """Fetch result bytes from a signed URL."""

        try:
            response = self._download_client.get(result_handle)
        except httpx.HTTPError as exc:
            raise _error_from_classification(
                classify_transport_error(exc),
                message=f"Result download failed: {exc}",
            ) from exc
        if not response.is_success:
            raise _error_from_classification(
                classify_status_code(response.status_code),
                message=f"Result download returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.content

    def close(self) -> None:
        self._client.close()
        self._download_client.close()

    def __enter__(self) -> ProviderClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _submit_once(self, request: SubmitRequest) -> str:
        files: list[tuple[str, tuple[str, bytes, str]]] = [
            (
                "model_image",
                (
                    request.model_image.file_name,
                    request.model_image.content,
                    request.model_image.mime_type,
                ),
            ),
        ]
        if request.combo and len(request.garment_images) == 2:  # noqa: PLR2004
            upper, lower = request.garment_images
            files.append(("upper_cloth_image", (upper.file_name, upper.content, upper.mime_type)))
            files.append(("lower_cloth_image", (lower.file_name, lower.content, lower.mime_type)))
        else:
            cloth = request.garment_images[0]
            files.append(("cloth_image", (cloth.file_name, cloth.content, cloth.mime_type)))
        data = {
            "cloth_type": request.cloth_type,
            "hd_mode": "true" if request.hd_mode else "false",
        }
        if request.combo:
            data["mode"] = "combo"

        response = self._request(
            "submit",
            "POST",
            TASKS_PATH,
            files=files,
            data=data,
            timeout=httpx.Timeout(
                self._settings.submit_timeout_seconds,
                connect=CONNECT_TIMEOUT_SECONDS,
            ),
        )
        payload = _json_body(response, operation="submit")
        job_id = payload.get("task_id")
        if not isinstance(job_id, str) or not job_id:
            raise ProviderRejection(
                "Provider accepted the submission but returned no task_id.",
                status_code=response.status_code,
                payload=payload,
                reason_code="provider_missing_task_id",
            )
        logger.info("Provider accepted job %s", job_id)
        return job_id

    def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise _error_from_classification(
                classify_transport_error(exc),
                message=f"Provider {operation} request failed: {exc}",
            ) from exc
        if response.is_success:
            return response
        raise _error_from_classification(
            classify_status_code(response.status_code),
            message=f"Provider {operation} returned HTTP {response.status_code}",
            status_code=response.status_code,
            payload=_maybe_json(response),
        )


def _json_body(response: httpx.Response, *, operation: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise _error_from_classification(
            classify_transport_error(exc),
            message=f"Provider {operation} returned a non-JSON body",
            status_code=response.status_code,
        ) from exc
    if not isinstance(payload, dict):
        raise ProviderTransientError(
            f"Provider {operation} returned unexpected JSON ({type(payload).__name__})",
            status_code=response.status_code,
            reason_code="provider_malformed_response",
        )
    return payload


def _maybe_json(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return {"body": response.text[:500]} if response.text else None
    return payload if isinstance(payload, dict) else {"body": payload}


def _error_from_classification(
    classification: ProviderFailureClassification,
    *,
    message: str,
    status_code: int | None = None,
    payload: dict[str, Any] | None = None,
) -> ProviderError:
    error_cls = ProviderTransientError if classification.is_transient else ProviderRejection
    return error_cls(
        message,
        status_code=status_code,
        payload=payload,
        classification=classification,
    )
