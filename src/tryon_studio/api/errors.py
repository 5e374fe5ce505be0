"""Map domain and provider exceptions to the JSON error envelope."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tryon_studio.orchestrator.errors import (
    InvalidStateTransition,
    ResultNotAvailable,
    RetryLimitExceeded,
    TaskNotFoundError,
    TaskStateConflict,
    TryOnError,
    ValidationError,
)
from tryon_studio.provider.base import ProviderError, ProviderRejection, ProviderTransientError

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[Exception], int], ...] = (
    (ValidationError, 400),
    (InvalidStateTransition, 400),
    (RetryLimitExceeded, 400),
    (TaskNotFoundError, 404),
    (ResultNotAvailable, 404),
    (TaskStateConflict, 409),
    (ProviderRejection, 502),
    (ProviderTransientError, 503),
)


def status_code_for(exc: Exception) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


async def _handle_tryon_error(_: Request, exc: TryOnError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:  # noqa: PLR2004
        logger.error("Unhandled try-on error %s: %s", exc.code, exc.message)
    return error_response(status_code, exc.code, exc.message)


async def _handle_provider_error(_: Request, exc: ProviderError) -> JSONResponse:
    logger.warning(
        "Provider call failed (%s, HTTP %s): %s",
        exc.reason_code,
        exc.status_code,
        exc.message,
    )
    # Provider payloads stay out of rejection responses.
    return error_response(status_code_for(exc), exc.code, exc.message)


async def _handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid')}"
        for error in exc.errors()
    )
    return error_response(400, ValidationError.code, problems or "Invalid request.")


def register_exception_handlers(app: FastAPI) -> None:
    app.exception_handler(RequestValidationError)(_handle_request_validation)
    app.exception_handler(TryOnError)(_handle_tryon_error)
    app.exception_handler(ProviderError)(_handle_provider_error)
