"""Middleware: API key authentication and domain error mapping."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from facematch.errors import (
    DecodeFailureError,
    FaceMatchError,
    InvalidInputError,
    NoDetectionError,
    StageCancelledError,
    TransportFailureError,
)

if TYPE_CHECKING:
    from facematch.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

# Nginx-style "client closed request".
HTTP_499_CLIENT_CLOSED_REQUEST = 499

_ERROR_STATUS: list[tuple[type[FaceMatchError], int]] = [
    (InvalidInputError, 422),
    (DecodeFailureError, status.HTTP_400_BAD_REQUEST),
    (NoDetectionError, 422),
    (TransportFailureError, status.HTTP_502_BAD_GATEWAY),
    (StageCancelledError, HTTP_499_CLIENT_CLOSED_REQUEST),
]


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against the configured API key.

    If no API key is configured (FACEMATCH_API_KEY not set), all requests pass.
    If configured, requests must include 'Authorization: Bearer <key>'.
    """
    settings = _get_settings_from_request(request)
    if settings.api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


def status_for_error(exc: FaceMatchError) -> int:
    """HTTP status code for a domain error."""
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _face_match_error_handler(request: Request, exc: FaceMatchError) -> JSONResponse:
    code = status_for_error(exc)
    logger.info("%s %s failed with %d: %s", request.method, request.url.path, code, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def _queue_timeout_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Server busy, try again later"},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Translate domain errors and pool timeouts into JSON error responses."""
    app.add_exception_handler(FaceMatchError, _face_match_error_handler)
    app.add_exception_handler(TimeoutError, _queue_timeout_handler)
