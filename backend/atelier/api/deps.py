"""FastAPI dependencies: the service container and the caller's identity."""

from __future__ import annotations

from fastapi import Header, Request
from fastapi.responses import JSONResponse

from atelier.bootstrap import Services
from atelier.errors import UnauthenticatedError
from atelier.models.contracts import ErrorResponse


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Identity comes from the upstream auth layer as X-User-ID."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthenticatedError("Missing X-User-ID header")
    return x_user_id.strip()


def error_response(status: int, code: str, message: str, *, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message, retryable=retryable).model_dump(),
    )
