"""FastAPI error handling and request correlation.

Every error response has the same body::

    {"detail": "...", "error": {"code": "...", "request_id": "...", "details": {...}}}

and echoes the request id in the ``X-Request-ID`` header.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import git
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from arbor_api.errors import ArborError

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_HTTP_STATUS_CODES = {
    400: "BAD_REQUEST",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "EXTERNAL_SERVICE_ERROR",
}


def _request_id(request: Request) -> str:
    existing = getattr(request.state, "request_id", None) or request.headers.get(
        REQUEST_ID_HEADER
    )
    return existing or str(uuid.uuid4())


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    detail: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build the JSON error response shared by every handler."""
    request_id = _request_id(request)
    error: dict[str, Any] = {"code": code, "request_id": request_id}
    if details:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "error": error},
        headers={REQUEST_ID_HEADER: request_id},
    )


def _git_failure_detail(exc: git.GitCommandError) -> str:
    stderr = str(exc.stderr or "").strip()
    # GitCommandError prefixes captured output with "stderr: '...'"
    if stderr.startswith("stderr:"):
        stderr = stderr[len("stderr:") :].strip().strip("'").strip()
    return stderr or f"git exited with status {exc.status}"


def install_error_handling(app: FastAPI) -> None:
    """Install request-id middleware and global exception handlers."""

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.request_id = _request_id(request)
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response

    @app.exception_handler(ArborError)
    async def arbor_error_handler(request: Request, exc: ArborError) -> JSONResponse:
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            detail=exc.message,
            details=exc.details,
        )

    @app.exception_handler(git.GitCommandError)
    async def git_command_error_handler(
        request: Request, exc: git.GitCommandError
    ) -> JSONResponse:
        logger.warning(f"git command failed (request_id={_request_id(request)}): {exc}")
        return error_response(
            request,
            status_code=500,
            code="GIT_COMMAND_FAILED",
            detail=_git_failure_detail(exc),
            details={"status": exc.status},
        )

    async def not_a_repository_handler(request: Request, exc: Exception) -> JSONResponse:
        return error_response(
            request,
            status_code=400,
            code="NOT_A_GIT_REPOSITORY",
            detail=f"Not a git worktree: {exc}",
        )

    app.add_exception_handler(git.InvalidGitRepositoryError, not_a_repository_handler)
    app.add_exception_handler(git.NoSuchPathError, not_a_repository_handler)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return error_response(
            request,
            status_code=exc.status_code,
            code=_HTTP_STATUS_CODES.get(exc.status_code, "HTTP_ERROR"),
            detail=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return error_response(
            request,
            status_code=422,
            code="VALIDATION_ERROR",
            detail="Validation error",
            details={"errors": exc.errors()},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled exception (request_id={_request_id(request)}): {exc}")
        return error_response(
            request,
            status_code=500,
            code="INTERNAL_ERROR",
            detail="Internal server error",
        )
