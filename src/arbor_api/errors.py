"""Application error types raised by the git coordination services.

Each subclass fixes an HTTP status and a default error code; call sites pass
a more specific ``code`` (``DIRTY_WORKTREE``, ``MERGE_CONFLICT``, ...) so
clients can branch on it. `arbor_api.error_handling` turns them into JSON
responses.

Failures coming straight from git that no classifier recognised are not
wrapped; they propagate as ``git.GitCommandError``.
"""

from __future__ import annotations

from typing import Any


class ArborError(Exception):
    """Base exception for predictable application errors.

    Note: Avoid frozen dataclasses for exceptions; some frameworks attempt to
    mutate ``__traceback__`` and other attributes during handling.
    """

    status_code: int = 500
    default_code: str = "UNKNOWN"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message


class ValidationError(ArborError):
    """Invalid request input (400)."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class ForbiddenError(ArborError):
    """Path is not a worktree this service may touch (403)."""

    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(ArborError):
    """Branch or other git object does not exist (404)."""

    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(ArborError):
    """Conflict (409).

    Raised after a conflicting merge/rebase has been aborted, so the
    repository is never left mid-conflict, and when a worktree stays busy.
    """

    status_code = 409
    default_code = "CONFLICT"


class PreconditionError(ArborError):
    """Repository is not in a state that allows the operation (409).

    Dirty working tree, an in-progress rebase/merge, a protected branch
    without confirmation and similar guards. Nothing was mutated.
    """

    status_code = 409
    default_code = "PRECONDITION_FAILED"


class ExternalServiceError(ArborError):
    """Remote or GitHub API failure (502)."""

    status_code = 502
    default_code = "EXTERNAL_SERVICE_ERROR"
