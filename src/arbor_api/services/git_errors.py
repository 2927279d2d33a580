"""Classification of failed git commands.

git reports every failure as a non-zero exit code plus free-form text, so the
coordinator needs to tell transient lock-file contention apart from genuine
repository-state errors. All text matching lives here; callers branch on the
returned :class:`GitFailureKind`.

GitPython runs git with ``LC_ALL=C``, so the messages are always English.
"""

from __future__ import annotations

import git

from arbor_api.domain.enums import GitFailureKind

_TRANSIENT_LOCK_PATTERNS = (
    "index.lock",
    ".lock': file exists",
    "another git process seems to be running",
    "cannot lock ref",
    "unable to lock",
)

# "CONFLICT" is matched case-sensitively: git prints it in upper case, while
# ordinary messages may mention the word "conflict".
_CONFLICT_MARKER = "CONFLICT"
_CONFLICT_PATTERNS = (
    "could not apply",
    "merge failed",
    "fix conflicts and then commit",
    "resolve all conflicts manually",
)

_FAST_FORWARD_PATTERNS = (
    "not possible to fast-forward",
    "diverging branches can't be fast-forwarded",
)

_MISSING_UPSTREAM_PATTERNS = (
    "no tracking information",
    "has no upstream branch",
    "no upstream configured",
    "couldn't find remote ref",
    "no such ref was fetched",
)

_CHECKED_OUT_PATTERNS = (
    "is already checked out at",
    "is already used by worktree",
)


def git_error_text(error: BaseException | str) -> str:
    """Return the text git produced for a failed command.

    For ``git.GitCommandError`` only stdout and stderr are used; the command
    line is left out so branch names and commit messages cannot match.
    """
    if isinstance(error, str):
        return error
    if isinstance(error, git.GitCommandError):
        return f"{error.stdout}\n{error.stderr}"
    return str(error)


def classify_git_error(error: BaseException | str) -> GitFailureKind:
    """Classify a failed git command.

    Args:
        error: The exception raised by the command, or its message.

    Returns:
        The failure kind. Unrecognised failures are ``GitFailureKind.OTHER``.
    """
    text = git_error_text(error)
    lowered = text.lower()

    if any(pattern in lowered for pattern in _TRANSIENT_LOCK_PATTERNS):
        return GitFailureKind.TRANSIENT_LOCK
    if _CONFLICT_MARKER in text or any(pattern in lowered for pattern in _CONFLICT_PATTERNS):
        return GitFailureKind.CONFLICT
    if any(pattern in lowered for pattern in _FAST_FORWARD_PATTERNS):
        return GitFailureKind.FAST_FORWARD_INFEASIBLE
    if any(pattern in lowered for pattern in _MISSING_UPSTREAM_PATTERNS):
        return GitFailureKind.MISSING_UPSTREAM
    if any(pattern in lowered for pattern in _CHECKED_OUT_PATTERNS):
        return GitFailureKind.BRANCH_CHECKED_OUT
    return GitFailureKind.OTHER
