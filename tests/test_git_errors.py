"""Tests for git failure classification."""

from __future__ import annotations

import git
import pytest

from arbor_api.domain.enums import GitFailureKind
from arbor_api.services.git_errors import classify_git_error, git_error_text


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        (
            "fatal: Unable to create '/repo/.git/index.lock': File exists.",
            GitFailureKind.TRANSIENT_LOCK,
        ),
        (
            "Another git process seems to be running in this repository",
            GitFailureKind.TRANSIENT_LOCK,
        ),
        ("error: cannot lock ref 'refs/heads/main'", GitFailureKind.TRANSIENT_LOCK),
        (
            "CONFLICT (content): Merge conflict in app.py\n"
            "Automatic merge failed; fix conflicts and then commit the result.",
            GitFailureKind.CONFLICT,
        ),
        ("error: could not apply 1a2b3c4... Add feature", GitFailureKind.CONFLICT),
        ("fatal: Not possible to fast-forward, aborting.", GitFailureKind.FAST_FORWARD_INFEASIBLE),
        (
            "There is no tracking information for the current branch.",
            GitFailureKind.MISSING_UPSTREAM,
        ),
        ("fatal: couldn't find remote ref feature/x", GitFailureKind.MISSING_UPSTREAM),
        (
            "fatal: 'main' is already checked out at '/repo'",
            GitFailureKind.BRANCH_CHECKED_OUT,
        ),
        (
            "fatal: 'main' is already used by worktree at '/repo'",
            GitFailureKind.BRANCH_CHECKED_OUT,
        ),
        ("fatal: not a git repository", GitFailureKind.OTHER),
    ],
)
def test_classify_git_error_messages(message: str, expected: GitFailureKind) -> None:
    assert classify_git_error(message) is expected


def test_lowercase_conflict_word_is_not_a_merge_conflict() -> None:
    assert classify_git_error("no conflict markers found") is GitFailureKind.OTHER


def test_classifies_git_command_error_from_output_not_command_line() -> None:
    # The branch name mentions a lock file; only stderr may be matched
    error = git.GitCommandError(
        ["git", "checkout", "fix-index.lock-handling"],
        1,
        stderr="error: you need to resolve your current index first",
    )
    assert classify_git_error(error) is GitFailureKind.OTHER


def test_classifies_git_command_error_stderr() -> None:
    error = git.GitCommandError(
        ["git", "commit", "-m", "x"],
        128,
        stderr="fatal: Unable to create '/repo/.git/index.lock': File exists.",
    )
    assert classify_git_error(error) is GitFailureKind.TRANSIENT_LOCK
    assert "index.lock" in git_error_text(error)


def test_classifies_non_git_exceptions_by_message() -> None:
    assert classify_git_error(RuntimeError("boom")) is GitFailureKind.OTHER
