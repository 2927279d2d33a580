"""Enums for arbor domain models."""

from enum import Enum


class MergeType(str, Enum):
    """Outcome of merging a source branch into a local target branch."""

    FAST_FORWARD = "fast-forward"
    MERGE_COMMIT = "merge-commit"
    ALREADY_UP_TO_DATE = "already-up-to-date"


class TimeoutProfile(str, Enum):
    """Timeout profile of a git command facade."""

    LOCAL = "local"  # Disk-only commands (checkout, commit, log, status)
    NETWORK = "network"  # Commands that may reach a remote (fetch, push, pull)


class GitFailureKind(str, Enum):
    """Classification of a failed git command."""

    TRANSIENT_LOCK = "transient_lock"  # git's own *.lock file exists
    CONFLICT = "conflict"  # Merge/rebase stopped on conflicts
    MISSING_UPSTREAM = "missing_upstream"  # No tracking branch configured or found
    FAST_FORWARD_INFEASIBLE = "fast_forward_infeasible"  # --ff-only refused
    BRANCH_CHECKED_OUT = "branch_checked_out"  # Branch in use by another worktree
    OTHER = "other"
