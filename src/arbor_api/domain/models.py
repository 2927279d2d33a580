"""Pydantic domain models for arbor API."""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from arbor_api.domain.enums import MergeType

# ============================================================
# Repository / Worktree
# ============================================================


class RepositoryState(BaseModel):
    """On-disk indicators of an in-progress rebase or merge."""

    model_config = ConfigDict(populate_by_name=True)

    is_rebasing: bool = Field(False, alias="isRebasing")
    is_merging: bool = Field(False, alias="isMerging")

    @property
    def in_progress(self) -> bool:
        return self.is_rebasing or self.is_merging


class WorktreeEntry(BaseModel):
    """One worktree of a repository and the branch checked out in it."""

    path: Path
    branch: str | None = None  # None for a detached HEAD


class CommitInfo(BaseModel):
    """A commit from the worktree history."""

    model_config = ConfigDict(populate_by_name=True)

    hash: str
    short_hash: str = Field(alias="shortHash")
    message: str
    author: str
    email: str
    date: datetime


class MergeRequest(BaseModel):
    """Merge of the branch checked out in `source_worktree` into `target_branch`."""

    source_worktree: Path
    source_branch: str
    target_branch: str
    fast_forward_only: bool = False


# ============================================================
# Operation results
# ============================================================


class OperationResult(BaseModel):
    """Result of a mutating git operation."""

    success: bool = True


class CommitResult(OperationResult):
    """Result of commit / atomic commit."""

    hash: str


class MergeResult(OperationResult):
    """Result of merging into a local branch."""

    model_config = ConfigDict(populate_by_name=True)

    merge_type: MergeType = Field(alias="mergeType")


class CreatePRResult(OperationResult):
    """Result of preparing a pull request."""

    url: str


class CheckpointResult(OperationResult):
    """Result of creating a rollback checkpoint."""

    model_config = ConfigDict(populate_by_name=True)

    checkpoint_id: str = Field(alias="checkpointId")
    commit: str | None = None  # None when there was nothing to record


class CheckpointRestoreResult(OperationResult):
    """Result of restoring a rollback checkpoint."""

    restored: bool


# ============================================================
# GitHub status
# ============================================================


class PullRequestSummary(BaseModel):
    """Pull request associated with a branch."""

    number: int
    title: str
    state: str
    draft: bool = False
    merged: bool = False
    url: str


class GitHubStatus(BaseModel):
    """PR status for the branch checked out in a worktree."""

    model_config = ConfigDict(populate_by_name=True)

    branch: str
    repository: str
    pull_request: PullRequestSummary | None = Field(
        default=None, alias="pullRequest"
    )


# ============================================================
# Requests
# ============================================================


class WorktreeRequest(BaseModel):
    """Request targeting one worktree."""

    model_config = ConfigDict(populate_by_name=True)

    worktree_path: str = Field(
        ..., min_length=1, alias="worktreePath", description="Absolute path of the worktree"
    )


class CheckoutRequest(WorktreeRequest):
    branch: str = Field(..., min_length=1)


class HistoryRequest(WorktreeRequest):
    limit: int = Field(50, ge=1, le=1000)


class CommitRequest(WorktreeRequest):
    message: str


class AtomicCommitRequest(WorktreeRequest):
    file_paths: list[str] = Field(alias="filePaths")
    message: str


class PushRequest(WorktreeRequest):
    set_upstream: bool = Field(False, alias="setUpstream")


class PullRequest(WorktreeRequest):
    """Pull/sync request (`git pull --rebase`), not a GitHub pull request."""

    auto_stash: bool = Field(False, alias="autoStash")


class ForcePushRequest(WorktreeRequest):
    confirm_protected_branch: bool = Field(False, alias="confirmProtectedBranch")


class MergeFromDefaultRequest(WorktreeRequest):
    use_rebase: bool = Field(False, alias="useRebase")


class MergeIntoLocalBranchRequest(WorktreeRequest):
    target_branch: str = Field(..., min_length=1, alias="targetBranch")
    fast_forward_only: bool = Field(False, alias="fastForwardOnly")


class CheckpointRequest(WorktreeRequest):
    checkpoint_id: str = Field(..., min_length=1, max_length=200, alias="checkpointId")
