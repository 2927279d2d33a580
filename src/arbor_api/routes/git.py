"""Git operation routes."""

from fastapi import APIRouter, Depends

from arbor_api.dependencies import get_git_operations_service
from arbor_api.domain.models import (
    AtomicCommitRequest,
    CheckoutRequest,
    CheckpointRequest,
    CheckpointRestoreResult,
    CheckpointResult,
    CommitInfo,
    CommitRequest,
    CommitResult,
    CreatePRResult,
    ForcePushRequest,
    GitHubStatus,
    HistoryRequest,
    MergeFromDefaultRequest,
    MergeIntoLocalBranchRequest,
    MergeResult,
    OperationResult,
    PullRequest,
    PushRequest,
    RepositoryState,
    WorktreeRequest,
)
from arbor_api.services.git_operations import GitOperationsService

router = APIRouter(prefix="/git", tags=["git"])


@router.post("/fetch", response_model=OperationResult)
async def fetch(
    data: WorktreeRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> OperationResult:
    """Fetch all remotes and prune deleted branches."""
    return await service.fetch(data.worktree_path)


@router.post("/checkout", response_model=OperationResult)
async def checkout(
    data: CheckoutRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> OperationResult:
    """Switch branches. Fails if the worktree has uncommitted changes."""
    return await service.checkout(data.worktree_path, data.branch)


@router.post("/history", response_model=list[CommitInfo])
async def get_history(
    data: HistoryRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> list[CommitInfo]:
    """List recent commits."""
    return await service.get_history(data.worktree_path, limit=data.limit)


@router.post("/commit", response_model=CommitResult)
async def commit(
    data: CommitRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> CommitResult:
    """Commit staged changes."""
    return await service.commit(data.worktree_path, data.message)


@router.post("/atomic-commit", response_model=CommitResult)
async def atomic_commit(
    data: AtomicCommitRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> CommitResult:
    """Stage exactly the given files and commit them."""
    return await service.atomic_commit(data.worktree_path, data.file_paths, data.message)


@router.post("/push", response_model=OperationResult)
async def push(
    data: PushRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> OperationResult:
    return await service.push(data.worktree_path, set_upstream=data.set_upstream)


@router.post("/pull", response_model=OperationResult)
async def pull(
    data: PullRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> OperationResult:
    """Rebase the current branch onto its upstream."""
    return await service.pull(data.worktree_path, auto_stash=data.auto_stash)


@router.post("/sync", response_model=OperationResult)
async def sync(
    data: PullRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> OperationResult:
    """Pull then push; publishes the branch if it has no upstream yet."""
    return await service.sync(data.worktree_path, auto_stash=data.auto_stash)


@router.post("/force-push", response_model=OperationResult)
async def force_push(
    data: ForcePushRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> OperationResult:
    """Force-push with lease. Protected branches need `confirm_protected_branch`."""
    return await service.force_push(
        data.worktree_path, confirm_protected_branch=data.confirm_protected_branch
    )


@router.post("/merge-from-default", response_model=OperationResult)
async def merge_from_default(
    data: MergeFromDefaultRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> OperationResult:
    return await service.merge_from_default(data.worktree_path, use_rebase=data.use_rebase)


@router.post("/merge-into-local-branch", response_model=MergeResult)
async def merge_into_local_branch(
    data: MergeIntoLocalBranchRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> MergeResult:
    """Merge the current branch into another local branch."""
    return await service.merge_into_local_branch(
        data.worktree_path,
        data.target_branch,
        fast_forward_only=data.fast_forward_only,
    )


@router.post("/abort-rebase", response_model=OperationResult)
async def abort_rebase(
    data: WorktreeRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> OperationResult:
    return await service.abort_rebase(data.worktree_path)


@router.post("/abort-merge", response_model=OperationResult)
async def abort_merge(
    data: WorktreeRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> OperationResult:
    return await service.abort_merge(data.worktree_path)


@router.post("/repository-state", response_model=RepositoryState)
async def get_repository_state(
    data: WorktreeRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> RepositoryState:
    """Report whether a rebase or merge is in progress."""
    return await service.get_repository_state(data.worktree_path)


@router.post("/create-pr", response_model=CreatePRResult)
async def create_pr(
    data: WorktreeRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> CreatePRResult:
    """Push the current branch and return the GitHub compare URL."""
    return await service.create_pr(data.worktree_path)


@router.post("/github-status", response_model=GitHubStatus)
async def get_github_status(
    data: WorktreeRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> GitHubStatus:
    return await service.get_github_status(data.worktree_path)


@router.post("/checkpoints", response_model=CheckpointResult, status_code=201)
async def create_checkpoint(
    data: CheckpointRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> CheckpointResult:
    """Record the worktree's index and working tree for later rollback."""
    return await service.create_checkpoint(data.worktree_path, data.checkpoint_id)


@router.post("/checkpoints/restore", response_model=CheckpointRestoreResult)
async def restore_checkpoint(
    data: CheckpointRequest,
    service: GitOperationsService = Depends(get_git_operations_service),
) -> CheckpointRestoreResult:
    """Roll the worktree back to a checkpoint."""
    return await service.restore_checkpoint(data.worktree_path, data.checkpoint_id)
