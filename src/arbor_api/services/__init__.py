"""Services for arbor API."""

from arbor_api.services.checkpoint_service import CheckpointService
from arbor_api.services.git_client import GitClient, GitClientFactory
from arbor_api.services.git_operations import GitOperationsService
from arbor_api.services.lock_retry import LockRetryPolicy
from arbor_api.services.merge_orchestrator import MergeOrchestrator
from arbor_api.services.pr_status_service import GitHubPRStatusService
from arbor_api.services.repo_state import RepositoryInspector
from arbor_api.services.worktree_locks import WorktreeLockManager
from arbor_api.services.worktree_registry import GitWorktreeRegistry

__all__ = [
    "CheckpointService",
    "GitClient",
    "GitClientFactory",
    "GitHubPRStatusService",
    "GitOperationsService",
    "GitWorktreeRegistry",
    "LockRetryPolicy",
    "MergeOrchestrator",
    "RepositoryInspector",
    "WorktreeLockManager",
]
