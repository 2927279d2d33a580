"""FastAPI dependency injection.

The coordinator is built once per application (see `build_git_operations_service`)
and kept on ``app.state``; routes receive it through `get_git_operations_service`
instead of reaching for a module-level singleton, so every request shares one
lock table and tests can swap in their own instance.
"""

from fastapi import Request

from arbor_api.config import Settings
from arbor_api.services.checkpoint_service import CheckpointService
from arbor_api.services.git_client import GitClientFactory
from arbor_api.services.git_operations import GitOperationsService
from arbor_api.services.lock_retry import LockRetryPolicy
from arbor_api.services.merge_orchestrator import MergeOrchestrator
from arbor_api.services.pr_status_service import GitHubPRStatusService
from arbor_api.services.repo_state import RepositoryInspector
from arbor_api.services.worktree_locks import WorktreeLockManager
from arbor_api.services.worktree_registry import GitWorktreeRegistry


def build_git_operations_service(settings: Settings) -> GitOperationsService:
    """Wire the coordinator and its collaborators from settings."""
    clients = GitClientFactory(
        local_timeout_seconds=settings.git_local_timeout_seconds,
        network_timeout_seconds=settings.git_network_timeout_seconds,
    )
    registry = GitWorktreeRegistry(roots=list(settings.worktree_roots), clients=clients)
    locks = WorktreeLockManager()
    retry = LockRetryPolicy(
        max_attempts=settings.git_lock_retry_attempts,
        delay_seconds=settings.git_lock_retry_delay_seconds,
    )
    inspector = RepositoryInspector(clients)

    return GitOperationsService(
        registry=registry,
        locks=locks,
        clients=clients,
        retry=retry,
        inspector=inspector,
        merge_orchestrator=MergeOrchestrator(
            locks=locks,
            registry=registry,
            clients=clients,
            retry=retry,
            inspector=inspector,
            target_lock_wait_seconds=settings.worktree_lock_wait_seconds,
        ),
        checkpoints=CheckpointService(
            clients,
            apply_attempts=settings.checkpoint_apply_attempts,
            apply_delay_seconds=settings.checkpoint_apply_delay_seconds,
        ),
        pr_status=GitHubPRStatusService(
            clients,
            api_url=settings.github_api_url,
            token=settings.github_token,
            remote=settings.default_remote,
            timeout_seconds=settings.github_timeout_seconds,
        ),
        protected_branches=list(settings.protected_branches),
        remote=settings.default_remote,
        default_branch_candidates=list(settings.default_branch_candidates),
    )


def get_git_operations_service(request: Request) -> GitOperationsService:
    """Get the application's GitOperationsService."""
    service: GitOperationsService = request.app.state.git_operations
    return service
