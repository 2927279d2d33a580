"""Git operation handlers for registered worktrees.

Every handler follows the same protocol: authorize the worktree path, take
that worktree's lock, run guard checks, run git commands (each wrapped in the
lock-file retry policy), and release the lock on every exit path. Guard
failures are raised before any mutating command runs. Conflicting merges and
rebases are aborted before the conflict is reported, so the coordinator never
leaves a worktree mid-conflict. Failures nobody recognises propagate as
``git.GitCommandError``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import git

from arbor_api.config import settings
from arbor_api.domain.enums import GitFailureKind
from arbor_api.domain.models import (
    CheckpointRestoreResult,
    CheckpointResult,
    CommitInfo,
    CommitResult,
    CreatePRResult,
    GitHubStatus,
    MergeRequest,
    MergeResult,
    OperationResult,
    RepositoryState,
)
from arbor_api.errors import (
    ConflictError,
    ExternalServiceError,
    PreconditionError,
    ValidationError,
)
from arbor_api.services.checkpoint_service import CheckpointService
from arbor_api.services.git_client import GitClient, GitClientFactory
from arbor_api.services.git_errors import classify_git_error
from arbor_api.services.lock_retry import LockRetryPolicy
from arbor_api.services.merge_orchestrator import MergeOrchestrator
from arbor_api.services.pr_status_service import GitHubPRStatusService, PRStatusProvider
from arbor_api.services.repo_state import RepositoryInspector
from arbor_api.services.worktree_locks import WorktreeLockManager
from arbor_api.services.worktree_registry import WorktreeRegistry, assert_registered_worktree
from arbor_api.utils.github_url import build_compare_url, parse_github_owner_repo

logger = logging.getLogger(__name__)

# Field separator for `git log` output; cannot appear in commit subjects
_LOG_SEPARATOR = "\x1f"
_LOG_FORMAT = _LOG_SEPARATOR.join(["%H", "%h", "%s", "%an", "%ae", "%aI"])


class GitOperationsService:
    """Coordinates mutating git operations across registered worktrees.

    One instance is built at startup and shared by every request, so that all
    requests go through the same lock table.
    """

    def __init__(
        self,
        registry: WorktreeRegistry,
        *,
        locks: WorktreeLockManager | None = None,
        clients: GitClientFactory | None = None,
        retry: LockRetryPolicy | None = None,
        inspector: RepositoryInspector | None = None,
        merge_orchestrator: MergeOrchestrator | None = None,
        checkpoints: CheckpointService | None = None,
        pr_status: PRStatusProvider | None = None,
        protected_branches: list[str] | None = None,
        remote: str | None = None,
        default_branch_candidates: list[str] | None = None,
    ) -> None:
        self.registry = registry
        self.locks = locks or WorktreeLockManager()
        self.clients = clients or GitClientFactory()
        self.retry = retry or LockRetryPolicy()
        self.inspector = inspector or RepositoryInspector(self.clients)
        self.merge_orchestrator = merge_orchestrator or MergeOrchestrator(
            locks=self.locks,
            registry=registry,
            clients=self.clients,
            retry=self.retry,
            inspector=self.inspector,
        )
        self.checkpoints = checkpoints or CheckpointService(self.clients)
        self.pr_status = pr_status or GitHubPRStatusService(self.clients)
        self.protected_branches = frozenset(
            protected_branches if protected_branches is not None else settings.protected_branches
        )
        self.remote = remote or settings.default_remote
        self.default_branch_candidates = (
            default_branch_candidates or settings.default_branch_candidates
        )

    # ============================================================
    # Guards
    # ============================================================

    def _authorize(self, worktree_path: str | Path) -> Path:
        return assert_registered_worktree(self.registry, worktree_path)

    async def _ensure_no_operation_in_progress(self, path: Path, action: str) -> None:
        state = await self.inspector.get_state(path)
        if state.in_progress:
            raise PreconditionError(
                f"Cannot {action}: a rebase or merge is in progress. "
                "Please complete or abort it first.",
                code="OPERATION_IN_PROGRESS",
                details={"worktree_path": str(path)},
            )

    async def _ensure_clean(self, path: Path, message: str) -> None:
        if await self.inspector.has_uncommitted_changes(path):
            raise PreconditionError(
                message, code="DIRTY_WORKTREE", details={"worktree_path": str(path)}
            )

    async def _refresh_remote_tracking(self, path: Path, client: GitClient) -> None:
        """Best-effort fetch after the primary mutation already succeeded."""
        try:
            await self.retry.run(path, lambda: client.run("fetch", self.remote))
        except git.GitCommandError as e:
            logger.warning(f"Failed to refresh remote-tracking refs in {path}: {e}")

    async def _push_set_upstream(self, path: Path, client: GitClient) -> None:
        branch = await client.current_branch()
        await self.retry.run(
            path, lambda: client.run("push", "--set-upstream", self.remote, branch)
        )

    # ============================================================
    # Read-only operations
    # ============================================================

    async def get_repository_state(self, worktree_path: str | Path) -> RepositoryState:
        path = self._authorize(worktree_path)
        return await self.inspector.get_state(path)

    async def get_history(self, worktree_path: str | Path, limit: int = 50) -> list[CommitInfo]:
        """Return the most recent commits reachable from HEAD."""
        path = self._authorize(worktree_path)
        if limit < 1:
            raise ValidationError("limit must be a positive integer", code="INVALID_LIMIT")

        client = self.clients.local(path)
        if not await client.ref_exists("HEAD"):
            return []

        output = await client.run("log", f"-{limit}", f"--format={_LOG_FORMAT}")
        commits: list[CommitInfo] = []
        for line in output.strip().splitlines():
            parts = line.split(_LOG_SEPARATOR)
            if len(parts) != 6:
                continue
            hash_, short_hash, message, author, email, date_str = parts
            commits.append(
                CommitInfo(
                    hash=hash_,
                    short_hash=short_hash,
                    message=message,
                    author=author,
                    email=email,
                    date=datetime.fromisoformat(date_str),
                )
            )
        return commits

    async def get_github_status(self, worktree_path: str | Path) -> GitHubStatus:
        path = self._authorize(worktree_path)
        return await self.pr_status.get_status(path)

    # ============================================================
    # Local operations
    # ============================================================

    async def checkout(self, worktree_path: str | Path, branch: str) -> OperationResult:
        path = self._authorize(worktree_path)
        async with self.locks.hold(path):
            await self._ensure_clean(
                path,
                "Cannot switch branches: you have uncommitted changes. "
                "Please commit or stash your changes first.",
            )
            client = self.clients.local(path)
            await self.retry.run(path, lambda: client.run("checkout", branch))
        return OperationResult()

    async def commit(self, worktree_path: str | Path, message: str) -> CommitResult:
        """Commit whatever is currently staged."""
        path = self._authorize(worktree_path)
        if not message.strip():
            raise ValidationError("Commit message cannot be empty", code="EMPTY_COMMIT_MESSAGE")

        async with self.locks.hold(path):
            client = self.clients.local(path)
            status = await client.status()
            if not status.staged:
                raise ValidationError("No files staged for commit", code="NOTHING_STAGED")

            await self.retry.run(path, lambda: client.run("commit", "-m", message))
            commit_hash = await client.rev_parse("HEAD")
        return CommitResult(hash=commit_hash)

    async def atomic_commit(
        self, worktree_path: str | Path, file_paths: list[str], message: str
    ) -> CommitResult:
        """Stage exactly `file_paths` and commit them.

        Anything staged beforehand is unstaged first, so the commit contains
        only the requested files.
        """
        path = self._authorize(worktree_path)
        if not message.strip():
            raise ValidationError("Commit message cannot be empty", code="EMPTY_COMMIT_MESSAGE")
        if not file_paths:
            raise ValidationError("No files selected for commit", code="NO_FILES_SELECTED")

        async with self.locks.hold(path):
            client = self.clients.local(path)
            await self.retry.run(path, lambda: client.run("reset", "-q", "HEAD"))
            await self.retry.run(path, lambda: client.run("add", "--", *file_paths))

            status = await client.status()
            if not status.staged:
                raise ValidationError(
                    "Failed to stage files for commit",
                    code="STAGE_FAILED",
                    details={"file_paths": file_paths},
                )

            await self.retry.run(path, lambda: client.run("commit", "-m", message))
            commit_hash = await client.rev_parse("HEAD")
        return CommitResult(hash=commit_hash)

    async def abort_rebase(self, worktree_path: str | Path) -> OperationResult:
        path = self._authorize(worktree_path)
        async with self.locks.hold(path):
            client = self.clients.local(path)
            await client.run("rebase", "--abort")
        return OperationResult()

    async def abort_merge(self, worktree_path: str | Path) -> OperationResult:
        path = self._authorize(worktree_path)
        async with self.locks.hold(path):
            client = self.clients.local(path)
            await client.run("merge", "--abort")
        return OperationResult()

    async def merge_into_local_branch(
        self,
        worktree_path: str | Path,
        target_branch: str,
        fast_forward_only: bool = False,
    ) -> MergeResult:
        """Merge the worktree's current branch into another local branch."""
        path = self._authorize(worktree_path)
        await self._ensure_no_operation_in_progress(path, "merge")

        async with self.locks.hold(path):
            source_branch = await self.clients.local(path).current_branch()
            if source_branch == "HEAD":
                raise PreconditionError(
                    "Cannot merge from a detached HEAD. Check out a branch first.",
                    code="DETACHED_HEAD",
                    details={"worktree_path": str(path)},
                )
            request = MergeRequest(
                source_worktree=path,
                source_branch=source_branch,
                target_branch=target_branch,
                fast_forward_only=fast_forward_only,
            )
            return await self.merge_orchestrator.merge(request)

    # ============================================================
    # Checkpoints
    # ============================================================

    async def create_checkpoint(
        self, worktree_path: str | Path, checkpoint_id: str
    ) -> CheckpointResult:
        path = self._authorize(worktree_path)
        async with self.locks.hold(path):
            commit = await self.checkpoints.create(path, checkpoint_id)
        return CheckpointResult(checkpoint_id=checkpoint_id, commit=commit)

    async def restore_checkpoint(
        self, worktree_path: str | Path, checkpoint_id: str
    ) -> CheckpointRestoreResult:
        path = self._authorize(worktree_path)
        async with self.locks.hold(path):
            restored = await self.checkpoints.restore(path, checkpoint_id)
        return CheckpointRestoreResult(restored=restored)

    # ============================================================
    # Remote operations
    # ============================================================

    async def fetch(self, worktree_path: str | Path) -> OperationResult:
        path = self._authorize(worktree_path)
        async with self.locks.hold(path):
            client = self.clients.network(path)
            await self.retry.run(path, lambda: client.run("fetch", "--all", "--prune"))
        return OperationResult()

    async def push(self, worktree_path: str | Path, set_upstream: bool = False) -> OperationResult:
        path = self._authorize(worktree_path)
        async with self.locks.hold(path):
            client = self.clients.network(path)
            if set_upstream and not await client.has_upstream():
                await self._push_set_upstream(path, client)
            else:
                await self.retry.run(path, lambda: client.run("push"))
            await self._refresh_remote_tracking(path, client)
        return OperationResult()

    async def force_push(
        self, worktree_path: str | Path, confirm_protected_branch: bool = False
    ) -> OperationResult:
        """Force-push with lease; protected branches require confirmation."""
        path = self._authorize(worktree_path)
        async with self.locks.hold(path):
            client = self.clients.network(path)
            branch = await client.current_branch()
            if branch in self.protected_branches and not confirm_protected_branch:
                raise PreconditionError(
                    f"Cannot force push to protected branch '{branch}'. "
                    "This action requires explicit confirmation.",
                    code="PROTECTED_BRANCH",
                    details={"branch": branch},
                )

            logger.info(f"Force pushing '{branch}' from {path}")
            await self.retry.run(path, lambda: client.run("push", "--force-with-lease"))
            await self._refresh_remote_tracking(path, client)
        return OperationResult()

    async def pull(self, worktree_path: str | Path, auto_stash: bool = False) -> OperationResult:
        """Rebase the current branch onto its upstream."""
        path = self._authorize(worktree_path)
        await self._ensure_no_operation_in_progress(path, "pull")

        async with self.locks.hold(path):
            await self._ensure_no_operation_in_progress(path, "pull")
            has_changes = await self.inspector.has_uncommitted_changes(path)
            if has_changes and not auto_stash:
                raise PreconditionError(
                    "Cannot pull with uncommitted changes. Please commit or stash your "
                    "changes first, or enable auto-stash.",
                    code="DIRTY_WORKTREE",
                    details={"worktree_path": str(path)},
                )

            client = self.clients.network(path)
            kind = await self._pull_rebase(path, client, stash=has_changes, action="pull")
            if kind is GitFailureKind.MISSING_UPSTREAM:
                raise ExternalServiceError(
                    "No upstream branch to pull from. The remote branch may have been deleted.",
                    code="NO_UPSTREAM",
                    details={"worktree_path": str(path)},
                )
        return OperationResult()

    async def sync(self, worktree_path: str | Path, auto_stash: bool = False) -> OperationResult:
        """Pull (rebase) then push; a branch without upstream is published instead."""
        path = self._authorize(worktree_path)
        await self._ensure_no_operation_in_progress(path, "sync")

        async with self.locks.hold(path):
            await self._ensure_no_operation_in_progress(path, "sync")
            has_changes = await self.inspector.has_uncommitted_changes(path)
            if has_changes and not auto_stash:
                raise PreconditionError(
                    "Cannot sync with uncommitted changes. Please commit or stash your "
                    "changes first.",
                    code="DIRTY_WORKTREE",
                    details={"worktree_path": str(path)},
                )

            client = self.clients.network(path)
            kind = await self._pull_rebase(path, client, stash=has_changes, action="sync")
            if kind is GitFailureKind.MISSING_UPSTREAM:
                logger.info(f"No upstream for {path}; publishing branch instead of pulling")
                await self._push_set_upstream(path, client)
            else:
                await self.retry.run(path, lambda: client.run("push"))
            await self._refresh_remote_tracking(path, client)
        return OperationResult()

    async def _pull_rebase(
        self, path: Path, client: GitClient, *, stash: bool, action: str
    ) -> GitFailureKind | None:
        """Run ``pull --rebase``, stashing local changes around it if asked.

        Returns:
            None on success, or ``GitFailureKind.MISSING_UPSTREAM`` when the
            branch has nothing to pull from (callers decide what that means).

        Raises:
            ConflictError: The rebase conflicted and was aborted, or the
                stashed changes could not be re-applied.
        """
        if stash:
            await self.retry.run(
                path, lambda: client.run("stash", "push", "-u", "-m", f"Auto-stash before {action}")
            )

        try:
            await self.retry.run(path, lambda: client.run("pull", "--rebase"))
        except git.GitCommandError as e:
            kind = classify_git_error(e)
            if kind is GitFailureKind.CONFLICT:
                await client.abort("rebase")
            if stash:
                await self._restore_stash_after_failure(path, client)

            if kind is GitFailureKind.MISSING_UPSTREAM:
                return kind
            if kind is GitFailureKind.CONFLICT:
                raise ConflictError(
                    f"{action.capitalize()} failed due to conflicts. The operation has been "
                    "aborted. Please resolve conflicts manually or try a different approach.",
                    code="REBASE_CONFLICT",
                    details={"worktree_path": str(path)},
                ) from e
            raise

        if stash:
            try:
                await client.run("stash", "pop")
            except git.GitCommandError as e:
                raise ConflictError(
                    f"{action.capitalize()} succeeded but failed to restore your stashed "
                    "changes. Your changes are saved in git stash. "
                    "Run 'git stash pop' to restore them.",
                    code="STASH_RESTORE_FAILED",
                    details={"worktree_path": str(path)},
                ) from e
        return None

    async def _restore_stash_after_failure(self, path: Path, client: GitClient) -> None:
        try:
            await client.run("stash", "pop")
        except git.GitCommandError as e:
            logger.error(
                f"Failed to re-apply auto-stash in {path}; changes remain in git stash: {e}"
            )

    async def merge_from_default(
        self, worktree_path: str | Path, use_rebase: bool = False
    ) -> OperationResult:
        """Bring the remote default branch (main, else master) into the current branch."""
        path = self._authorize(worktree_path)
        await self._ensure_no_operation_in_progress(path, "merge/rebase")

        async with self.locks.hold(path):
            await self._ensure_no_operation_in_progress(path, "merge/rebase")
            await self._ensure_clean(
                path,
                "Cannot merge/rebase with uncommitted changes. "
                "Please commit or stash your changes first.",
            )

            client = self.clients.network(path)
            await self.retry.run(path, lambda: client.run("fetch", "--all"))

            default_ref = await self._resolve_default_branch(client)
            operation = "rebase" if use_rebase else "merge"
            args = ["rebase", default_ref] if use_rebase else ["merge", default_ref, "--no-edit"]
            try:
                await self.retry.run(path, lambda: client.run(*args))
            except git.GitCommandError as e:
                if classify_git_error(e) is GitFailureKind.CONFLICT:
                    await client.abort(operation)
                    raise ConflictError(
                        f"{operation.capitalize()} failed due to conflicts. The operation has "
                        "been aborted. Please resolve conflicts manually or use a different "
                        "strategy.",
                        code="REBASE_CONFLICT" if use_rebase else "MERGE_CONFLICT",
                        details={"worktree_path": str(path), "base": default_ref},
                    ) from e
                raise
        return OperationResult()

    async def _resolve_default_branch(self, client: GitClient) -> str:
        for candidate in self.default_branch_candidates:
            ref = f"{self.remote}/{candidate}"
            if await client.ref_exists(f"refs/remotes/{ref}"):
                return ref
        names = " or ".join(self.default_branch_candidates)
        raise PreconditionError(
            f"Could not find default branch ({names})", code="NO_DEFAULT_BRANCH"
        )

    async def create_pr(self, worktree_path: str | Path) -> CreatePRResult:
        """Publish the current branch and return GitHub's compare URL for it."""
        path = self._authorize(worktree_path)
        async with self.locks.hold(path):
            client = self.clients.network(path)
            branch = await client.current_branch()

            if await client.has_upstream():
                await self.retry.run(path, lambda: client.run("push"))
            else:
                await self.retry.run(
                    path, lambda: client.run("push", "--set-upstream", self.remote, branch)
                )

            remote_url = await client.remote_url(self.remote)
            try:
                owner, repo = parse_github_owner_repo(remote_url)
            except ValueError as e:
                raise ExternalServiceError(
                    "Could not determine GitHub repository URL",
                    code="UNSUPPORTED_REMOTE",
                    details={"remote_url": remote_url},
                ) from e

            url = build_compare_url(owner, repo, branch)
            await self._refresh_remote_tracking(path, client)
        return CreatePRResult(url=url)

