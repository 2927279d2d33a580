"""Merging the current branch into another local branch.

The target branch may be checked out in a different worktree of the same
repository, in which case git refuses to check it out here and the merge has
to run inside that worktree instead. When the target is not checked out
anywhere, it is checked out temporarily in the source worktree and the source
branch is always restored afterwards.

Protected-branch rules do not apply here: a local merge never touches remote
state.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import git

from arbor_api.config import settings
from arbor_api.domain.enums import GitFailureKind, MergeType
from arbor_api.domain.models import MergeRequest, MergeResult
from arbor_api.errors import ConflictError, NotFoundError, PreconditionError
from arbor_api.services.git_client import GitClient, GitClientFactory
from arbor_api.services.git_errors import classify_git_error
from arbor_api.services.lock_retry import LockRetryPolicy
from arbor_api.services.repo_state import RepositoryInspector
from arbor_api.services.worktree_locks import WorktreeLockManager
from arbor_api.services.worktree_registry import (
    WorktreeRegistry,
    assert_registered_worktree,
    find_branch_worktree,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeFeasibility:
    """Merge outcome predicted before anything is written."""

    source_commit: str
    target_commit: str
    can_fast_forward: bool

    @property
    def already_up_to_date(self) -> bool:
        return self.source_commit == self.target_commit


def fast_forward_diverged_error(source_branch: str, target_branch: str) -> PreconditionError:
    return PreconditionError(
        f"Cannot fast-forward: branch '{target_branch}' has diverged from '{source_branch}'. "
        "The branches have different commits and require a merge commit.",
        code="FAST_FORWARD_NOT_POSSIBLE",
        details={"source_branch": source_branch, "target_branch": target_branch},
    )


class MergeOrchestrator:
    """Merges a worktree's branch into a local target branch.

    The caller must already hold the source worktree's lock. The target
    worktree's lock, when one is needed, is taken here with a bounded wait so
    two worktrees merging into each other cannot deadlock.
    """

    def __init__(
        self,
        *,
        locks: WorktreeLockManager,
        registry: WorktreeRegistry,
        clients: GitClientFactory | None = None,
        retry: LockRetryPolicy | None = None,
        inspector: RepositoryInspector | None = None,
        target_lock_wait_seconds: float | None = None,
    ) -> None:
        self._locks = locks
        self._registry = registry
        self._clients = clients or GitClientFactory()
        self._retry = retry or LockRetryPolicy()
        self._inspector = inspector or RepositoryInspector(self._clients)
        self._target_lock_wait_seconds = (
            target_lock_wait_seconds
            if target_lock_wait_seconds is not None
            else settings.worktree_lock_wait_seconds
        )

    async def merge(self, request: MergeRequest) -> MergeResult:
        """Merge `request.source_branch` into `request.target_branch`.

        Raises:
            PreconditionError: Self-merge, dirty tree or in-progress operation
                (in either worktree), or a fast-forward-only merge that
                cannot fast-forward.
            NotFoundError: The target branch does not exist locally.
            ConflictError: The merge conflicted; it was aborted before raising.
            ForbiddenError: The target branch is checked out in a worktree the
                registry does not authorize.
        """
        source_path = request.source_worktree
        source_branch = request.source_branch
        target_branch = request.target_branch

        if source_branch == target_branch:
            raise PreconditionError(
                "Cannot merge current branch into itself",
                code="SELF_MERGE",
                details={"branch": source_branch},
            )

        await self._ensure_mergeable(source_path)

        client = self._clients.local(source_path)
        if not await client.local_branch_exists(target_branch):
            raise NotFoundError(
                f"Target branch '{target_branch}' does not exist locally",
                code="BRANCH_NOT_FOUND",
                details={"branch": target_branch},
            )

        feasibility = await self.check_feasibility(client, source_branch, target_branch)
        if feasibility.already_up_to_date:
            return MergeResult(merge_type=MergeType.ALREADY_UP_TO_DATE)

        if request.fast_forward_only and not feasibility.can_fast_forward:
            raise fast_forward_diverged_error(source_branch, target_branch)

        target_path = await find_branch_worktree(self._registry, source_path, target_branch)
        if target_path is not None:
            target_path = assert_registered_worktree(self._registry, target_path)
            return await self._merge_in_worktree(request, target_path, feasibility)

        return await self._merge_with_temporary_checkout(request, client, feasibility)

    async def check_feasibility(
        self, client: GitClient, source_branch: str, target_branch: str
    ) -> MergeFeasibility:
        """Resolve both branches and test ancestry without writing anything."""
        source_commit = await client.rev_parse(source_branch)
        target_commit = await client.rev_parse(target_branch)
        if source_commit == target_commit:
            return MergeFeasibility(source_commit, target_commit, can_fast_forward=True)

        can_ff = await client.is_ancestor(target_commit, source_commit)
        return MergeFeasibility(source_commit, target_commit, can_fast_forward=can_ff)

    async def _ensure_mergeable(
        self, worktree_path: Path, *, target_branch: str | None = None
    ) -> None:
        """Reject worktrees with uncommitted changes or a stopped merge/rebase."""
        location = (
            f"Cannot merge into '{target_branch}': the target worktree at '{worktree_path}'"
            if target_branch
            else "Cannot merge: this worktree"
        )

        state = await self._inspector.get_state(worktree_path)
        if state.in_progress:
            raise PreconditionError(
                f"{location} has a rebase or merge in progress. Please complete or abort it first.",
                code="OPERATION_IN_PROGRESS",
                details={"worktree_path": str(worktree_path)},
            )

        if await self._inspector.has_uncommitted_changes(worktree_path):
            raise PreconditionError(
                f"{location} has uncommitted changes. Please commit or stash your changes first.",
                code="DIRTY_WORKTREE",
                details={"worktree_path": str(worktree_path)},
            )

    def _merge_args(self, request: MergeRequest) -> list[str]:
        args = ["merge", request.source_branch, "--no-edit"]
        if request.fast_forward_only:
            args.append("--ff-only")
        return args

    async def _merge_in_worktree(
        self, request: MergeRequest, target_path: Path, feasibility: MergeFeasibility
    ) -> MergeResult:
        """Run the merge inside the worktree that has the target checked out."""
        logger.info(
            f"Merging '{request.source_branch}' into '{request.target_branch}' "
            f"in worktree {target_path}"
        )

        async with self._locks.hold(target_path, timeout=self._target_lock_wait_seconds):
            await self._ensure_mergeable(target_path, target_branch=request.target_branch)

            target_client = self._clients.local(target_path)
            args = self._merge_args(request)
            try:
                await self._retry.run(target_path, lambda: target_client.run(*args))
            except git.GitCommandError as e:
                kind = classify_git_error(e)
                if kind is GitFailureKind.CONFLICT:
                    await target_client.abort("merge")
                    raise ConflictError(
                        "Merge failed due to conflicts. Operation aborted. "
                        f"To resolve manually, go to '{target_path}' and run: "
                        f"git merge {request.source_branch}",
                        code="MERGE_CONFLICT",
                        details={"worktree_path": str(target_path)},
                    ) from e
                if kind is GitFailureKind.FAST_FORWARD_INFEASIBLE and request.fast_forward_only:
                    raise fast_forward_diverged_error(
                        request.source_branch, request.target_branch
                    ) from e
                raise

        if feasibility.can_fast_forward:
            return MergeResult(merge_type=MergeType.FAST_FORWARD)
        return MergeResult(merge_type=MergeType.MERGE_COMMIT)

    @asynccontextmanager
    async def _temporary_checkout(
        self, client: GitClient, branch: str, restore_branch: str
    ) -> AsyncIterator[None]:
        """Check out `branch`, then return to `restore_branch` on every exit path."""
        path = client.worktree_path
        try:
            await self._retry.run(path, lambda: client.run("checkout", branch))
        except git.GitCommandError as e:
            if classify_git_error(e) is GitFailureKind.BRANCH_CHECKED_OUT:
                raise PreconditionError(
                    f"Cannot merge into '{branch}': this branch is checked out in another "
                    f"worktree. Please merge from the worktree where '{branch}' is checked out.",
                    code="BRANCH_CHECKED_OUT_ELSEWHERE",
                    details={"branch": branch},
                ) from e
            raise

        try:
            yield
        except BaseException:
            try:
                await self._retry.run(path, lambda: client.run("checkout", restore_branch))
            except Exception as restore_error:
                logger.error(
                    f"Failed to restore branch '{restore_branch}' in {path}: {restore_error}"
                )
            raise
        else:
            await self._retry.run(path, lambda: client.run("checkout", restore_branch))

    async def _merge_with_temporary_checkout(
        self, request: MergeRequest, client: GitClient, feasibility: MergeFeasibility
    ) -> MergeResult:
        """Merge by checking the target out in the source worktree."""
        logger.info(
            f"Merging '{request.source_branch}' into '{request.target_branch}' "
            f"via temporary checkout in {request.source_worktree}"
        )
        args = self._merge_args(request)

        async with self._temporary_checkout(
            client, request.target_branch, restore_branch=request.source_branch
        ):
            try:
                await self._retry.run(request.source_worktree, lambda: client.run(*args))
            except git.GitCommandError as e:
                kind = classify_git_error(e)
                if kind is GitFailureKind.CONFLICT:
                    await client.abort("merge")
                    raise ConflictError(
                        "Merge failed due to conflicts. Operation aborted. "
                        f"Resolve conflicts manually on branch '{request.target_branch}'.",
                        code="MERGE_CONFLICT",
                        details={
                            "worktree_path": str(request.source_worktree),
                            "branch": request.target_branch,
                        },
                    ) from e
                if kind is GitFailureKind.FAST_FORWARD_INFEASIBLE and request.fast_forward_only:
                    raise fast_forward_diverged_error(
                        request.source_branch, request.target_branch
                    ) from e
                raise

            new_head = await client.rev_parse("HEAD")

        if new_head == feasibility.target_commit:
            merge_type = MergeType.ALREADY_UP_TO_DATE
        elif new_head == feasibility.source_commit:
            merge_type = MergeType.FAST_FORWARD
        else:
            merge_type = MergeType.MERGE_COMMIT
        return MergeResult(merge_type=merge_type)
