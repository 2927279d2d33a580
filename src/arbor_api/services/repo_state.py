"""Repository state inspection.

Reads the markers git leaves in a worktree's git directory while a rebase or
merge is stopped. The state is recomputed on every call because a user
running git in a terminal can change it at any moment; it is never cached and
never takes the worktree lock, so handlers can use it as a pre-flight check
before queueing behind another operation.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import git

from arbor_api.domain.models import RepositoryState
from arbor_api.services.git_client import GitClientFactory, GitStatus

_REBASE_MARKERS = ("rebase-merge", "rebase-apply")
_MERGE_MARKER = "MERGE_HEAD"


def read_repository_state(worktree_path: str | Path) -> RepositoryState:
    """Read rebase/merge markers for a worktree (blocking).

    For a linked worktree ``Repo.git_dir`` is its private directory under
    ``<common>/.git/worktrees/<name>``, which is where these markers live.
    """
    git_dir = Path(git.Repo(worktree_path).git_dir)
    return RepositoryState(
        is_rebasing=any((git_dir / marker).exists() for marker in _REBASE_MARKERS),
        is_merging=(git_dir / _MERGE_MARKER).exists(),
    )


class RepositoryInspector:
    """Read-only checks used as guards before mutating operations."""

    def __init__(self, clients: GitClientFactory | None = None) -> None:
        self._clients = clients or GitClientFactory()

    async def get_state(self, worktree_path: str | Path) -> RepositoryState:
        """Report whether a rebase or merge is in progress in the worktree."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, read_repository_state, worktree_path)

    async def get_status(self, worktree_path: str | Path) -> GitStatus:
        return await self._clients.local(worktree_path).status()

    async def has_uncommitted_changes(self, worktree_path: str | Path) -> bool:
        """Check for any staged, unstaged or untracked entries."""
        status = await self.get_status(worktree_path)
        return status.has_changes
