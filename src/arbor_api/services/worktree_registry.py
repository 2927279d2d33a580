"""Worktree registry: which paths may be operated on and which branch each holds.

The coordinator only consumes this interface. Registration of worktrees is
owned by whoever creates them (the host application); the default
implementation authorizes explicitly registered paths plus any path under a
configured root directory.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import git

from arbor_api.config import settings
from arbor_api.domain.models import WorktreeEntry
from arbor_api.errors import ForbiddenError
from arbor_api.services.git_client import GitClientFactory
from arbor_api.services.worktree_locks import worktree_key

logger = logging.getLogger(__name__)


class WorktreeRegistry(Protocol):
    """Read-only view of the registered worktrees."""

    def is_authorized(self, path: Path) -> bool: ...

    async def list_worktrees(self, repo_path: Path) -> list[WorktreeEntry]: ...


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    """Parse ``git worktree list --porcelain`` output.

    Records are separated by blank lines; a detached worktree has a
    ``detached`` line instead of ``branch refs/heads/<name>``.
    """
    entries: list[WorktreeEntry] = []
    current_path: Path | None = None
    current_branch: str | None = None

    for line in [*output.split("\n"), ""]:
        if line.startswith("worktree "):
            current_path = Path(line[len("worktree ") :])
        elif line.startswith("branch refs/heads/"):
            current_branch = line[len("branch refs/heads/") :]
        elif line == "" and current_path is not None:
            entries.append(WorktreeEntry(path=current_path, branch=current_branch))
            current_path = None
            current_branch = None

    return entries


async def find_branch_worktree(
    registry: WorktreeRegistry, repo_path: Path, branch: str
) -> Path | None:
    """Return the worktree where `branch` is checked out, or None."""
    for entry in await registry.list_worktrees(repo_path):
        if entry.branch == branch:
            return entry.path
    return None


def assert_registered_worktree(registry: WorktreeRegistry, path: str | Path) -> Path:
    """Resolve `path` and ensure the registry authorizes it.

    Returns:
        The absolute worktree path.

    Raises:
        ForbiddenError: If the path is not a registered worktree.
    """
    resolved = Path(worktree_key(path))
    if not registry.is_authorized(resolved):
        raise ForbiddenError(
            f"Path '{path}' is not a registered worktree",
            code="UNREGISTERED_WORKTREE",
            details={"worktree_path": str(path)},
        )
    return resolved


class GitWorktreeRegistry:
    """Registry backed by ``git worktree list`` and an allow-list of roots."""

    def __init__(
        self,
        roots: list[Path] | None = None,
        clients: GitClientFactory | None = None,
    ) -> None:
        raw_roots = roots if roots is not None else settings.worktree_roots
        self._roots = [Path(worktree_key(root)) for root in raw_roots]
        self._registered: set[str] = set()
        self._clients = clients or GitClientFactory()

    def register(self, path: str | Path) -> None:
        self._registered.add(worktree_key(path))

    def unregister(self, path: str | Path) -> None:
        self._registered.discard(worktree_key(path))

    def is_authorized(self, path: Path) -> bool:
        key = worktree_key(path)
        if key in self._registered:
            return True
        candidate = Path(key)
        return any(candidate.is_relative_to(root) for root in self._roots)

    async def list_worktrees(self, repo_path: Path) -> list[WorktreeEntry]:
        """List every worktree sharing `repo_path`'s repository."""
        try:
            output = await self._clients.local(repo_path).run("worktree", "list", "--porcelain")
        except (git.GitCommandError, git.InvalidGitRepositoryError, git.NoSuchPathError) as e:
            logger.warning(f"Failed to list worktrees for {repo_path}: {e}")
            return []

        entries = parse_worktree_list(output)
        return [
            WorktreeEntry(path=Path(worktree_key(entry.path)), branch=entry.branch)
            for entry in entries
        ]
