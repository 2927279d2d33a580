"""Pytest configuration and fixtures for arbor API tests."""

from __future__ import annotations

from pathlib import Path

import git
import pytest

from arbor_api.services.git_operations import GitOperationsService
from arbor_api.services.lock_retry import LockRetryPolicy
from arbor_api.services.worktree_registry import GitWorktreeRegistry


class GitSandbox:
    """Real repository with a bare ``origin`` and helpers for linked worktrees.

    Layout under the pytest tmp dir::

        origin.git/          bare remote
        repo/                main worktree, branch ``main``
        worktrees/<branch>/  linked worktrees added by `add_worktree`
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.origin = root / "origin.git"
        self.repo = root / "repo"

    def git(self, cwd: Path, *args: str) -> str:
        return str(git.Git(str(cwd)).execute(["git", *args]))

    def configure(self, path: Path) -> None:
        self.git(path, "config", "user.name", "Test User")
        self.git(path, "config", "user.email", "test@example.com")
        self.git(path, "config", "commit.gpgsign", "false")

    def init(self) -> GitSandbox:
        self.origin.mkdir()
        self.git(self.origin, "init", "--bare", "-b", "main")

        self.repo.mkdir()
        self.git(self.repo, "init", "-b", "main")
        self.configure(self.repo)
        self.commit_file(self.repo, "README.md", "# sandbox\n", "Initial commit")
        self.git(self.repo, "remote", "add", "origin", str(self.origin))
        self.git(self.repo, "push", "-u", "origin", "main")
        return self

    def commit_file(self, cwd: Path, name: str, content: str, message: str) -> str:
        """Write, stage and commit one file; returns the new HEAD."""
        file_path = cwd / name
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content)
        self.git(cwd, "add", "--", name)
        self.git(cwd, "commit", "-m", message)
        return self.head(cwd)

    def head(self, cwd: Path, ref: str = "HEAD") -> str:
        return self.git(cwd, "rev-parse", ref).strip()

    def branch(self, cwd: Path) -> str:
        return self.git(cwd, "rev-parse", "--abbrev-ref", "HEAD").strip()

    def create_branch(self, name: str, start: str = "main") -> None:
        self.git(self.repo, "branch", name, start)

    def add_worktree(self, branch: str, *, base: str | None = "main") -> Path:
        """Add a linked worktree; creates `branch` from `base` unless base is None."""
        path = self.root / "worktrees" / branch.replace("/", "-")
        if base is None:
            self.git(self.repo, "worktree", "add", str(path), branch)
        else:
            self.git(self.repo, "worktree", "add", "-b", branch, str(path), base)
        return path

    def clone(self, name: str) -> Path:
        """Clone origin as a second developer would."""
        path = self.root / name
        self.git(self.root, "clone", str(self.origin), str(path))
        self.configure(path)
        return path

    def status(self, cwd: Path) -> str:
        return self.git(cwd, "status", "--porcelain")


@pytest.fixture
def sandbox(tmp_path: Path) -> GitSandbox:
    """Create a repository with a bare origin in a temporary directory."""
    return GitSandbox(tmp_path).init()


@pytest.fixture
def registry(tmp_path: Path) -> GitWorktreeRegistry:
    """Registry authorizing every worktree under the temporary directory."""
    return GitWorktreeRegistry(roots=[tmp_path])


@pytest.fixture
def service(registry: GitWorktreeRegistry) -> GitOperationsService:
    """Create a GitOperationsService without retry delays."""
    return GitOperationsService(
        registry=registry,
        retry=LockRetryPolicy(max_attempts=3, delay_seconds=0),
    )
