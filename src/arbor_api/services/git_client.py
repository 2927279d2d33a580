"""Command facade for running git inside a specific worktree.

Every command runs through GitPython in the default executor so the event
loop keeps serving other worktrees while git works. Two timeout profiles
exist: local commands only touch the disk and get a short timeout, network
commands may negotiate credentials and talk to a remote and get a long one.
A command that exceeds its timeout is killed and surfaces as an ordinary
``git.GitCommandError``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

import git

from arbor_api.config import settings
from arbor_api.domain.enums import TimeoutProfile

logger = logging.getLogger(__name__)

_UNMERGED_CODES = {"DD", "AU", "UD", "UA", "DU", "AA", "UU"}


@dataclass
class GitStatus:
    """Status of a git working directory."""

    staged: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    conflicted: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        """Check if there are any staged, unstaged or untracked entries."""
        return bool(
            self.staged or self.modified or self.untracked or self.deleted or self.conflicted
        )


def parse_porcelain_status(output: str) -> GitStatus:
    """Parse ``git status --porcelain=v1 -z`` output."""
    status = GitStatus()
    entries = output.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue

        code, path = entry[:2], entry[3:]
        if code[0] in "RC":
            # The original path of a rename/copy follows as its own entry
            i += 1

        if code == "??":
            status.untracked.append(path)
        elif code in _UNMERGED_CODES:
            status.conflicted.append(path)
        else:
            if code[0] not in " ?!":
                status.staged.append(path)
            if code[1] == "D":
                status.deleted.append(path)
            elif code[1] != " ":
                status.modified.append(path)
    return status


class GitClient:
    """Runs git commands in one worktree with one timeout profile."""

    def __init__(
        self,
        worktree_path: str | Path,
        *,
        profile: TimeoutProfile = TimeoutProfile.LOCAL,
        timeout_seconds: float | None = None,
    ) -> None:
        self.worktree_path = Path(worktree_path)
        self.profile = profile
        if timeout_seconds is not None:
            self.timeout_seconds = timeout_seconds
        elif profile is TimeoutProfile.NETWORK:
            self.timeout_seconds = settings.git_network_timeout_seconds
        else:
            self.timeout_seconds = settings.git_local_timeout_seconds

    @classmethod
    def local(cls, worktree_path: str | Path, timeout_seconds: float | None = None) -> GitClient:
        return cls(worktree_path, profile=TimeoutProfile.LOCAL, timeout_seconds=timeout_seconds)

    @classmethod
    def network(cls, worktree_path: str | Path, timeout_seconds: float | None = None) -> GitClient:
        return cls(worktree_path, profile=TimeoutProfile.NETWORK, timeout_seconds=timeout_seconds)

    async def run(self, *args: str, env: dict[str, str] | None = None) -> str:
        """Run ``git <args>`` in the worktree and return its stdout.

        Args:
            *args: git arguments, e.g. ``("merge", "feature", "--no-edit")``.
            env: Extra environment variables for this command only.

        Raises:
            git.GitCommandError: If git exits non-zero or times out.
        """
        command_env = dict(env or {})
        if self.profile is TimeoutProfile.NETWORK:
            # Never block on an interactive credential prompt
            command_env.setdefault("GIT_TERMINAL_PROMPT", "0")

        def _run() -> str:
            repo = git.Repo(self.worktree_path)
            return str(
                repo.git.execute(
                    [git.Git.GIT_PYTHON_GIT_EXECUTABLE or "git", *args],
                    kill_after_timeout=self.timeout_seconds,
                    env=command_env,
                )
            )

        logger.debug(f"git {' '.join(args)} ({self.profile.value}) in {self.worktree_path}")
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, _run)

    async def succeeds(self, *args: str) -> bool:
        """Run a probe command and report whether it exited zero."""
        try:
            await self.run(*args)
            return True
        except git.GitCommandError:
            return False

    # ============================================================
    # Queries
    # ============================================================

    async def current_branch(self) -> str:
        return (await self.run("rev-parse", "--abbrev-ref", "HEAD")).strip()

    async def rev_parse(self, ref: str) -> str:
        return (await self.run("rev-parse", "--verify", f"{ref}^{{commit}}")).strip()

    async def has_upstream(self) -> bool:
        return await self.succeeds("rev-parse", "--abbrev-ref", "@{upstream}")

    async def local_branch_exists(self, branch: str) -> bool:
        """Check for a true local branch (remote-tracking refs do not count)."""
        return await self.succeeds("show-ref", "--verify", "--quiet", f"refs/heads/{branch}")

    async def ref_exists(self, ref: str) -> bool:
        return await self.succeeds("rev-parse", "--verify", "--quiet", ref)

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Check whether `ancestor` is reachable from `descendant`."""
        return await self.succeeds("merge-base", "--is-ancestor", ancestor, descendant)

    async def status(self) -> GitStatus:
        output = await self.run("status", "--porcelain=v1", "-z", "--untracked-files=all")
        return parse_porcelain_status(output)

    async def remote_url(self, remote: str) -> str:
        return (await self.run("remote", "get-url", remote)).strip()

    # ============================================================
    # Recovery
    # ============================================================

    async def abort(self, operation: str) -> None:
        """Abort an in-progress merge or rebase, logging rather than raising.

        Used on conflict paths where the conflict itself is the error that
        gets reported.
        """
        try:
            await self.run(operation, "--abort")
            logger.warning(f"Aborted {operation} in {self.worktree_path} after conflicts")
        except git.GitCommandError as e:
            logger.error(f"Failed to abort {operation} in {self.worktree_path}: {e}")


class GitClientFactory:
    """Builds local/network command facades with configured timeouts."""

    def __init__(
        self,
        local_timeout_seconds: float | None = None,
        network_timeout_seconds: float | None = None,
    ) -> None:
        self.local_timeout_seconds = (
            local_timeout_seconds
            if local_timeout_seconds is not None
            else settings.git_local_timeout_seconds
        )
        self.network_timeout_seconds = (
            network_timeout_seconds
            if network_timeout_seconds is not None
            else settings.git_network_timeout_seconds
        )

    def local(self, worktree_path: str | Path) -> GitClient:
        return GitClient.local(worktree_path, timeout_seconds=self.local_timeout_seconds)

    def network(self, worktree_path: str | Path) -> GitClient:
        return GitClient.network(worktree_path, timeout_seconds=self.network_timeout_seconds)
