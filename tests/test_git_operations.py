"""Tests for GitOperationsService against real repositories and worktrees."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import Mock

import git
import pytest

from arbor_api.errors import (
    ConflictError,
    ExternalServiceError,
    ForbiddenError,
    PreconditionError,
    ValidationError,
)
from arbor_api.services.git_client import GitClientFactory
from arbor_api.services.git_operations import GitOperationsService
from arbor_api.services.lock_retry import LockRetryPolicy
from arbor_api.services.repo_state import read_repository_state
from arbor_api.services.worktree_registry import GitWorktreeRegistry

if TYPE_CHECKING:
    from conftest import GitSandbox


def _push_remote_commit(sandbox: GitSandbox, name: str, content: str, branch: str = "main") -> str:
    """Commit and push from a second clone, as another developer would."""
    other = sandbox.root / "other"
    if not other.exists():
        sandbox.clone("other")
    sandbox.git(other, "checkout", branch)
    sandbox.git(other, "pull", "--rebase")
    head = sandbox.commit_file(other, name, content, f"Remote change to {name}")
    sandbox.git(other, "push", "origin", branch)
    return head


def _origin_head(sandbox: GitSandbox, branch: str) -> str:
    return sandbox.head(sandbox.origin, f"refs/heads/{branch}")


def _committed_files(sandbox: GitSandbox, cwd: Path) -> list[str]:
    return sandbox.git(cwd, "show", "--name-only", "--format=", "HEAD").split()


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unregistered_path_is_rejected(self, sandbox: GitSandbox) -> None:
        service = GitOperationsService(
            registry=GitWorktreeRegistry(roots=[sandbox.root / "elsewhere"])
        )

        with pytest.raises(ForbiddenError) as exc_info:
            await service.get_repository_state(sandbox.repo)
        assert exc_info.value.code == "UNREGISTERED_WORKTREE"

    @pytest.mark.asyncio
    async def test_explicitly_registered_path_is_accepted(self, sandbox: GitSandbox) -> None:
        registry = GitWorktreeRegistry(roots=[])
        registry.register(sandbox.repo)
        service = GitOperationsService(registry=registry)

        state = await service.get_repository_state(sandbox.repo)
        assert state.in_progress is False


class TestCheckout:
    @pytest.mark.asyncio
    async def test_checkout_switches_branch(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        sandbox.create_branch("develop")

        result = await service.checkout(sandbox.repo, "develop")

        assert result.success is True
        assert sandbox.branch(sandbox.repo) == "develop"

    @pytest.mark.asyncio
    async def test_checkout_with_uncommitted_changes_is_rejected(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        sandbox.create_branch("develop")
        (sandbox.repo / "README.md").write_text("local edit\n")

        with pytest.raises(PreconditionError) as exc_info:
            await service.checkout(sandbox.repo, "develop")

        assert exc_info.value.code == "DIRTY_WORKTREE"
        assert sandbox.branch(sandbox.repo) == "main"
        assert (sandbox.repo / "README.md").read_text() == "local edit\n"


class TestCommit:
    @pytest.mark.asyncio
    async def test_commit_staged_changes(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        (sandbox.repo / "app.py").write_text("print('hi')\n")
        sandbox.git(sandbox.repo, "add", "app.py")

        result = await service.commit(sandbox.repo, "Add app")

        assert result.hash == sandbox.head(sandbox.repo)
        assert sandbox.git(sandbox.repo, "log", "-1", "--format=%s") == "Add app"

    @pytest.mark.asyncio
    async def test_commit_requires_message(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.commit(sandbox.repo, "   ")
        assert exc_info.value.code == "EMPTY_COMMIT_MESSAGE"

    @pytest.mark.asyncio
    async def test_commit_with_nothing_staged(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        (sandbox.repo / "unstaged.txt").write_text("x")

        with pytest.raises(ValidationError) as exc_info:
            await service.commit(sandbox.repo, "Nothing here")
        assert exc_info.value.code == "NOTHING_STAGED"

    @pytest.mark.asyncio
    async def test_atomic_commit_contains_only_selected_files(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        (sandbox.repo / "a.txt").write_text("a")
        (sandbox.repo / "b.txt").write_text("b")
        sandbox.git(sandbox.repo, "add", "a.txt", "b.txt")

        result = await service.atomic_commit(sandbox.repo, ["a.txt"], "Add a")

        assert result.hash == sandbox.head(sandbox.repo)
        assert _committed_files(sandbox, sandbox.repo) == ["a.txt"]
        assert (sandbox.repo / "b.txt").read_text() == "b"
        assert "?? b.txt" in sandbox.status(sandbox.repo)

    @pytest.mark.asyncio
    async def test_atomic_commit_requires_files(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.atomic_commit(sandbox.repo, [], "Empty")
        assert exc_info.value.code == "NO_FILES_SELECTED"

    @pytest.mark.asyncio
    async def test_concurrent_commits_on_one_worktree_are_serialized(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        for name in ("one.txt", "two.txt", "three.txt"):
            (sandbox.repo / name).write_text(name)

        results = await asyncio.gather(
            service.atomic_commit(sandbox.repo, ["one.txt"], "Add one"),
            service.atomic_commit(sandbox.repo, ["two.txt"], "Add two"),
            service.atomic_commit(sandbox.repo, ["three.txt"], "Add three"),
        )

        subjects = sandbox.git(sandbox.repo, "log", "-3", "--format=%s").splitlines()
        assert sorted(subjects) == ["Add one", "Add three", "Add two"]
        assert len({result.hash for result in results}) == 3
        assert sandbox.status(sandbox.repo) == ""

    @pytest.mark.asyncio
    async def test_commit_retries_while_index_lock_exists(
        self,
        sandbox: GitSandbox,
        service: GitOperationsService,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        (sandbox.repo / "app.py").write_text("print('hi')\n")
        sandbox.git(sandbox.repo, "add", "app.py")
        index_lock = Path(git.Repo(sandbox.repo).git_dir) / "index.lock"
        index_lock.write_text("")

        async def release_lock(seconds: float) -> None:
            # Another git process finishes while we back off
            index_lock.unlink(missing_ok=True)

        monkeypatch.setattr("arbor_api.services.lock_retry.asyncio.sleep", release_lock)

        result = await service.commit(sandbox.repo, "Add app")

        assert result.hash == sandbox.head(sandbox.repo)
        assert not index_lock.exists()


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_newest_first(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        second = sandbox.commit_file(sandbox.repo, "a.txt", "a", "Second commit")

        history = await service.get_history(sandbox.repo)

        assert [commit.message for commit in history] == ["Second commit", "Initial commit"]
        assert history[0].hash == second
        assert history[0].short_hash == second[: len(history[0].short_hash)]
        assert history[0].author == "Test User"
        assert history[0].email == "test@example.com"

    @pytest.mark.asyncio
    async def test_history_respects_limit(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        for i in range(3):
            sandbox.commit_file(sandbox.repo, f"f{i}.txt", str(i), f"Commit {i}")

        history = await service.get_history(sandbox.repo, limit=2)
        assert [commit.message for commit in history] == ["Commit 2", "Commit 1"]

    @pytest.mark.asyncio
    async def test_history_of_repository_without_commits_is_empty(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        empty = sandbox.root / "empty"
        empty.mkdir()
        sandbox.git(empty, "init", "-b", "main")

        assert await service.get_history(empty) == []

    @pytest.mark.asyncio
    async def test_history_rejects_non_positive_limit(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        with pytest.raises(ValidationError):
            await service.get_history(sandbox.repo, limit=0)


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_merge_clears_conflicted_merge(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")
        sandbox.commit_file(feature, "README.md", "feature\n", "Feature README")
        main_head = sandbox.commit_file(sandbox.repo, "README.md", "main\n", "Main README")
        with pytest.raises(git.GitCommandError):
            sandbox.git(sandbox.repo, "merge", "feature")
        assert (await service.get_repository_state(sandbox.repo)).is_merging is True

        await service.abort_merge(sandbox.repo)

        assert read_repository_state(sandbox.repo).is_merging is False
        assert sandbox.head(sandbox.repo) == main_head
        assert sandbox.status(sandbox.repo) == ""

    @pytest.mark.asyncio
    async def test_abort_rebase_clears_conflicted_rebase(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")
        feature_head = sandbox.commit_file(feature, "README.md", "feature\n", "Feature README")
        sandbox.commit_file(sandbox.repo, "README.md", "main\n", "Main README")
        with pytest.raises(git.GitCommandError):
            sandbox.git(feature, "rebase", "main")
        assert read_repository_state(feature).is_rebasing is True

        await service.abort_rebase(feature)

        assert read_repository_state(feature).is_rebasing is False
        assert sandbox.head(feature) == feature_head

    @pytest.mark.asyncio
    async def test_abort_without_operation_surfaces_git_error(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        with pytest.raises(git.GitCommandError):
            await service.abort_rebase(sandbox.repo)


class TestInProgressGuards:
    @pytest.fixture
    def spied_service(self, registry: GitWorktreeRegistry) -> tuple[GitOperationsService, Mock]:
        clients = Mock(wraps=GitClientFactory())
        service = GitOperationsService(
            registry=registry,
            clients=clients,
            retry=LockRetryPolicy(max_attempts=1, delay_seconds=0),
        )
        return service, clients

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operation",
        ["pull", "sync", "merge_from_default", "merge_into_local_branch"],
    )
    async def test_fails_fast_when_merge_in_progress(
        self,
        sandbox: GitSandbox,
        spied_service: tuple[GitOperationsService, Mock],
        operation: str,
    ) -> None:
        service, clients = spied_service
        git_dir = Path(git.Repo(sandbox.repo).git_dir)
        (git_dir / "MERGE_HEAD").write_text(sandbox.head(sandbox.repo))

        if operation == "merge_into_local_branch":
            call = service.merge_into_local_branch(sandbox.repo, "release")
        else:
            call = getattr(service, operation)(sandbox.repo)
        with pytest.raises(PreconditionError) as exc_info:
            await call

        assert exc_info.value.code == "OPERATION_IN_PROGRESS"
        clients.local.assert_not_called()
        clients.network.assert_not_called()

    @pytest.mark.asyncio
    async def test_detached_head_cannot_be_merged(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")
        sandbox.git(feature, "checkout", "--detach")

        with pytest.raises(PreconditionError) as exc_info:
            await service.merge_into_local_branch(feature, "main")
        assert exc_info.value.code == "DETACHED_HEAD"


class TestRemoteOperations:
    @pytest.mark.asyncio
    async def test_fetch_updates_remote_tracking_refs(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        remote_head = _push_remote_commit(sandbox, "remote.txt", "remote\n")

        await service.fetch(sandbox.repo)

        assert sandbox.head(sandbox.repo, "refs/remotes/origin/main") == remote_head
        assert not (sandbox.repo / "remote.txt").exists()

    @pytest.mark.asyncio
    async def test_push_with_set_upstream_publishes_branch(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")
        head = sandbox.commit_file(feature, "f.txt", "f", "Feature work")

        await service.push(feature, set_upstream=True)

        assert _origin_head(sandbox, "feature") == head
        assert sandbox.git(feature, "rev-parse", "--abbrev-ref", "@{upstream}") == "origin/feature"

    @pytest.mark.asyncio
    async def test_push_succeeds_when_trailing_fetch_fails(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        sandbox.git(sandbox.repo, "remote", "set-url", "--push", "origin", str(sandbox.origin))
        sandbox.git(sandbox.repo, "remote", "set-url", "origin", str(sandbox.root / "gone.git"))
        head = sandbox.commit_file(sandbox.repo, "a.txt", "a", "Local work")

        result = await service.push(sandbox.repo)

        assert result.success is True
        assert _origin_head(sandbox, "main") == head

    @pytest.mark.asyncio
    async def test_force_push_to_protected_branch_requires_confirmation(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        origin_before = _origin_head(sandbox, "main")
        sandbox.git(sandbox.repo, "commit", "--amend", "-m", "Rewritten")

        with pytest.raises(PreconditionError) as exc_info:
            await service.force_push(sandbox.repo)

        assert exc_info.value.code == "PROTECTED_BRANCH"
        assert _origin_head(sandbox, "main") == origin_before

        await service.force_push(sandbox.repo, confirm_protected_branch=True)
        assert _origin_head(sandbox, "main") == sandbox.head(sandbox.repo)

    @pytest.mark.asyncio
    async def test_force_push_feature_branch_after_amend(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")
        sandbox.commit_file(feature, "f.txt", "f", "Feature work")
        sandbox.git(feature, "push", "-u", "origin", "feature")
        sandbox.git(feature, "commit", "--amend", "-m", "Feature work, reworded")

        await service.force_push(feature)

        assert _origin_head(sandbox, "feature") == sandbox.head(feature)

    @pytest.mark.asyncio
    async def test_pull_rebases_onto_upstream(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        remote_head = _push_remote_commit(sandbox, "remote.txt", "remote\n")

        await service.pull(sandbox.repo)

        assert sandbox.head(sandbox.repo) == remote_head
        assert (sandbox.repo / "remote.txt").read_text() == "remote\n"

    @pytest.mark.asyncio
    async def test_pull_with_uncommitted_changes_requires_auto_stash(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        _push_remote_commit(sandbox, "remote.txt", "remote\n")
        (sandbox.repo / "README.md").write_text("local edit\n")
        head_before = sandbox.head(sandbox.repo)

        with pytest.raises(PreconditionError) as exc_info:
            await service.pull(sandbox.repo)

        assert exc_info.value.code == "DIRTY_WORKTREE"
        assert sandbox.head(sandbox.repo) == head_before

    @pytest.mark.asyncio
    async def test_pull_with_auto_stash_keeps_local_changes(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        remote_head = _push_remote_commit(sandbox, "remote.txt", "remote\n")
        (sandbox.repo / "README.md").write_text("local edit\n")
        (sandbox.repo / "scratch.txt").write_text("untracked\n")

        await service.pull(sandbox.repo, auto_stash=True)

        assert sandbox.head(sandbox.repo) == remote_head
        assert (sandbox.repo / "README.md").read_text() == "local edit\n"
        assert (sandbox.repo / "scratch.txt").read_text() == "untracked\n"
        assert sandbox.git(sandbox.repo, "stash", "list") == ""

    @pytest.mark.asyncio
    async def test_pull_conflict_is_aborted(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        _push_remote_commit(sandbox, "README.md", "remote version\n")
        local_head = sandbox.commit_file(sandbox.repo, "README.md", "local version\n", "Local")

        with pytest.raises(ConflictError) as exc_info:
            await service.pull(sandbox.repo)

        assert exc_info.value.code == "REBASE_CONFLICT"
        assert read_repository_state(sandbox.repo).in_progress is False
        assert sandbox.head(sandbox.repo) == local_head
        assert sandbox.status(sandbox.repo) == ""

    @pytest.mark.asyncio
    async def test_pull_without_upstream(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")

        with pytest.raises(ExternalServiceError) as exc_info:
            await service.pull(feature)
        assert exc_info.value.code == "NO_UPSTREAM"

    @pytest.mark.asyncio
    async def test_sync_rebases_then_pushes(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        remote_head = _push_remote_commit(sandbox, "remote.txt", "remote\n")
        sandbox.commit_file(sandbox.repo, "local.txt", "local\n", "Local work")

        await service.sync(sandbox.repo)

        head = sandbox.head(sandbox.repo)
        assert _origin_head(sandbox, "main") == head
        assert sandbox.git(sandbox.repo, "rev-parse", "HEAD~1") == remote_head
        assert sandbox.head(sandbox.repo, "refs/remotes/origin/main") == head

    @pytest.mark.asyncio
    async def test_sync_without_upstream_publishes_branch(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")
        head = sandbox.commit_file(feature, "f.txt", "f", "Feature work")

        result = await service.sync(feature)

        assert result.success is True
        assert _origin_head(sandbox, "feature") == head
        assert sandbox.git(feature, "rev-parse", "--abbrev-ref", "@{upstream}") == "origin/feature"


class TestMergeFromDefault:
    @pytest.mark.asyncio
    async def test_merge_brings_in_remote_default_branch(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")
        sandbox.commit_file(feature, "f.txt", "f", "Feature work")
        remote_head = _push_remote_commit(sandbox, "remote.txt", "remote\n")

        await service.merge_from_default(feature)

        assert (feature / "remote.txt").exists()
        assert remote_head in sandbox.git(feature, "rev-list", "HEAD").split()

    @pytest.mark.asyncio
    async def test_rebase_onto_remote_default_branch(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")
        sandbox.commit_file(feature, "f.txt", "f", "Feature work")
        remote_head = _push_remote_commit(sandbox, "remote.txt", "remote\n")

        await service.merge_from_default(feature, use_rebase=True)

        assert sandbox.git(feature, "rev-parse", "HEAD~1") == remote_head
        assert sandbox.git(feature, "log", "-1", "--format=%s") == "Feature work"

    @pytest.mark.asyncio
    async def test_conflicting_merge_is_aborted(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")
        feature_head = sandbox.commit_file(feature, "README.md", "feature\n", "Feature README")
        _push_remote_commit(sandbox, "README.md", "remote\n")

        with pytest.raises(ConflictError) as exc_info:
            await service.merge_from_default(feature)

        assert exc_info.value.code == "MERGE_CONFLICT"
        assert read_repository_state(feature).in_progress is False
        assert sandbox.head(feature) == feature_head

    @pytest.mark.asyncio
    async def test_conflicting_rebase_is_aborted(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")
        feature_head = sandbox.commit_file(feature, "README.md", "feature\n", "Feature README")
        _push_remote_commit(sandbox, "README.md", "remote\n")

        with pytest.raises(ConflictError) as exc_info:
            await service.merge_from_default(feature, use_rebase=True)

        assert exc_info.value.code == "REBASE_CONFLICT"
        assert read_repository_state(feature).in_progress is False
        assert sandbox.head(feature) == feature_head

    @pytest.mark.asyncio
    async def test_missing_default_branch(
        self, sandbox: GitSandbox, registry: GitWorktreeRegistry
    ) -> None:
        service = GitOperationsService(registry=registry, default_branch_candidates=["trunk"])

        with pytest.raises(PreconditionError) as exc_info:
            await service.merge_from_default(sandbox.repo)
        assert exc_info.value.code == "NO_DEFAULT_BRANCH"

    @pytest.mark.asyncio
    async def test_dirty_worktree_is_rejected(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        (sandbox.repo / "README.md").write_text("local edit\n")

        with pytest.raises(PreconditionError) as exc_info:
            await service.merge_from_default(sandbox.repo)
        assert exc_info.value.code == "DIRTY_WORKTREE"


class TestCreatePR:
    @pytest.mark.asyncio
    async def test_create_pr_pushes_and_returns_compare_url(
        self,
        sandbox: GitSandbox,
        service: GitOperationsService,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        # Fetches against github.com fail fast; pushes go to the local bare repo
        monkeypatch.setenv("GIT_ALLOW_PROTOCOL", "file")
        sandbox.git(sandbox.repo, "remote", "set-url", "origin", "git@github.com:acme/widgets.git")
        sandbox.git(sandbox.repo, "remote", "set-url", "--push", "origin", str(sandbox.origin))
        feature = sandbox.add_worktree("feature/login")
        head = sandbox.commit_file(feature, "login.py", "pass\n", "Add login")

        result = await service.create_pr(feature)

        assert result.url == "https://github.com/acme/widgets/compare/feature/login?expand=1"
        assert _origin_head(sandbox, "feature/login") == head

    @pytest.mark.asyncio
    async def test_create_pr_with_non_github_remote(
        self, sandbox: GitSandbox, service: GitOperationsService
    ) -> None:
        feature = sandbox.add_worktree("feature")

        with pytest.raises(ExternalServiceError) as exc_info:
            await service.create_pr(feature)
        assert exc_info.value.code == "UNSUPPORTED_REMOTE"
