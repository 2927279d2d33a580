"""Rollback checkpoints of a worktree's index and working tree.

A checkpoint is a parentless commit stored under ``refs/checkpoints/<id>``.
Its tree is a snapshot of the whole working tree (untracked files included)
and its message is a JSON payload that also records the index tree, so both
can be put back exactly as they were.
"""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
from pathlib import Path

import git

from arbor_api.config import settings
from arbor_api.errors import ValidationError
from arbor_api.services.git_client import GitClient, GitClientFactory

logger = logging.getLogger(__name__)

CHECKPOINT_REF_PREFIX = "refs/checkpoints/"

# Identity for checkpoint commits; they never appear in branch history.
_CHECKPOINT_IDENTITY = ("-c", "user.name=Checkpoint", "-c", "user.email=checkpoint@local")


def checkpoint_ref(checkpoint_id: str) -> str:
    return f"{CHECKPOINT_REF_PREFIX}{checkpoint_id}"


def parse_checkpoint_payload(message: str) -> tuple[str | None, str | None]:
    """Extract (index_tree, worktree_tree) from a checkpoint commit message."""
    body = message.strip()
    if not body:
        return None, None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return None, None
    if not isinstance(payload, dict):
        return None, None

    index_tree = payload.get("indexTree")
    worktree_tree = payload.get("worktreeTree")
    if not index_tree or not worktree_tree:
        return None, None
    return str(index_tree), str(worktree_tree)


class CheckpointService:
    """Creates and restores rollback checkpoints.

    Callers are expected to hold the worktree lock; restoring rewrites the
    working tree and index.
    """

    def __init__(
        self,
        clients: GitClientFactory | None = None,
        apply_attempts: int | None = None,
        apply_delay_seconds: float | None = None,
    ) -> None:
        self._clients = clients or GitClientFactory()
        self.apply_attempts = max(
            1, apply_attempts if apply_attempts is not None else settings.checkpoint_apply_attempts
        )
        self.apply_delay_seconds = (
            apply_delay_seconds
            if apply_delay_seconds is not None
            else settings.checkpoint_apply_delay_seconds
        )

    async def create(self, worktree_path: Path, checkpoint_id: str) -> str | None:
        """Record the current index and working tree.

        Args:
            worktree_path: Worktree to snapshot.
            checkpoint_id: Identifier used in the ref name.

        Returns:
            The checkpoint commit SHA, or None if there was nothing to record.
        """
        self._validate_id(checkpoint_id)
        client = self._clients.local(worktree_path)

        index_tree = (await client.run("write-tree")).strip()
        if not index_tree:
            return None

        worktree_tree = await self._snapshot_worktree_tree(client)
        if not worktree_tree:
            return None

        payload = json.dumps(
            {
                "checkpointId": checkpoint_id,
                "indexTree": index_tree,
                "worktreeTree": worktree_tree,
            }
        )
        commit = (
            await client.run(*_CHECKPOINT_IDENTITY, "commit-tree", worktree_tree, "-m", payload)
        ).strip()
        if not commit:
            return None

        await client.run("update-ref", checkpoint_ref(checkpoint_id), commit)
        logger.info(f"Created checkpoint {checkpoint_id} ({commit[:8]}) in {worktree_path}")
        return commit

    async def restore(self, worktree_path: Path, checkpoint_id: str) -> bool:
        """Put the working tree and index back to a checkpoint.

        Returns:
            True if restored, False if no such checkpoint exists.

        Raises:
            ValidationError: If the checkpoint commit lacks tree metadata.
            git.GitCommandError: If applying failed on every attempt.
        """
        self._validate_id(checkpoint_id)
        client = self._clients.local(worktree_path)

        try:
            commit = await client.rev_parse(checkpoint_ref(checkpoint_id))
        except git.GitCommandError:
            logger.warning(f"Rollback checkpoint not found: {checkpoint_id}")
            return False

        message = await client.run("show", "-s", "--format=%B", commit)
        index_tree, worktree_tree = parse_checkpoint_payload(message)
        if not index_tree or not worktree_tree:
            raise ValidationError(
                f"Rollback checkpoint '{checkpoint_id}' is missing tree metadata",
                code="CHECKPOINT_CORRUPT",
                details={"checkpoint_id": checkpoint_id},
            )

        for attempt in range(1, self.apply_attempts + 1):
            try:
                await client.run("read-tree", worktree_tree)
                await client.run("checkout-index", "-a", "-f")
                await client.run("clean", "-fd")
                await client.run("read-tree", index_tree)
                logger.info(f"Restored checkpoint {checkpoint_id} in {worktree_path}")
                return True
            except git.GitCommandError as e:
                if attempt >= self.apply_attempts:
                    raise
                logger.info(
                    f"Applying checkpoint {checkpoint_id} failed "
                    f"(attempt {attempt}/{self.apply_attempts}): {e}"
                )
                await asyncio.sleep(self.apply_delay_seconds)

        return False  # pragma: no cover

    async def _snapshot_worktree_tree(self, client: GitClient) -> str:
        """Write a tree of the full working tree through a throwaway index."""
        with tempfile.TemporaryDirectory(prefix="checkpoint-index-") as temp_dir:
            env = {"GIT_INDEX_FILE": str(Path(temp_dir) / "index")}
            await client.run("add", "-A", env=env)
            return (await client.run("write-tree", env=env)).strip()

    @staticmethod
    def _validate_id(checkpoint_id: str) -> None:
        if not checkpoint_id or checkpoint_id.startswith("-") or ".." in checkpoint_id:
            raise ValidationError(
                f"Invalid checkpoint id: '{checkpoint_id}'",
                code="INVALID_CHECKPOINT_ID",
            )
