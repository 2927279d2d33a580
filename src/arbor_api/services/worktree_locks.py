"""Per-worktree mutual exclusion for mutating git operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TypeVar

from arbor_api.errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def worktree_key(path: str | Path) -> str:
    """Normalize a worktree path into its lock key (absolute, symlinks resolved)."""
    return str(Path(path).expanduser().resolve())


class WorktreeLockManager:
    """One FIFO lock per worktree path.

    At most one mutating operation runs against a worktree at a time; waiters
    are served in arrival order. Locks are created lazily and kept for the
    lifetime of the manager, so the table is bounded by the number of distinct
    worktrees ever touched.

    Locks are not reentrant: an operation already holding a worktree's lock
    must not acquire it again. They also only guard against callers sharing
    this manager; a terminal ``git`` running concurrently is caught by the
    repository state checks instead.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, path: str | Path) -> asyncio.Lock:
        key = worktree_key(path)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_locked(self, path: str | Path) -> bool:
        """Check whether an operation currently holds the worktree's lock."""
        lock = self._locks.get(worktree_key(path))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, path: str | Path, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the worktree's lock for the duration of the block.

        Args:
            path: Worktree path.
            timeout: Maximum seconds to wait for the lock. None waits forever.

        Raises:
            ConflictError: If the lock could not be acquired within `timeout`.
        """
        key = worktree_key(path)
        lock = self._get_lock(key)
        if lock.locked():
            logger.debug(f"Waiting for worktree lock: {key}")

        if timeout is None:
            await lock.acquire()
        else:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except TimeoutError:
                raise ConflictError(
                    f"Worktree '{key}' is busy with another git operation. Try again shortly.",
                    code="WORKTREE_BUSY",
                    details={"worktree_path": key},
                ) from None

        try:
            yield
        finally:
            lock.release()

    async def run(self, path: str | Path, fn: Callable[[], Awaitable[T]]) -> T:
        """Run `fn` while holding the worktree's lock.

        The lock is released on every exit path, including exceptions raised
        by `fn`.
        """
        async with self.hold(path):
            return await fn()
