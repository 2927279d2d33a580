"""Retry of git commands that hit git's own lock files."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

from arbor_api.config import settings
from arbor_api.domain.enums import GitFailureKind
from arbor_api.services.git_errors import classify_git_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockRetryPolicy:
    """Retry a single git command while git reports an existing ``*.lock`` file.

    Short-lived helper processes outside the coordinator (credential helpers,
    ``git gc --auto``, IDE integrations) briefly hold ``index.lock`` or ref
    locks. Those failures are retried with a linear backoff; every other
    failure propagates immediately.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        delay_seconds: float | None = None,
    ) -> None:
        self.max_attempts = max(
            1, max_attempts if max_attempts is not None else settings.git_lock_retry_attempts
        )
        self.delay_seconds = (
            delay_seconds if delay_seconds is not None else settings.git_lock_retry_delay_seconds
        )

    async def run(self, path: str | Path, fn: Callable[[], Awaitable[T]]) -> T:
        """Invoke `fn`, retrying on transient lock-file contention.

        Args:
            path: Worktree the command runs in (for logging).
            fn: Zero-argument coroutine factory running one git command.

        Returns:
            The result of `fn`.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn()
            except Exception as e:
                if classify_git_error(e) is not GitFailureKind.TRANSIENT_LOCK:
                    raise
                if attempt >= self.max_attempts:
                    logger.warning(
                        f"git lock file still present in {path} after {attempt} attempts"
                    )
                    raise

                logger.info(
                    f"git lock file present in {path}, retrying "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                await asyncio.sleep(self.delay_seconds * attempt)

        raise AssertionError("unreachable")  # pragma: no cover
