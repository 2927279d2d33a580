"""Pull request status lookup for the branch checked out in a worktree."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import httpx

from arbor_api.config import settings
from arbor_api.domain.models import GitHubStatus, PullRequestSummary
from arbor_api.errors import ExternalServiceError
from arbor_api.services.git_client import GitClientFactory
from arbor_api.utils.github_url import parse_github_owner_repo

logger = logging.getLogger(__name__)


class PRStatusProvider(Protocol):
    """Provider of PR status for a worktree's current branch."""

    async def get_status(self, worktree_path: Path) -> GitHubStatus: ...


class GitHubPRStatusService:
    """Looks up the pull request for a worktree's branch via the GitHub REST API."""

    def __init__(
        self,
        clients: GitClientFactory | None = None,
        *,
        api_url: str | None = None,
        token: str | None = None,
        remote: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._clients = clients or GitClientFactory()
        self.api_url = (api_url or settings.github_api_url).rstrip("/")
        self.token = token if token is not None else settings.github_token
        self.remote = remote or settings.default_remote
        self.timeout_seconds = timeout_seconds or settings.github_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def get_status(self, worktree_path: Path) -> GitHubStatus:
        """Return the most recent pull request whose head is the current branch."""
        client = self._clients.local(worktree_path)
        branch = await client.current_branch()
        remote_url = await client.remote_url(self.remote)
        try:
            owner, repo = parse_github_owner_repo(remote_url)
        except ValueError as e:
            raise ExternalServiceError(
                "Could not determine GitHub repository URL",
                code="UNSUPPORTED_REMOTE",
                details={"remote_url": remote_url},
            ) from e

        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self._transport
        ) as http:
            try:
                response = await http.get(
                    f"{self.api_url}/repos/{owner}/{repo}/pulls",
                    headers=self._headers(),
                    params={"head": f"{owner}:{branch}", "state": "all", "per_page": 1},
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning(f"GitHub PR lookup failed for {owner}/{repo}@{branch}: {e}")
                raise ExternalServiceError(
                    f"GitHub API request failed: {e}",
                    code="GITHUB_API_ERROR",
                    details={"repository": f"{owner}/{repo}", "branch": branch},
                ) from e

        pulls: list[dict[str, Any]] = response.json()
        pull_request = self._to_summary(pulls[0]) if pulls else None
        return GitHubStatus(branch=branch, repository=f"{owner}/{repo}", pull_request=pull_request)

    @staticmethod
    def _to_summary(data: dict[str, Any]) -> PullRequestSummary:
        return PullRequestSummary(
            number=data["number"],
            title=data.get("title") or "",
            state=data.get("state") or "open",
            draft=bool(data.get("draft")),
            merged=bool(data.get("merged_at")),
            url=data.get("html_url") or "",
        )
