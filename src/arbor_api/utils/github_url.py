"""GitHub URL parsing utilities."""

from __future__ import annotations

import re
from urllib.parse import quote, urlparse


def parse_github_owner_repo(repo_url: str) -> tuple[str, str]:
    """Parse a GitHub remote URL into (owner, repo).

    Supports common URL formats:
    - https://github.com/owner/repo
    - https://github.com/owner/repo.git
    - https://token@github.com/owner/repo.git
    - git@github.com:owner/repo
    - ssh://git@github.com/owner/repo.git

    Args:
        repo_url: Remote URL as reported by ``git remote get-url``.

    Returns:
        Tuple of (owner, repo_name).

    Raises:
        ValueError: If the URL does not point at a GitHub repository.
    """
    if not repo_url:
        raise ValueError("repo_url is empty")

    url = repo_url.strip()

    # SCP-like SSH format: git@github.com:owner/repo(.git)
    ssh_match = re.search(r"^[^/]*github\.com:([^/]+)/([^/]+?)(?:\.git)?/?$", url)
    if ssh_match:
        return ssh_match.group(1), ssh_match.group(2)

    parsed = urlparse(url)
    if parsed.hostname and parsed.hostname.endswith("github.com"):
        path = parsed.path.strip("/")
        if path.endswith(".git"):
            path = path[: -len(".git")]
        parts = path.split("/")
        if len(parts) == 2 and parts[0] and parts[1]:
            return parts[0], parts[1]

    raise ValueError(f"Could not parse GitHub URL: {repo_url}")


def build_compare_url(owner: str, repo: str, branch: str) -> str:
    """Build the GitHub URL that opens a new pull request for `branch`."""
    return f"https://github.com/{owner}/{repo}/compare/{quote(branch, safe='/')}?expand=1"
