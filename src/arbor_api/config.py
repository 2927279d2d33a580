"""Configuration for arbor API."""

from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root directory (3 levels up from this file: config.py -> arbor_api -> src -> root)
_PROJECT_ROOT = Path(__file__).parent.parent.parent

# Load .env file into os.environ
load_dotenv(_PROJECT_ROOT / ".env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        env_prefix="ARBOR_",
        extra="ignore",  # Ignore non-ARBOR_ env vars
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Git command timeouts
    git_local_timeout_seconds: float = Field(
        default=10.0, description="Timeout for disk-only git commands (checkout, commit, log)"
    )
    git_network_timeout_seconds: float = Field(
        default=120.0, description="Timeout for git commands that may talk to a remote"
    )

    # Transient git lock-file contention
    git_lock_retry_attempts: int = Field(
        default=3, description="Attempts for a git command failing on an existing *.lock file"
    )
    git_lock_retry_delay_seconds: float = Field(
        default=0.1, description="Base delay between lock-file retries (multiplied by attempt)"
    )

    # Worktree locking
    worktree_lock_wait_seconds: float = Field(
        default=30.0,
        description="Maximum wait for a second worktree's lock during a cross-worktree merge",
    )

    # Branch policy
    protected_branches: list[str] = Field(
        default_factory=lambda: ["main", "master", "develop", "production", "staging"],
        description="Branches that require explicit confirmation before a force push",
    )
    default_remote: str = Field(default="origin")
    default_branch_candidates: list[str] = Field(
        default_factory=lambda: ["main", "master"],
        description="Remote default branch names tried in order by merge-from-default",
    )

    # Worktree registry
    worktree_roots: list[Path] = Field(
        default_factory=list,
        description="Directories whose worktrees are authorized for git operations",
    )

    # Rollback checkpoints
    checkpoint_apply_attempts: int = Field(default=3)
    checkpoint_apply_delay_seconds: float = Field(default=0.2)

    # GitHub
    github_api_url: str = Field(default="https://api.github.com")
    github_token: str = Field(default="", description="Optional token for PR status lookups")
    github_timeout_seconds: float = Field(default=15.0)


settings = Settings()
