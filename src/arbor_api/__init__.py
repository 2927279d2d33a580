"""arbor API - coordinated git operations for linked worktrees."""

__version__ = "0.1.0"
