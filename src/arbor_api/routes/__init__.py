"""API routes for arbor."""

from arbor_api.routes.git import router as git_router

__all__ = ["git_router"]
