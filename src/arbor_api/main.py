"""arbor API - FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from arbor_api import __version__
from arbor_api.config import Settings, settings
from arbor_api.dependencies import build_git_operations_service
from arbor_api.error_handling import install_error_handling
from arbor_api.observability.logging import configure_logging, get_logger
from arbor_api.routes import git_router

logger = get_logger(__name__)


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        app_settings: Settings to wire the services with. Defaults to the
            environment-derived settings.
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        configure_logging(app_settings)
        logger.info(
            "arbor API starting",
            worktree_roots=[str(root) for root in app_settings.worktree_roots],
        )
        yield
        logger.info("arbor API stopped")

    app = FastAPI(
        title="arbor API",
        description="Coordinated git operations for concurrently used worktrees",
        version=__version__,
        lifespan=lifespan,
    )
    # Built eagerly so one lock table serves every request for the app's lifetime
    app.state.git_operations = build_git_operations_service(app_settings)

    install_error_handling(app)
    app.include_router(git_router, prefix="/v1")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "arbor_api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
