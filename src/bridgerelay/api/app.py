"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from bridgerelay import __version__
from bridgerelay.config import get_settings
from bridgerelay.relay.coordinator import RelayCoordinator
from bridgerelay.relay.database import close_db, init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    if app.state.manage_db:
        await init_db()
    yield
    # Shutdown
    if app.state.manage_db:
        await close_db()


def create_app(
    coordinator: Optional[RelayCoordinator] = None,
    manage_db: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        coordinator: Running coordinator to report on, if any
        manage_db: Open and close the journal database with the app
    """
    settings = get_settings()

    app = FastAPI(
        title="Bridge Relay API",
        description="Status of the cross-ledger burn/mint relay",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.coordinator = coordinator
    app.state.manage_db = manage_db

    # Register routes
    from bridgerelay.api.routes import health, transfers

    app.include_router(health.router, tags=["Health"])
    app.include_router(transfers.router, prefix="/api/v1", tags=["Transfers"])

    return app
