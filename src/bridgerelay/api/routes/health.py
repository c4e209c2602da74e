"""Health check endpoints."""

from fastapi import APIRouter, Request

from bridgerelay import __version__
from bridgerelay.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "bridgerelay"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration and relay state."""
    settings = get_settings()
    coordinator = request.app.state.coordinator
    return {
        "status": "healthy",
        "service": "bridgerelay",
        "version": __version__,
        "config": settings.get_safe_dict(),
        "relay": coordinator.status() if coordinator is not None else None,
    }
