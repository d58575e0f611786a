"""
Health check endpoint.
"""

from fastapi import APIRouter, Request
from pydantic import BaseModel
from datetime import datetime

from app.utils.config import get_settings

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    timestamp: datetime
    store_connected: bool
    watcher_running: bool
    version: str


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Health check endpoint.

    Verifies:
    - API is running
    - Status store answers queries
    - Directory watcher is alive
    """
    settings = get_settings()
    pipeline = getattr(request.app.state, "pipeline", None)

    store_connected = pipeline is not None and pipeline.store.ping()
    watcher_running = pipeline is not None and pipeline.watcher.is_running

    return HealthResponse(
        status="healthy" if store_connected and watcher_running else "degraded",
        timestamp=datetime.now(),
        store_connected=store_connected,
        watcher_running=watcher_running,
        version=settings.api_version
    )
