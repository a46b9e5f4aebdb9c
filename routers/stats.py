from fastapi import APIRouter
from schemas.signaling import HealthResponse, StatsResponse
from backend import signaling_backend
from logging_config import get_logger

logger = get_logger(__name__)

stats_router = APIRouter(tags=["stats"])


@stats_router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok")


@stats_router.get("/stats", response_model=StatsResponse)
async def get_stats():
    """
    Current relay occupancy.

    Returns:
    - connections: Live WebSocket connections
    - waiting: Connections waiting for a match
    - active_rooms: Rooms with a call in progress
    """
    snapshot = signaling_backend.snapshot()
    logger.debug(f"Stats requested: {snapshot}")
    return StatsResponse(**snapshot)
