# backend/api/routes/health.py

from datetime import datetime, timezone

from fastapi import APIRouter

from core import state
from core.config import settings

router = APIRouter()

@router.get("/health")
async def health():
    """
    Health check endpoint.

    Returns current system status and live connection counts. Only this
    process's connections are counted, whatever the fan-out backend.

    Returns:
        dict: Status, connection count, rooms with live subscribers, uptime
    """
    uptime_seconds = (datetime.now(timezone.utc) - state.app_start_time).total_seconds()
    return {
        "status": "healthy",
        "fanout": settings.FANOUT_BACKEND,
        "connections": len(state.connection_registry),
        "active_rooms_with_subscribers": len(state.connection_registry.room_subscriber_counts()),
        "uptime_seconds": round(uptime_seconds, 1),
    }
