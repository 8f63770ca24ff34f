# backend/api/routes/root.py

from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    """
    Root endpoint - API information.

    Returns basic info about the API and its features.
    """
    return {
        "message": "Topic Rooms - Realtime Chat",
        "version": "1.0",
        "architecture": "single-process fan-out, bounded queue per subscriber",
        "features": ["rooms_by_topic", "live_fanout", "slow_consumer_drop", "snapshot_merge"],
        "endpoints": {
            "websocket": "/ws",
            "groups": "/groups",
            "rooms": "/rooms",
            "messages": "/rooms/{room_id}/messages",
            "health": "/health",
            "metrics": "/metrics",
        },
    }
