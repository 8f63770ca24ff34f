# backend/api/routes/health.py

from fastapi import APIRouter, Depends

from api.routes.utils import get_state
from core.state import AppState

router = APIRouter()

@router.get("/health")
async def health(state: AppState = Depends(get_state)):
    """
    Health check endpoint.

    Returns:
        dict: Status, connection count, room count, rooms with live subscribers
    """
    return {
        "status": "healthy" if state.store.available else "degraded",
        "connections": state.connection_manager.connection_count(),
        "rooms": len(state.store.rooms),
        "active_rooms_with_subscribers": len(state.registry.active_topics()),
    }
