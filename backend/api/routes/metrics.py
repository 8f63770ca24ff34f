# backend/api/routes/metrics.py
from fastapi import APIRouter, Depends
from datetime import datetime, timezone

from api.routes.utils import get_state
from core.state import AppState

router = APIRouter()

@router.get("/metrics")
async def get_metrics(state: AppState = Depends(get_state)):
    """
    Fan-out statistics for monitoring.

    Returns:
        dict: Message statistics (accepted, rate), capacity (connections,
        active topics, subscriptions) and backpressure (dropped slow consumers,
        queue capacity)

    Example Response:
        {
            "total_messages": 1200,
            "messages_per_second": 0.4,
            "concurrent_connections": 18,
            "active_topics": 5,
            "subscriptions": 22,
            "dropped_slow_consumers": 1,
            "subscriber_queue_size": 32
        }
    """
    uptime_seconds = (datetime.now(timezone.utc) - state.app_start_time).total_seconds()
    accepted = state.broker.accepted_count

    if uptime_seconds > 0:
        messages_per_second = accepted / uptime_seconds
    else:
        messages_per_second = 0

    return {
        # Statistics
        "total_messages": accepted,
        "stored_messages": state.store.message_count(),
        "uptime_hours": round(uptime_seconds / 3600, 2) if uptime_seconds > 0 else 0,
        "messages_per_second": round(messages_per_second, 2),

        # Capacity
        "concurrent_connections": state.connection_manager.connection_count(),
        "total_rooms": len(state.store.rooms),
        "active_topics": len(state.registry.active_topics()),
        "subscriptions": state.registry.subscription_count(),

        # Backpressure
        "dropped_slow_consumers": state.registry.dropped_count,
        "subscriber_queue_size": state.registry.queue_size,
    }
