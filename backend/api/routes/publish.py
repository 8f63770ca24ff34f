# backend/api/routes/publish.py
from fastapi import APIRouter, Depends

from api.routes.utils import get_current_user, get_state
from core.state import AppState
from models.models import Message, SendMessageRequest, User
from services.messaging import post_message

# ============================================================================
# MESSAGE SENDING ENDPOINT
# ============================================================================

router = APIRouter()

@router.post("/rooms/{room_id}/messages", response_model=Message)
async def send_message(
    room_id: str,
    request: SendMessageRequest,
    user: User = Depends(get_current_user),
    state: AppState = Depends(get_state),
):
    """
    Post a message to a room and fan it out to live subscribers.

    Flow:
        1. Validate room exists and the caller is a member
        2. Persist through the store (server-assigned id and timestamp)
        3. broker.accept(message), exactly once
        4. Every session subscribed to room_id gets a "message_added" event

    Returns:
        Message: the canonical record

    Raises:
        RoomNotFound (404), NotAMember (403), InvalidRequest (400),
        PersistenceUnavailable (503, retryable)
    """
    return post_message(state.store, state.broker, user, room_id, request.text)
