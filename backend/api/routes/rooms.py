# backend/api/routes/rooms.py

from typing import List, Optional

from fastapi import APIRouter, Depends

from api.routes.utils import get_current_user, get_state
from core.errors import NotAMember, RoomNotFound
from core.logging import get_logger
from core.state import AppState
from models.models import Group, Membership, Message, RoomSummary, User
from services.connection_session import DeliveryFailed

logger = get_logger(__name__)

router = APIRouter()

# ============================================================================
# ROOM ENDPOINTS
# ============================================================================

def _summary(state: AppState, room) -> RoomSummary:
    return RoomSummary(**room.model_dump(), subscriber_count=state.registry.subscriber_count(room.id))


@router.get("/groups", response_model=List[Group])
async def list_groups(state: AppState = Depends(get_state)):
    return state.store.list_groups()


@router.get("/rooms", response_model=List[RoomSummary])
async def list_rooms(group_id: Optional[str] = None, state: AppState = Depends(get_state)):
    """
    List rooms, most recently active first.

    Args:
        group_id: Only rooms of this group (optional)

    Returns:
        List[RoomSummary]: rooms with their live subscriber counts
    """
    return [_summary(state, room) for room in state.store.list_rooms(group_id)]


@router.get("/rooms/{room_id}", response_model=RoomSummary)
async def get_room(room_id: str, state: AppState = Depends(get_state)):
    room = state.store.get_room(room_id)
    if not room:
        raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)
    return _summary(state, room)


@router.get("/rooms/{room_id}/messages", response_model=List[Message])
async def get_room_snapshot(
    room_id: str,
    user: User = Depends(get_current_user),
    state: AppState = Depends(get_state),
):
    """
    Snapshot of a room's history in (created_at, id) order.

    Clients load this after subscribing and merge it with the live stream.

    Raises:
        RoomNotFound (404), NotAMember (403)
    """
    if state.store.get_room(room_id) is None:
        raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)
    if not state.store.can_view(user.id, room_id):
        raise NotAMember(f"Not a member of room {room_id}", room_id=room_id)
    return state.store.get_room_snapshot(room_id)


@router.post("/rooms/{room_id}/join", response_model=Membership)
async def join_room(
    room_id: str,
    user: User = Depends(get_current_user),
    state: AppState = Depends(get_state),
):
    """
    Become a member of a room. Joining twice returns the existing membership.

    Side Effects:
        - "user_joined" event fanned out to the room's subscribers (first join only)
    """
    membership, created = state.store.add_member(user.id, room_id)
    if created:
        state.broker.user_joined(room_id, user)
    return membership


@router.post("/rooms/{room_id}/leave")
async def leave_room(
    room_id: str,
    user: User = Depends(get_current_user),
    state: AppState = Depends(get_state),
):
    """
    Drop a room membership.

    Side Effects:
        - The user's live subscriptions to a non-public room are released; a
          session that cannot be told is closed
        - "user_left" event fanned out to the room's remaining subscribers
    """
    room = state.store.get_room(room_id)
    if room is None:
        raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)

    removed = state.store.remove_member(user.id, room_id)
    if removed:
        if not room.public:
            for session in state.connection_manager.sessions_for_user(user.id):
                if room_id not in session.subscriptions:
                    continue
                try:
                    await session.unsubscribe(room_id)
                except DeliveryFailed as e:
                    # The registry handle is already released; only the ack was lost
                    logger.warning("Could not ack leave of room=%s to session %s: %s", room_id, session.id, e)
                    await session.close()
        state.broker.user_left(room_id, user)
    return {"status": "left" if removed else "not_a_member", "room_id": room_id}
