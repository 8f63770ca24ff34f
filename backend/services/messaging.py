# backend/services/messaging.py

from __future__ import annotations

import logging

from core.errors import InvalidRequest, NotAMember, RoomNotFound
from models.models import Message, User
from services.chat_store import ChatStore
from services.message_broker import MessageBroker

logger = logging.getLogger(__name__)


def post_message(store: ChatStore, broker: MessageBroker, user: User, room_id: str, text: str) -> Message:
    """
    Create a message and hand it to the broker.

    Flow:
        1. Validate room exists and the author is a member
        2. Persist through the store (assigns id + timestamp)
        3. broker.accept(message) exactly once

    Raises:
        RoomNotFound, NotAMember, InvalidRequest, or PersistenceUnavailable
        when the store is down (retryable, nothing is published)
    """
    text = (text or "").strip()
    if not text:
        raise InvalidRequest("Message text required", room_id=room_id)

    if store.get_room(room_id) is None:
        raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)
    if not store.is_member(user.id, room_id):
        raise NotAMember(f"Not a member of room {room_id}", room_id=room_id)

    message = store.create_message(room_id, user.id, text)
    broker.accept(message)
    logger.info("✉ %s posted %s to room=%s", user.id, message.id, room_id)
    return message
