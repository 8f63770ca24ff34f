# backend/services/message_broker.py

from __future__ import annotations

import logging

from models.models import Message, MessageAddedEvent, RoomEvent, User, UserJoinedEvent, UserLeftEvent
from services.room_registry import RoomTopicRegistry

logger = logging.getLogger(__name__)


class MessageBroker:
    """
    Forwarding point between message creation and live delivery.

    ``accept`` is called exactly once per persisted message by the sending
    path. It hands the event to the registry, which only enqueues into each
    subscriber's bounded channel, so the caller never waits for delivery.

    The broker keeps no history and does not deduplicate: a retried creation
    that calls ``accept`` twice for the same id is delivered twice and the
    client cache drops the second copy.
    """

    def __init__(self, registry: RoomTopicRegistry) -> None:
        self.registry = registry
        self.accepted_count = 0

    def accept(self, message: Message) -> int:
        self.accepted_count += 1
        delivered = self.registry.publish(
            message.room_id, MessageAddedEvent(room_id=message.room_id, message=message)
        )
        logger.info("📤 Accepted message %s for room=%s (%d subscribers)", message.id, message.room_id, delivered)
        return delivered

    def announce(self, event: RoomEvent) -> int:
        """Fan out a membership change (``user_joined`` / ``user_left``)."""
        return self.registry.publish(event.room_id, event)

    def user_joined(self, room_id: str, user: User) -> int:
        return self.announce(UserJoinedEvent(room_id=room_id, user=user))

    def user_left(self, room_id: str, user: User) -> int:
        return self.announce(UserLeftEvent(room_id=room_id, user=user))
