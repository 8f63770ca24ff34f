# backend/models/models.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# DATA MODEL
# ============================================================================

class User(BaseModel):
    id: str
    name: str
    email: str
    created_at: datetime = Field(default_factory=utcnow)
    # Owned by the identity collaborator; never sent over the wire
    credential_hash: str = Field(default="", exclude=True, repr=False)


class Group(BaseModel):
    id: str
    name: str
    icon: str = "💬"
    description: Optional[str] = ""


class Room(BaseModel):
    id: str
    name: str
    description: Optional[str] = ""
    group_id: str
    tags: List[str] = Field(default_factory=list)
    public: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)


class Membership(BaseModel):
    user_id: str
    room_id: str
    joined_at: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    """
    Immutable chat message.

    Messages in a room are ordered by ``(created_at, id)`` ascending; ``id``
    breaks timestamp ties.
    """

    model_config = {"frozen": True}

    id: str
    text: str
    author_id: str
    room_id: str
    created_at: datetime

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)


# ============================================================================
# INBOUND SOCKET REQUESTS
# ============================================================================

class SubscribeRequest(BaseModel):
    action: Literal["subscribe"]
    room_id: str


class UnsubscribeRequest(BaseModel):
    action: Literal["unsubscribe"]
    room_id: str


class SendRequest(BaseModel):
    action: Literal["send"]
    room_id: str
    text: str


ClientRequest = Union[SubscribeRequest, UnsubscribeRequest, SendRequest]


# ============================================================================
# OUTBOUND EVENTS
# ============================================================================

class MessageAddedEvent(BaseModel):
    type: Literal["message_added"] = "message_added"
    room_id: str
    message: Message


class UserJoinedEvent(BaseModel):
    type: Literal["user_joined"] = "user_joined"
    room_id: str
    user: User


class UserLeftEvent(BaseModel):
    type: Literal["user_left"] = "user_left"
    room_id: str
    user: User


RoomEvent = Union[MessageAddedEvent, UserJoinedEvent, UserLeftEvent]


# ============================================================================
# HTTP REQUEST / RESPONSE BODIES
# ============================================================================

class SendMessageRequest(BaseModel):
    text: str


class RoomSummary(Room):
    subscriber_count: int = 0
