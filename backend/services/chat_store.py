# backend/services/chat_store.py

from __future__ import annotations

import logging
import threading
import uuid
from datetime import timedelta
from typing import Dict, List, Optional, Set, Tuple

from core.errors import PersistenceUnavailable, RoomNotFound
from models.models import Group, Membership, Message, Room, User, utcnow

logger = logging.getLogger(__name__)


# ============================================================================
# IN-MEMORY CHAT STORE
# ============================================================================
class ChatStore:
    """
    In-memory persistence collaborator for users, groups, rooms, memberships
    and messages.

    The realtime core only relies on ``create_message``, ``is_member``,
    ``can_view`` and ``get_room_snapshot``; the rest backs the REST routes and
    the demo dataset.

    Attributes:
        users: user_id -> User
        groups: group_id -> Group
        rooms: room_id -> Room
        memberships: (user_id, room_id) -> Membership
        messages: room_id -> List[Message] in (created_at, id) order

    Once ``close()`` has been called every operation raises
    ``PersistenceUnavailable``.

    Usage:
        store = ChatStore()
        room = store.add_room("General", group_id="1")
        store.add_member(user.id, room.id)
        message = store.create_message(room.id, user.id, "hello")
    """

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.groups: Dict[str, Group] = {}
        self.rooms: Dict[str, Room] = {}
        self.memberships: Dict[Tuple[str, str], Membership] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.available = True
        self._lock = threading.Lock()

    def _check_available(self) -> None:
        if not self.available:
            raise PersistenceUnavailable("Message store is unavailable")

    def close(self) -> None:
        self.available = False
        logger.info("Chat store closed")

    # ------------------------------------------------------------------
    # Users & groups
    # ------------------------------------------------------------------

    def add_user(self, name: str, email: str, user_id: Optional[str] = None, credential_hash: str = "") -> User:
        self._check_available()
        user = User(id=user_id or str(uuid.uuid4()), name=name, email=email, credential_hash=credential_hash)
        with self._lock:
            if any(u.email == email and u.id != user.id for u in self.users.values()):
                raise ValueError(f"Email already registered: {email}")
            self.users[user.id] = user
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        self._check_available()
        return self.users.get(user_id)

    def add_group(self, name: str, description: str = "", icon: str = "💬", group_id: Optional[str] = None) -> Group:
        self._check_available()
        group = Group(id=group_id or str(uuid.uuid4()), name=name, description=description, icon=icon)
        self.groups[group.id] = group
        return group

    def list_groups(self) -> List[Group]:
        self._check_available()
        return list(self.groups.values())

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def add_room(
        self,
        name: str,
        group_id: str,
        description: str = "",
        tags: Optional[List[str]] = None,
        public: bool = False,
        room_id: Optional[str] = None,
    ) -> Room:
        self._check_available()
        room = Room(
            id=room_id or str(uuid.uuid4()),
            name=name,
            description=description,
            group_id=group_id,
            tags=sorted(set(tags or [])),
            public=public,
        )
        with self._lock:
            self.rooms[room.id] = room
            self.messages.setdefault(room.id, [])
        logger.info("✓ Created room: %s", room.name)
        return room

    def get_room(self, room_id: str) -> Optional[Room]:
        self._check_available()
        return self.rooms.get(room_id)

    def list_rooms(self, group_id: Optional[str] = None) -> List[Room]:
        """Rooms ordered most recently active first."""
        self._check_available()
        rooms = [r for r in self.rooms.values() if group_id is None or r.group_id == group_id]
        return sorted(rooms, key=lambda r: r.last_activity, reverse=True)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_member(self, user_id: str, room_id: str) -> Tuple[Membership, bool]:
        """
        Add a user to a room.

        Returns:
            (membership, created) - joining twice returns the existing
            membership with ``created=False``
        """
        self._check_available()
        if room_id not in self.rooms:
            raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)
        with self._lock:
            existing = self.memberships.get((user_id, room_id))
            if existing is not None:
                return existing, False
            membership = Membership(user_id=user_id, room_id=room_id)
            self.memberships[(user_id, room_id)] = membership
        return membership, True

    def remove_member(self, user_id: str, room_id: str) -> bool:
        self._check_available()
        with self._lock:
            return self.memberships.pop((user_id, room_id), None) is not None

    def is_member(self, user_id: str, room_id: str) -> bool:
        self._check_available()
        return (user_id, room_id) in self.memberships

    def can_view(self, user_id: str, room_id: str) -> bool:
        """Membership, or the room is public."""
        room = self.get_room(room_id)
        if room is None:
            return False
        return room.public or self.is_member(user_id, room_id)

    def room_members(self, room_id: str) -> Set[str]:
        self._check_available()
        return {uid for (uid, rid) in self.memberships if rid == room_id}

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(self, room_id: str, author_id: str, text: str) -> Message:
        """
        Persist a message and return the canonical record.

        The timestamp is strictly later than the room's previous message, and
        the room's ``last_activity`` is advanced to it.
        """
        self._check_available()
        with self._lock:
            room = self.rooms.get(room_id)
            if room is None:
                raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)

            history = self.messages.setdefault(room_id, [])
            created_at = utcnow()
            # Ids are random, so the timestamp alone orders a room's messages
            if history and created_at <= history[-1].created_at:
                created_at = history[-1].created_at + timedelta(microseconds=1)

            message = Message(
                id=str(uuid.uuid4()),
                text=text,
                author_id=author_id,
                room_id=room_id,
                created_at=created_at,
            )
            history.append(message)
            history.sort(key=lambda m: m.sort_key)

            if created_at > room.last_activity:
                room.last_activity = created_at
        return message

    def get_room_snapshot(self, room_id: str) -> List[Message]:
        self._check_available()
        if room_id not in self.rooms:
            raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)
        with self._lock:
            return list(self.messages.get(room_id, []))

    def message_count(self) -> int:
        return sum(len(history) for history in self.messages.values())

    # ------------------------------------------------------------------
    # Demo data
    # ------------------------------------------------------------------

    def create_default_data(self) -> None:
        """
        Seed the demo dataset: three users, six groups, rooms per group,
        a few memberships and messages so the UI has something to show.
        """
        users = [
            ("1", "Alice Johnson", "alice@example.com"),
            ("2", "Bob Smith", "bob@example.com"),
            ("3", "Charlie Brown", "charlie@example.com"),
        ]
        for user_id, name, email in users:
            self.add_user(name, email, user_id=user_id)

        groups = [
            ("1", "Tech", "Technology discussions and development", "💻"),
            ("2", "Sports", "All things sports and athletics", "⚽"),
            ("3", "Current News", "Latest news and current events", "📰"),
            ("4", "Music", "Music discussions and recommendations", "🎵"),
            ("5", "Gambling/Betting", "Sports betting and gambling discussions", "🎲"),
            ("6", "Art", "Art discussions and creative works", "🎨"),
        ]
        for group_id, name, description, icon in groups:
            self.add_group(name, description, icon=icon, group_id=group_id)

        rooms = [
            ("1", "React Development", "React.js discussions and help", "1", ["react", "frontend", "development"]),
            ("2", "Node.js Backend", "Backend development with Node.js", "1", ["nodejs", "backend", "api"]),
            ("3", "GraphQL Discussions", "GraphQL implementation and best practices", "1", ["graphql", "api", "development"]),
            ("4", "Lakers Fan Club", "Los Angeles Lakers discussions", "2", ["lakers", "nba", "basketball"]),
            ("5", "NBA General", "General NBA discussions", "2", ["nba", "basketball"]),
            ("6", "Football Talk", "American football discussions", "2", ["football", "nfl"]),
            ("7", "Sports Betting", "Sports betting strategies and tips", "5", ["betting", "sports", "odds"]),
            ("8", "Parlays", "Parlay betting discussions and strategies", "5", ["parlays", "betting", "strategy"]),
            ("9", "Casino Games", "Casino game strategies and discussions", "5", ["casino", "games", "strategy"]),
            ("10", "Politics", "Political discussions and news", "3", ["politics", "news", "government"]),
            ("11", "Technology News", "Latest technology news and updates", "3", ["tech", "news", "innovation"]),
            ("12", "Rock & Roll", "Rock music discussions", "4", ["rock", "music", "classic"]),
            ("13", "Hip Hop", "Hip hop music and culture", "4", ["hiphop", "rap", "music"]),
            ("14", "Digital Art", "Digital art and design discussions", "6", ["digital", "art", "design"]),
            ("15", "Traditional Art", "Traditional art techniques and discussions", "6", ["traditional", "art", "painting"]),
        ]
        base = utcnow() - timedelta(minutes=10)
        for room_id, name, description, group_id, tags in rooms:
            room = self.add_room(name, group_id, description=description, tags=tags, room_id=room_id)
            room.created_at = room.last_activity = base - timedelta(hours=1)

        for user_id, room_id in [("1", "1"), ("2", "1"), ("1", "2"), ("3", "2"), ("2", "3"), ("3", "3")]:
            self.add_member(user_id, room_id)

        samples = [
            ("1", "Hey everyone! Welcome to React Development!", "1", "1"),
            ("2", "Thanks Alice! This looks great!", "2", "1"),
            ("3", "Anyone interested in the latest Node updates?", "1", "2"),
            ("4", "Yes! The new test runner is amazing!", "3", "2"),
            ("5", "GraphQL or REST for the next project?", "2", "3"),
            ("6", "GraphQL, subscriptions make realtime easy 💪", "3", "3"),
        ]
        for offset, (message_id, text, author_id, room_id) in enumerate(samples):
            created_at = base + timedelta(seconds=offset)
            self.messages[room_id].append(
                Message(id=message_id, text=text, author_id=author_id, room_id=room_id, created_at=created_at)
            )
            room = self.rooms[room_id]
            if created_at > room.last_activity:
                room.last_activity = created_at

        logger.info(
            "✓ Seeded %d users, %d groups, %d rooms", len(self.users), len(self.groups), len(self.rooms)
        )
