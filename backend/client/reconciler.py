# backend/client/reconciler.py
"""Client-side merge of room snapshots with the live event stream.

Each room is held as an ``OrderedMessageSet``: messages keyed by id, kept in
``(created_at, id)`` order, with insert-if-absent semantics. Applying the
same event twice is therefore a no-op by construction.

Live events can arrive before the room's first snapshot has been fetched.
They are buffered and merged when the snapshot lands; nothing is dropped.
"""
from __future__ import annotations

import bisect
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional

from models.models import Message

logger = logging.getLogger(__name__)


def _key(message: Message):
    return message.sort_key


class OrderedMessageSet:
    """Messages keyed by id, iterated in (created_at, id) order."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._items: List[Message] = []
        self._by_id: Dict[str, Message] = {}
        for message in messages:
            self.add(message)

    def add(self, message: Message) -> bool:
        """Insert ``message`` unless its id is already present. Returns True when inserted."""
        if message.id in self._by_id:
            return False
        bisect.insort(self._items, message, key=_key)
        self._by_id[message.id] = message
        return True

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def last(self) -> Optional[Message]:
        return self._items[-1] if self._items else None

    def ids(self) -> List[str]:
        return [m.id for m in self._items]

    def as_list(self) -> List[Message]:
        return list(self._items)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)


class ClientCacheReconciler:
    """
    Per-room local message cache.

    Usage:
        cache = ClientCacheReconciler()
        cache.apply_live_event("general", pushed)      # before the fetch lands: buffered
        cache.load_snapshot("general", fetched)        # merged, deduplicated
        cache.messages("general")                      # ordered, unique
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, OrderedMessageSet] = {}
        self._pending: Dict[str, OrderedMessageSet] = {}

    def has_snapshot(self, room_id: str) -> bool:
        return room_id in self._rooms

    def load_snapshot(self, room_id: str, messages: Iterable[Message]) -> List[Message]:
        """
        Initialize or replace a room's sequence from a fetched snapshot.

        Buffered live events are merged in. When the room was already loaded,
        local messages ordered after the snapshot's newest one are kept: they
        arrived live while the fetch was in flight.
        """
        merged = OrderedMessageSet(messages)
        tail = merged.last()

        previous = self._rooms.get(room_id)
        if previous is not None:
            for message in previous:
                if tail is None or message.sort_key > tail.sort_key:
                    merged.add(message)

        for message in self._pending.pop(room_id, ()):
            merged.add(message)

        self._rooms[room_id] = merged
        logger.debug("Loaded snapshot for room=%s: %d messages", room_id, len(merged))
        return merged.as_list()

    def apply_live_event(self, room_id: str, message: Message) -> bool:
        """
        Insert a pushed message if its id is new.

        Returns:
            True if the local sequence (or the pre-snapshot buffer) changed
        """
        room = self._rooms.get(room_id)
        if room is None:
            return self._pending.setdefault(room_id, OrderedMessageSet()).add(message)
        return room.add(message)

    def apply_event(self, payload: Dict[str, Any]) -> bool:
        """Route a raw wire event; only ``message_added`` touches the cache."""
        if payload.get("type") != "message_added":
            return False
        message = Message.model_validate(payload["message"])
        return self.apply_live_event(payload.get("room_id") or message.room_id, message)

    def messages(self, room_id: str) -> List[Message]:
        room = self._rooms.get(room_id)
        return room.as_list() if room is not None else []

    def pending(self, room_id: str) -> List[Message]:
        buffered = self._pending.get(room_id)
        return buffered.as_list() if buffered is not None else []

    def reset(self, room_id: Optional[str] = None) -> None:
        """Forget one room (or all) so the next snapshot starts from scratch."""
        if room_id is None:
            self._rooms.clear()
            self._pending.clear()
            return
        self._rooms.pop(room_id, None)
        self._pending.pop(room_id, None)
